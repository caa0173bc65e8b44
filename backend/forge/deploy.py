"""
Reverse-proxy deployment helpers: subdomain sanitizing, build output
lookup, copying into the served directory, proxy reload, deploy log.
"""

import asyncio
import logging
import os
import re
import shlex
import shutil

from forge.errors import DeploymentFailed, InvalidSubdomainError
from forge.sse_utils import utc_timestamp

logger = logging.getLogger(__name__)

BUILD_OUTPUT_DIRS = ("dist", "build", "out")


def sanitize_subdomain(raw: str, max_length: int = 63) -> str:
    """Keep [a-z0-9-], trim hyphens at the edges, truncate. Empty is an error."""
    cleaned = re.sub(r"[^A-Za-z0-9-]", "", raw or "").lower()
    cleaned = cleaned.strip("-")[:max_length].rstrip("-")
    if not cleaned:
        raise InvalidSubdomainError(
            f"Subdomain {raw!r} has no usable characters",
            {"subdomain": raw},
        )
    return cleaned


def locate_build_output(project_dir: str, candidates=BUILD_OUTPUT_DIRS) -> tuple[str, bool]:
    """
    (directory to serve, fell_back). Falls back to the project root when no
    known output directory exists.
    """
    for name in candidates:
        path = os.path.join(project_dir, name)
        if os.path.isdir(path):
            return path, False
    logger.warning("[deploy] No build output in %s, serving project root", project_dir)
    return project_dir, True


def copy_build_output(src: str, served_root: str, subdomain: str) -> str:
    """Replace <served_root>/<subdomain> with a copy of src."""
    dest = os.path.join(served_root, subdomain)
    os.makedirs(served_root, exist_ok=True)
    if os.path.isdir(dest):
        shutil.rmtree(dest)
    shutil.copytree(src, dest, ignore=shutil.ignore_patterns("node_modules", ".git"))
    logger.info("[deploy] Copied %s -> %s", src, dest)
    return dest


async def reload_proxy(command: str, timeout: int = 30):
    """Run the proxy reload command. Raises DeploymentFailed on any failure."""
    args = shlex.split(command)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise DeploymentFailed(f"Proxy reload could not start: {e}", {"command": command}) from e

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise DeploymentFailed(f"Proxy reload timed out after {timeout}s", {"command": command})

    if proc.returncode != 0:
        output = (out or b"").decode(errors="replace").strip()
        raise DeploymentFailed(
            f"Proxy reload exited with {proc.returncode}",
            {"command": command, "output": output[-2000:]},
        )
    logger.info("[deploy] Proxy reloaded")


def append_deploy_log(path: str, subdomain: str, status: str, detail: str = ""):
    """Append one `timestamp, subdomain, status[, detail]` line."""
    if not path:
        return
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    line = f"{utc_timestamp()}, {subdomain}, {status}"
    if detail:
        line += f", {detail}"
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError as e:
        logger.error("[deploy] Could not write deploy log %s: %s", path, e)
