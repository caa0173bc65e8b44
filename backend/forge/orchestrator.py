"""
Process orchestrator: installs dependencies and brings a materialized
project up, either as a local dev server or as a built bundle behind the
reverse proxy.

Per-project state machine:

  idle → installing → starting → ready | failed     (development)
  idle → installing → building → ready | failed     (nginx)
  any  → stopped                                    (teardown)

Install problems are tolerated. A dev server that exits before printing a
readiness marker is fatal; one that stays silent past the timeout is
assumed to be running and the handle carries a caveat.
"""

import asyncio
import json
import logging
import os
import signal
from dataclasses import dataclass, field
from enum import Enum

import httpx

from forge.config import Settings
from forge.deploy import (
    append_deploy_log,
    copy_build_output,
    locate_build_output,
    reload_proxy,
    sanitize_subdomain,
)
from forge.errors import DeploymentFailed, PortUnavailableError, ProcessSpawnFailed
from forge.ports import find_available_port

logger = logging.getLogger(__name__)

MODE_DEVELOPMENT = "development"
MODE_NGINX = "nginx"

READY_CAVEAT = "Server did not report readiness in time; it should be running"
PORT_IN_USE_MARKERS = ("EADDRINUSE", "already in use", "is in use")
MAX_PORT_RETRIES = 3
OUTPUT_TAIL = 50


class ServerState(str, Enum):
    IDLE = "idle"
    INSTALLING = "installing"
    STARTING = "starting"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


TRANSITIONS = {
    ServerState.IDLE: {ServerState.INSTALLING, ServerState.STARTING, ServerState.BUILDING},
    ServerState.INSTALLING: {ServerState.STARTING, ServerState.BUILDING},
    ServerState.STARTING: {ServerState.READY},
    ServerState.BUILDING: {ServerState.READY},
    ServerState.READY: set(),
    ServerState.FAILED: set(),
    ServerState.STOPPED: set(),
}


# ---------------------------------------------------------------
# Toolchains
# ---------------------------------------------------------------

class ReadinessDetector:
    """Decides from one line of server output whether the server is up."""

    def __init__(self, markers: list[str]):
        self.markers = list(markers)

    def detect_ready(self, line: str) -> bool:
        return any(m in line for m in self.markers)


@dataclass
class Toolchain:
    """
    How to start one kind of project. Command arguments may use the
    placeholders {npm}, {npx}, {port} and {host}.
    """
    name: str
    base_port: int
    ready_markers: list[str]
    ready_timeout: float
    dev_command: list[str]
    build_command: list[str] = field(default_factory=lambda: ["{npm}", "run", "build"])
    install_command: list[str] = field(default_factory=lambda: ["{npm}", "install"])
    needs_install: bool = True

    @property
    def detector(self) -> ReadinessDetector:
        return ReadinessDetector(self.ready_markers)


def default_toolchains(settings: Settings) -> dict[str, Toolchain]:
    return {
        "vite": Toolchain(
            name="vite",
            base_port=settings.vite_base_port,
            ready_markers=["Local:", "ready in"],
            ready_timeout=settings.dev_ready_timeout,
            dev_command=["{npm}", "run", "dev", "--", "--port", "{port}", "--host", "{host}", "--strictPort"],
        ),
        "next": Toolchain(
            name="next",
            base_port=settings.next_base_port,
            ready_markers=["Ready", "started server", "Local:"],
            ready_timeout=settings.dev_ready_timeout,
            dev_command=["{npm}", "run", "dev", "--", "--port", "{port}", "--hostname", "{host}"],
        ),
        "static": Toolchain(
            name="static",
            base_port=settings.static_base_port,
            ready_markers=["Accepting connections", "Serving!", "Listening", "localhost"],
            ready_timeout=settings.static_ready_timeout,
            dev_command=["{npx}", "--yes", "serve", ".", "-l", "{port}"],
            needs_install=False,
        ),
    }


def detect_toolchain(project_dir: str) -> str:
    """vite / next from package.json dependencies, static otherwise."""
    try:
        with open(os.path.join(project_dir, "package.json"), "r", encoding="utf-8") as f:
            pkg = json.load(f)
    except (OSError, ValueError):
        return "static"
    declared = set(pkg.get("dependencies") or {}) | set(pkg.get("devDependencies") or {})
    if "next" in declared:
        return "next"
    if "vite" in declared:
        return "vite"
    return "static"


# ---------------------------------------------------------------
# Server handle
# ---------------------------------------------------------------

@dataclass
class ServerHandle:
    project_id: str
    kind: str = MODE_DEVELOPMENT
    toolchain: str = "vite"
    state: ServerState = ServerState.IDLE
    port: int | None = None
    url: str | None = None
    caveat: str | None = None
    output_dir: str | None = None
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    drain_task: asyncio.Task | None = field(default=None, repr=False)

    def transition(self, new_state: ServerState):
        if new_state in (ServerState.FAILED, ServerState.STOPPED):
            self.state = new_state
            return
        if new_state not in TRANSITIONS[self.state]:
            raise ValueError(f"Illegal transition {self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def to_dict(self) -> dict:
        return {
            "projectId": self.project_id,
            "kind": self.kind,
            "toolchain": self.toolchain,
            "state": self.state.value,
            "port": self.port,
            "url": self.url,
            "caveat": self.caveat,
            "outputDir": self.output_dir,
        }


def _format_args(args: list[str], **values) -> list[str]:
    return [a.format(**values) for a in args]


def _signal_process(proc: asyncio.subprocess.Process, sig):
    # npm spawns the real server as a child; signal the whole group
    try:
        if os.name == "posix":
            os.killpg(os.getpgid(proc.pid), sig)
        elif sig == signal.SIGTERM:
            proc.terminate()
        else:
            proc.kill()
    except ProcessLookupError:
        pass


async def _kill_process(proc: asyncio.subprocess.Process):
    if proc.returncode is None:
        _signal_process(proc, signal.SIGKILL)
        await proc.wait()


# ---------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------

class ProcessOrchestrator:
    def __init__(self, settings: Settings, toolchains: dict[str, Toolchain] | None = None):
        self.settings = settings
        self.toolchains = toolchains or default_toolchains(settings)

    def _values(self, **extra) -> dict:
        return {
            "npm": self.settings.npm_bin,
            "npx": self.settings.npx_bin,
            "host": self.settings.bind_host,
            **extra,
        }

    async def _spawn(self, args: list[str], cwd: str, env: dict | None = None) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env={**os.environ, **(env or {})},
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ProcessSpawnFailed(f"Could not start {args[0]}: {e}", {"command": args}) from e

    async def _run_command(self, args: list[str], cwd: str, timeout: float) -> tuple[int, str]:
        """Run to completion; returns (returncode, combined_output). 124 on timeout."""
        proc = await self._spawn(args, cwd)
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _kill_process(proc)
            return 124, f"timed out after {timeout}s"
        except BaseException:
            # The child runs in its own session; kill it before propagating
            await asyncio.shield(_kill_process(proc))
            raise
        return proc.returncode, (out or b"").decode(errors="replace")

    # ---- install ----

    async def install(self, project_dir: str, handle: ServerHandle, toolchain: Toolchain) -> int:
        """Install dependencies. Non-zero exit is logged and tolerated."""
        if not toolchain.needs_install:
            return 0
        handle.transition(ServerState.INSTALLING)
        logger.info("[orchestrator] Installing dependencies in %s", project_dir)
        try:
            code, output = await self._run_command(
                _format_args(toolchain.install_command, **self._values()),
                project_dir,
                self.settings.install_timeout,
            )
        except ProcessSpawnFailed:
            handle.transition(ServerState.FAILED)
            raise
        if code != 0:
            logger.warning(
                "[orchestrator] Install had issues (exit %s), trying to continue: %s",
                code, output.strip()[-500:],
            )
        return code

    # ---- development ----

    async def _wait_ready(self, proc, detector: ReadinessDetector, timeout: float) -> tuple[str, list[str]]:
        """('ready' | 'timeout' | 'exited', output tail)."""
        tail: list[str] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return "timeout", tail
            try:
                raw = await asyncio.wait_for(proc.stdout.readline(), timeout=remaining)
            except asyncio.TimeoutError:
                return "timeout", tail
            except ValueError:
                # Line longer than the stream limit; the reader has already discarded it
                continue
            if not raw:
                await proc.wait()
                return "exited", tail
            line = raw.decode(errors="replace").rstrip()
            tail = (tail + [line])[-OUTPUT_TAIL:]
            logger.debug("[server] %s", line)
            if detector.detect_ready(line):
                return "ready", tail

    async def _drain(self, handle: ServerHandle):
        proc = handle.process
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError:
                continue
            if not raw:
                return
            logger.debug("[server:%s] %s", handle.project_id, raw.decode(errors="replace").rstrip())

    async def start_dev_server(self, project_dir: str, handle: ServerHandle, toolchain: Toolchain) -> ServerHandle:
        """
        Allocate a port and start the dev server. Resolves on the first
        readiness line, or after the timeout with a caveat. If the port got
        taken between probe and bind, probes again from the next port.
        """
        handle.transition(ServerState.STARTING)
        base = toolchain.base_port
        limit = toolchain.base_port + self.settings.port_probe_span

        for attempt in range(MAX_PORT_RETRIES):
            try:
                if base >= limit:
                    raise PortUnavailableError(
                        f"No available port found in range {toolchain.base_port}-{limit - 1}",
                        {"base": toolchain.base_port, "span": self.settings.port_probe_span},
                    )
                port = await asyncio.to_thread(
                    find_available_port, base, limit - base, self.settings.bind_host,
                )
            except PortUnavailableError:
                handle.transition(ServerState.FAILED)
                raise

            args = _format_args(toolchain.dev_command, **self._values(port=port))
            logger.info("[orchestrator] Starting %s server on port %d", toolchain.name, port)
            try:
                proc = await self._spawn(args, project_dir, env={"PORT": str(port), "BROWSER": "none"})
            except ProcessSpawnFailed:
                handle.transition(ServerState.FAILED)
                raise

            handle.process = proc
            try:
                outcome, tail = await self._wait_ready(proc, toolchain.detector, toolchain.ready_timeout)
            except BaseException:
                handle.transition(ServerState.FAILED)
                await asyncio.shield(_kill_process(proc))
                raise

            if outcome == "exited":
                output = "\n".join(tail)
                if any(m in output for m in PORT_IN_USE_MARKERS) and attempt + 1 < MAX_PORT_RETRIES:
                    logger.warning("[orchestrator] Port %d taken before bind, probing again", port)
                    base = port + 1
                    continue
                handle.transition(ServerState.FAILED)
                raise ProcessSpawnFailed(
                    f"{toolchain.name} server exited with code {proc.returncode} before it was ready",
                    {"exit_code": proc.returncode, "output": output[-2000:]},
                )

            handle.port = port
            handle.url = f"http://localhost:{port}"
            if outcome == "timeout":
                handle.caveat = READY_CAVEAT
                logger.warning("[orchestrator] %s on port %d: %s", toolchain.name, port, READY_CAVEAT)
            handle.drain_task = asyncio.create_task(self._drain(handle))
            handle.transition(ServerState.READY)
            return handle

        handle.transition(ServerState.FAILED)
        raise ProcessSpawnFailed("Dev server could not bind a port", {"base": toolchain.base_port})

    # ---- nginx ----

    async def build_and_deploy(
        self, project_dir: str, handle: ServerHandle, toolchain: Toolchain, subdomain: str,
    ) -> ServerHandle:
        """
        Build, copy the output into the served directory, reload the proxy.
        A failed build serves whatever exists (the project root when no
        output directory does). A failed reload raises DeploymentFailed and
        leaves the copied files in place.
        """
        subdomain = sanitize_subdomain(subdomain, self.settings.max_subdomain_length)
        handle.transition(ServerState.BUILDING)

        try:
            code, output = await self._run_command(
                _format_args(toolchain.build_command, **self._values()),
                project_dir,
                self.settings.build_timeout,
            )
        except ProcessSpawnFailed:
            handle.transition(ServerState.FAILED)
            raise
        if code != 0:
            logger.warning("[orchestrator] Build exited with %s, serving what exists: %s", code, output.strip()[-500:])

        src, fell_back = locate_build_output(project_dir)
        try:
            dest = await asyncio.to_thread(copy_build_output, src, self.settings.nginx_projects_path, subdomain)
        except OSError as e:
            handle.transition(ServerState.FAILED)
            append_deploy_log(self.settings.deploy_log_path, subdomain, "failed", f"copy: {e}")
            raise DeploymentFailed(f"Could not copy build output: {e}", {"source": src}) from e

        try:
            await reload_proxy(self.settings.nginx_reload_command, timeout=self.settings.reload_timeout)
        except DeploymentFailed as e:
            handle.transition(ServerState.FAILED)
            handle.output_dir = dest
            append_deploy_log(self.settings.deploy_log_path, subdomain, "failed", e.message)
            raise

        append_deploy_log(self.settings.deploy_log_path, subdomain, "deployed")
        handle.output_dir = dest
        handle.url = f"http://{subdomain}.{self.settings.deploy_domain}"
        if fell_back:
            handle.caveat = "No build output found; serving project sources"
        handle.transition(ServerState.READY)
        return handle

    # ---- entry points ----

    async def run(
        self,
        project_dir: str,
        project_id: str,
        mode: str = MODE_DEVELOPMENT,
        subdomain: str | None = None,
    ) -> ServerHandle:
        """Install, then start (development) or build and deploy (nginx)."""
        toolchain = self.toolchains[detect_toolchain(project_dir)]
        handle = ServerHandle(project_id=project_id, kind=mode, toolchain=toolchain.name)

        await self.install(project_dir, handle, toolchain)
        if mode == MODE_NGINX:
            return await self.build_and_deploy(project_dir, handle, toolchain, subdomain or project_id)
        return await self.start_dev_server(project_dir, handle, toolchain)

    async def probe(self, handle: ServerHandle) -> dict:
        if handle.kind != MODE_DEVELOPMENT or not handle.url:
            return {"ok": None, "status_code": None, "error": "not probed"}
        return await probe_server(handle.url)

    async def teardown(self, handle: ServerHandle):
        """Stop the handle's process (TERM, then KILL after a grace period). Idempotent."""
        proc = handle.process
        if proc is not None and proc.returncode is None:
            logger.info("[orchestrator] Stopping %s (pid %d)", handle.project_id, proc.pid)
            _signal_process(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=5)
            except asyncio.TimeoutError:
                await _kill_process(proc)
        if handle.drain_task is not None and not handle.drain_task.done():
            handle.drain_task.cancel()
        handle.transition(ServerState.STOPPED)


async def probe_server(url: str, timeout: float = 5.0) -> dict:
    """Best-effort GET against a started server."""
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url)
        return {"ok": resp.status_code < 500, "status_code": resp.status_code, "error": None}
    except httpx.HTTPError as e:
        return {"ok": False, "status_code": None, "error": str(e)}
