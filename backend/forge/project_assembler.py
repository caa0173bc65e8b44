"""
Structure materializer: lays the project tree out on disk.

Order of precedence for any one path, lowest first:
  scaffold templates → package.json from the manifest → extracted files
  → fallback templates (only for required files nobody produced)

Writes are best-effort: a file that fails to write is logged and recorded,
the rest are still written.
"""

import asyncio
import logging
import os
import posixpath
from dataclasses import dataclass, field

from forge.extractor import (
    ExtractedFile,
    SOURCE_FALLBACK,
    SOURCE_LLM,
    SOURCE_TEMPLATE,
    file_type,
)
from forge.manifest import ProjectManifest
from forge.templates import TemplateStore

logger = logging.getLogger(__name__)


@dataclass
class MaterializeResult:
    project_dir: str
    files: list[ExtractedFile] = field(default_factory=list)
    written: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)
    unfilled: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def safe_relative_path(path: str) -> str | None:
    """Normalized project-relative path, or None for absolute/escaping paths."""
    if not isinstance(path, str) or not path.strip():
        return None
    p = path.strip().replace("\\", "/")
    if p.startswith("/") or os.path.isabs(p) or (len(p) > 1 and p[1] == ":"):
        return None
    clean = posixpath.normpath(p)
    if clean == "." or clean == ".." or clean.startswith("../"):
        return None
    return clean


def compose_tree(
    files: list[ExtractedFile],
    missing: list[str],
    manifest: ProjectManifest,
    templates: TemplateStore,
) -> tuple[dict[str, ExtractedFile], list[str], list[str]]:
    """
    Decide the final content of every path without touching the disk.

    Returns (tree, fallbacks, unfilled).
    """
    variables = {"GAME_NAME": manifest.name, "GAME_ENGINE": manifest.engine}
    tree: dict[str, ExtractedFile] = {}

    for name, content in templates.scaffold(**variables).items():
        tree[name] = ExtractedFile(name, content, file_type(name), SOURCE_TEMPLATE)

    tree["package.json"] = ExtractedFile(
        "package.json", manifest.to_package_json(), "json", SOURCE_TEMPLATE,
    )

    for f in files:
        tree[f.name] = ExtractedFile(f.name, f.content, f.type or file_type(f.name), f.source or SOURCE_LLM)

    fallbacks, unfilled = [], []
    for name in missing:
        if name in tree and tree[name].source == SOURCE_LLM:
            continue
        content = templates.get(name, **variables)
        if content is None:
            unfilled.append(name)
            continue
        tree[name] = ExtractedFile(name, content, file_type(name), SOURCE_FALLBACK)
        fallbacks.append(name)

    return tree, fallbacks, unfilled


def _write_file(project_dir: str, relpath: str, content: str):
    dest = os.path.join(project_dir, *relpath.split("/"))
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    if content and not content.endswith("\n"):
        content += "\n"
    with open(dest, "w", encoding="utf-8") as f:
        f.write(content)


def materialize_project(
    project_dir: str,
    files: list[ExtractedFile],
    missing: list[str],
    manifest: ProjectManifest,
    templates: TemplateStore,
) -> MaterializeResult:
    """Write the composed tree under project_dir. Safe to call again on the same dir."""
    result = MaterializeResult(project_dir=project_dir)
    os.makedirs(project_dir, exist_ok=True)

    tree, result.fallbacks, result.unfilled = compose_tree(files, missing, manifest, templates)
    for name in result.fallbacks:
        logger.warning("[materialize] %s missing from generated output, using fallback template", name)
    for name in result.unfilled:
        logger.warning("[materialize] %s missing and no fallback template exists", name)

    for name, f in tree.items():
        relpath = safe_relative_path(name)
        if relpath is None:
            logger.warning("[materialize] Refusing unsafe path %r", name)
            result.failed[name] = "unsafe path"
            continue
        try:
            _write_file(project_dir, relpath, f.content)
        except OSError as e:
            logger.error("[materialize] Failed to write %s: %s", relpath, e)
            result.failed[relpath] = str(e)
            continue
        result.written.append(relpath)
        result.files.append(ExtractedFile(relpath, f.content, f.type, f.source))

    logger.info(
        "[materialize] %s: %d written, %d fallback, %d failed",
        project_dir, len(result.written), len(result.fallbacks), len(result.failed),
    )
    return result


async def materialize_project_async(*args, **kwargs) -> MaterializeResult:
    return await asyncio.to_thread(materialize_project, *args, **kwargs)
