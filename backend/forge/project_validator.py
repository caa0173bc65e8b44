"""
Structural project validator. Pure Python, no AI, no execution.
Checks a materialized project tree against a declarative schema.

Severity:
  missing required file        → error
  forbidden file present       → error
  required dependency missing  → error
  forbidden dependency present → error
  content pattern missing      → warning
  too many files               → warning
  more than one engine         → warning
"""

import json
import logging
import os
from dataclasses import dataclass

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SKIP_DIRS = {"node_modules"}


class FilePattern(BaseModel):
    must_contain: list[str] = Field(default_factory=list)
    check_engines: bool = False


class ProjectSchema(BaseModel):
    required_files: list[str] = Field(default_factory=list)
    forbidden_files: list[str] = Field(default_factory=list)
    file_patterns: dict[str, FilePattern] = Field(default_factory=dict)
    required_dependencies: list[str] = Field(default_factory=list)
    forbidden_dependencies: list[str] = Field(default_factory=list)
    max_total_files: int = 50
    engine_entry: str = "src/App.tsx"
    engine_markers: dict[str, list[str]] = Field(default_factory=dict)
    max_subdomain_length: int = 63


DEFAULT_SCHEMA = ProjectSchema(
    required_files=["package.json", "index.html", "src/main.tsx", "src/App.tsx"],
    forbidden_files=[
        "next.config.js", "next.config.mjs", "next.config.ts",
        "app/layout.tsx", "app/page.tsx", "pages/_app.tsx",
    ],
    file_patterns={
        "index.html": FilePattern(must_contain=['id="root"', "src/main.tsx"]),
        "src/main.tsx": FilePattern(must_contain=["createRoot", "App"]),
        "src/App.tsx": FilePattern(must_contain=["export default"], check_engines=True),
    },
    required_dependencies=["react", "react-dom", "vite"],
    forbidden_dependencies=["next", "@next/font", "next-themes"],
    max_total_files=50,
    engine_entry="src/App.tsx",
    engine_markers={"phaser": ["phaser"], "babylon": ["babylon"]},
)


@dataclass(frozen=True)
class ValidationReport:
    valid: bool
    errors: tuple = ()
    warnings: tuple = ()
    required_found: tuple = ()
    required_missing: tuple = ()
    forbidden_present: tuple = ()
    total_files: int = 0
    engine: str = "unknown"

    @property
    def required_missing_count(self) -> int:
        return len(self.required_missing)

    @property
    def forbidden_count(self) -> int:
        return len(self.forbidden_present)

    def summary(self) -> dict:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "required_files": {
                "found": len(self.required_found),
                "missing": list(self.required_missing),
            },
            "forbidden_files": {
                "found": self.forbidden_count,
                "list": list(self.forbidden_present),
            },
            "total_files": self.total_files,
            "game_engine": self.engine,
        }


def load_schema(path: str | None) -> ProjectSchema:
    """Read a JSON schema file; empty path means the built-in schema."""
    if not path:
        return DEFAULT_SCHEMA
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return ProjectSchema.model_validate(raw)


def list_project_files(project_dir: str) -> list[str]:
    """Relative paths of every file, skipping dot-directories and node_modules."""
    found = []
    for root, dirs, files in os.walk(project_dir):
        dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS and not d.startswith("."))
        for name in sorted(files):
            rel = os.path.relpath(os.path.join(root, name), project_dir)
            found.append(rel.replace(os.sep, "/"))
    return found


def detect_engine(content: str | None, markers: dict[str, list[str]] | None = None) -> str:
    """
    Engine tag from source text: one engine name, "both", "none", or
    "unknown" when there is nothing to read.
    """
    if content is None:
        return "unknown"
    markers = markers if markers is not None else DEFAULT_SCHEMA.engine_markers
    lower = content.lower()
    hits = [engine for engine, needles in markers.items() if any(n.lower() in lower for n in needles)]
    if len(hits) > 1:
        return "both"
    if hits:
        return hits[0]
    return "none"


def _read(path: str) -> str | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        return None


def _check_dependencies(project_dir: str, schema: ProjectSchema, errors: list, warnings: list):
    if not (schema.required_dependencies or schema.forbidden_dependencies):
        return
    raw = _read(os.path.join(project_dir, "package.json"))
    if raw is None:
        # Absence is already reported as a missing required file
        return
    try:
        manifest = json.loads(raw)
    except ValueError as e:
        warnings.append(f"Could not parse package.json: {e}")
        return

    declared = set(manifest.get("dependencies") or {}) | set(manifest.get("devDependencies") or {})
    for dep in schema.required_dependencies:
        if dep not in declared:
            errors.append(f"Missing required dependency: {dep}")
    for dep in schema.forbidden_dependencies:
        if dep in declared:
            errors.append(f"Forbidden dependency present: {dep}")


def _validate(project_dir: str, schema: ProjectSchema) -> ValidationReport:
    errors, warnings = [], []

    if not os.path.isdir(project_dir):
        return ValidationReport(
            valid=False,
            errors=(f"Project directory does not exist: {project_dir}",),
            required_missing=tuple(schema.required_files),
        )

    all_files = list_project_files(project_dir)
    present = set(all_files)

    found = [f for f in schema.required_files if f in present]
    missing = [f for f in schema.required_files if f not in present]
    for f in missing:
        errors.append(f"Missing required file: {f}")

    forbidden = [f for f in schema.forbidden_files if f in present]
    for f in forbidden:
        errors.append(f"Forbidden file present: {f}")

    for filename, pattern in schema.file_patterns.items():
        if filename not in present:
            continue
        content = _read(os.path.join(project_dir, filename))
        if content is None:
            warnings.append(f"{filename} could not be read")
            continue
        for needle in pattern.must_contain:
            if needle not in content:
                warnings.append(f"{filename} should contain: {needle}")
        if pattern.check_engines and detect_engine(content, schema.engine_markers) == "none":
            warnings.append(f"{filename} does not reference a game engine")

    if len(all_files) > schema.max_total_files:
        warnings.append(f"Too many files: {len(all_files)} (max: {schema.max_total_files})")

    _check_dependencies(project_dir, schema, errors, warnings)

    entry = _read(os.path.join(project_dir, schema.engine_entry)) if schema.engine_entry in present else None
    engine = detect_engine(entry, schema.engine_markers)
    if engine == "both":
        warnings.append("Multiple game engines detected")

    return ValidationReport(
        valid=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        required_found=tuple(found),
        required_missing=tuple(missing),
        forbidden_present=tuple(forbidden),
        total_files=len(all_files),
        engine=engine,
    )


def validate_project(
    project_dir: str,
    schema: ProjectSchema | None = None,
    schema_path: str | None = None,
) -> ValidationReport:
    """
    Validate a project tree.

    An internal failure (unreadable schema, walk error) never blocks the
    pipeline: it yields a passing report carrying a warning.
    """
    try:
        if schema is None:
            schema = load_schema(schema_path)
        report = _validate(project_dir, schema)
    except Exception as e:
        logger.exception("[validator] Validation could not run")
        return ValidationReport(valid=True, warnings=(f"Validation could not run: {e}",))

    if report.valid:
        logger.info("[validator] %s passed (%d warnings)", project_dir, len(report.warnings))
    else:
        logger.warning("[validator] %s failed: %s", project_dir, "; ".join(report.errors))
    return report


def format_validation_report(report: ValidationReport) -> str:
    """Human-readable summary of a report."""
    status = "PASSED" if report.valid else "FAILED"
    lines = [
        f"Structural validation {status}",
        f"  Files: {report.total_files}, engine: {report.engine}",
        f"  Required files: {len(report.required_found)} found, {report.required_missing_count} missing",
    ]
    if report.forbidden_present:
        lines.append(f"  Forbidden files: {', '.join(report.forbidden_present)}")
    for err in report.errors:
        lines.append(f"  ERROR: {err}")
    for warn in report.warnings:
        lines.append(f"  WARNING: {warn}")
    return "\n".join(lines)
