"""
Manifest builder: combines the analyzer's DependencySet, the engine tag
and an optional base template into the project's package.json.
"""

import json
import logging
import re
from dataclasses import dataclass, field

from forge.dependency_analyzer import (
    DependencySet,
    ESSENTIAL_DEPENDENCIES,
    ESSENTIAL_DEV_DEPENDENCIES,
)

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
DEFAULT_SLUG = "game"

ENGINE_DEPENDENCIES = {
    "phaser": {"phaser": "^3.80.0"},
    "babylon": {
        "@babylonjs/core": "^7.0.0",
        "@babylonjs/gui": "^7.0.0",
        "@babylonjs/loaders": "^7.0.0",
    },
}

SCRIPTS = {
    "dev": "vite",
    "build": "vite build",
    "start": "vite preview",
    "preview": "vite preview",
}


@dataclass
class ProjectManifest:
    name: str
    engine: str = "none"
    version: str = "0.1.0"
    private: bool = True
    type: str = "module"
    scripts: dict[str, str] = field(default_factory=lambda: dict(SCRIPTS))
    dependencies: dict[str, str] = field(default_factory=dict)
    dev_dependencies: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "private": self.private,
            "version": self.version,
            "type": self.type,
            "scripts": dict(self.scripts),
            "dependencies": dict(sorted(self.dependencies.items())),
            "devDependencies": dict(sorted(self.dev_dependencies.items())),
        }

    def to_package_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2) + "\n"


def slugify(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Lowercase, [a-z0-9-] only, no stray hyphens, never empty."""
    slug = re.sub(r"[^a-z0-9]+", "-", (text or "").lower())
    slug = slug.strip("-")[:max_length].rstrip("-")
    return slug or DEFAULT_SLUG


def slugify_project_name(prompt: str) -> str:
    """Project name from the free-form request: first few words, slugified."""
    words = re.findall(r"[A-Za-z0-9]+", prompt or "")
    return slugify("-".join(words[:6]))


def build_manifest(
    project_name: str,
    engine: str,
    deps: DependencySet,
    base_template: dict | None = None,
) -> ProjectManifest:
    """
    Build the ProjectManifest.

    Precedence, lowest first: base template, analyzer results, essential
    sets (only filled in when absent), engine extras. Engine extras are
    added for a single positively detected engine only.
    """
    base = base_template or {}
    dependencies = dict(base.get("dependencies") or {})
    dev_dependencies = dict(base.get("devDependencies") or {})
    scripts = dict(SCRIPTS)

    dependencies.update(deps.runtime)
    dev_dependencies.update(deps.dev)

    for pkg, version in ESSENTIAL_DEPENDENCIES.items():
        dependencies.setdefault(pkg, version)
    for pkg, version in ESSENTIAL_DEV_DEPENDENCIES.items():
        dev_dependencies.setdefault(pkg, version)

    extras = ENGINE_DEPENDENCIES.get(engine)
    if extras:
        for pkg, version in extras.items():
            if dependencies.get(pkg) in (None, "latest"):
                dependencies[pkg] = version
    elif engine == "both":
        logger.warning("[manifest] Both engines detected, no engine dependencies added")

    manifest = ProjectManifest(
        name=slugify(project_name),
        engine=engine,
        version=base.get("version") or "0.1.0",
        scripts=scripts,
        dependencies=dependencies,
        dev_dependencies=dev_dependencies,
    )
    logger.info(
        "[manifest] %s: %d dependencies, %d devDependencies (engine=%s)",
        manifest.name, len(dependencies), len(dev_dependencies), engine,
    )
    return manifest
