"""
Dependency analyzer: infers the package set from import statements.

Pure function over the extracted files: no network, no filesystem.
Unknown packages resolve to "latest" and are reported as unresolved.
"""

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SCRIPT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

# Known-good version constraints
KNOWN_VERSIONS = {
    "react": "^18.3.1",
    "react-dom": "^18.3.1",
    "@types/react": "^18.3.3",
    "@types/react-dom": "^18.3.0",
    "@types/node": "^20.14.0",
    "typescript": "^5.5.3",
    "vite": "^5.4.0",
    "@vitejs/plugin-react": "^4.3.1",
    "phaser": "^3.80.0",
    "@babylonjs/core": "^7.0.0",
    "@babylonjs/gui": "^7.0.0",
    "@babylonjs/loaders": "^7.0.0",
    "@babylonjs/materials": "^7.0.0",
    "three": "^0.167.0",
    "@types/three": "^0.167.0",
    "@react-three/fiber": "^8.17.0",
    "@react-three/drei": "^9.109.0",
    "pixi.js": "^8.2.0",
    "matter-js": "^0.20.0",
    "@types/matter-js": "^0.19.6",
    "cannon-es": "^0.20.0",
    "howler": "^2.2.4",
    "@types/howler": "^2.2.11",
    "gsap": "^3.12.5",
    "framer-motion": "^11.3.0",
    "zustand": "^4.5.4",
    "lucide-react": "^0.417.0",
    "clsx": "^2.1.1",
    "tailwind-merge": "^2.4.0",
    "@radix-ui/react-dialog": "^1.1.1",
    "uuid": "^10.0.0",
    "lodash": "^4.17.21",
    "simplex-noise": "^4.0.1",
}

# Always present, whatever the imports say
ESSENTIAL_DEPENDENCIES = {
    "react": KNOWN_VERSIONS["react"],
    "react-dom": KNOWN_VERSIONS["react-dom"],
    "@types/react": KNOWN_VERSIONS["@types/react"],
    "@types/react-dom": KNOWN_VERSIONS["@types/react-dom"],
}
ESSENTIAL_DEV_DEPENDENCIES = {
    "typescript": KNOWN_VERSIONS["typescript"],
    "vite": KNOWN_VERSIONS["vite"],
    "@vitejs/plugin-react": KNOWN_VERSIONS["@vitejs/plugin-react"],
}

DEV_PACKAGES = {"typescript", "vite", "eslint", "prettier"}

NODE_BUILTINS = {
    "assert", "buffer", "child_process", "cluster", "crypto", "dgram", "dns",
    "events", "fs", "http", "http2", "https", "net", "os", "path", "perf_hooks",
    "process", "querystring", "readline", "stream", "string_decoder", "timers",
    "tls", "tty", "url", "util", "v8", "vm", "worker_threads", "zlib",
}

IMPORT_PATTERNS = [
    # import x from 'pkg' / import { a } from "pkg" / export * from 'pkg'
    re.compile(r"""\b(?:import|export)\s[^'";]*?\bfrom\s*['"]([^'"\n]+)['"]"""),
    # import 'pkg'
    re.compile(r"""\bimport\s*['"]([^'"\n]+)['"]"""),
    # import('pkg')
    re.compile(r"""\bimport\s*\(\s*['"]([^'"\n]+)['"]\s*\)"""),
    # require('pkg')
    re.compile(r"""\brequire\s*\(\s*['"]([^'"\n]+)['"]\s*\)"""),
]


@dataclass
class DependencySet:
    """Runtime and build-time packages mapped to version constraints."""
    runtime: dict[str, str] = field(default_factory=dict)
    dev: dict[str, str] = field(default_factory=dict)
    unresolved: set[str] = field(default_factory=set)

    def names(self) -> set[str]:
        return set(self.runtime) | set(self.dev)

    def as_dict(self) -> dict:
        return {
            "dependencies": dict(sorted(self.runtime.items())),
            "devDependencies": dict(sorted(self.dev.items())),
            "unresolved": sorted(self.unresolved),
        }


def package_name(specifier: str) -> str | None:
    """
    Reduce an import specifier to its package name.

    Returns None for anything that isn't an installable package: relative
    and absolute paths, path aliases, URLs, virtual modules, Node built-ins.
    """
    name = specifier.strip()
    if not name or name.startswith((".", "/", "~/", "@/", "#")):
        return None
    if name.startswith(("node:", "virtual:", "data:", "http:", "https:")):
        return None

    parts = name.split("/")
    if name.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = f"{parts[0]}/{parts[1]}"
    else:
        name = parts[0]

    if name in NODE_BUILTINS:
        return None
    return name


def is_dev_package(name: str) -> bool:
    return (
        name in DEV_PACKAGES
        or name.startswith("@types/")
        or name.startswith("@vitejs/")
        or name.startswith("vite-plugin-")
    )


def find_imports(content: str) -> set[str]:
    """All package names imported by one source file."""
    found = set()
    for pattern in IMPORT_PATTERNS:
        for m in pattern.finditer(content):
            name = package_name(m.group(1))
            if name:
                found.add(name)
    return found


def analyze_dependencies(files) -> DependencySet:
    """
    Build the DependencySet for a list of ExtractedFile (or a
    {path: content} dict). Order of the input never changes the result.
    """
    if isinstance(files, dict):
        items = list(files.items())
    else:
        items = [(f.name, f.content) for f in files]

    imported = set()
    for name, content in items:
        if name.endswith(SCRIPT_EXTENSIONS) and content:
            imported |= find_imports(content)

    deps = DependencySet()
    for pkg in sorted(imported):
        version = KNOWN_VERSIONS.get(pkg)
        if version is None:
            version = "latest"
            deps.unresolved.add(pkg)
        if is_dev_package(pkg):
            deps.dev[pkg] = version
        else:
            deps.runtime[pkg] = version

    for pkg, version in ESSENTIAL_DEPENDENCIES.items():
        deps.runtime.setdefault(pkg, version)
    for pkg, version in ESSENTIAL_DEV_DEPENDENCIES.items():
        deps.dev.setdefault(pkg, version)

    # A package listed as runtime and as a build tool stays in one place
    for pkg in list(deps.dev):
        if pkg in deps.runtime and pkg not in ESSENTIAL_DEV_DEPENDENCIES:
            deps.dev.pop(pkg)

    if deps.unresolved:
        logger.warning("[deps] No known version for %s, using latest", ", ".join(sorted(deps.unresolved)))
    logger.info("[deps] %d runtime, %d dev dependencies", len(deps.runtime), len(deps.dev))
    return deps
