"""
Extractor: pulls individual source files out of free-form chain output.

Each FileTarget carries an ordered list of strategies. Strategies are tried
most-specific first; the first one whose (sanitized) content passes the
target's sanity check wins. Nothing is ever invented here: a required file
that no strategy finds is reported as missing and left to the materializer.

Strategies, most specific first:
  DelimiterBlockStrategy   "// === src/App.tsx ===" blocks
  FencedBlockStrategy      markdown fences labelled with the path
  CommentMarkerStrategy    a bare "// src/App.tsx" comment line
  StructuralStrategy       per-target regex heuristics (last resort)
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Iterator

logger = logging.getLogger(__name__)

SOURCE_LLM = "llm-generated"
SOURCE_TEMPLATE = "template"
SOURCE_FALLBACK = "fallback"

CODE_TYPES = {"tsx", "typescript", "jsx", "javascript"}


# ---------------------------------------------------------------
# Types
# ---------------------------------------------------------------

@dataclass
class ExtractedFile:
    name: str
    content: str
    type: str
    source: str = SOURCE_LLM


@dataclass
class FileTarget:
    """A file the extractor should look for, and how to recognise it."""
    name: str
    required: bool = False
    aliases: list[str] = field(default_factory=list)
    # (module specifier, import statement) pairs prepended when absent
    required_imports: list[tuple[str, str]] = field(default_factory=list)
    min_length: int = 20
    strategies: list = field(default_factory=list)

    @property
    def type(self) -> str:
        return file_type(self.name)

    @property
    def names(self) -> list[str]:
        return [self.name, *self.aliases]

    def accepts(self, content: str) -> bool:
        """Sanity check: minimum length plus a type-specific shape."""
        if not content or len(content) < self.min_length:
            return False
        kind = self.type
        if kind in CODE_TYPES:
            return bool(re.search(r"\b(import|export|function|const|let|class)\b", content))
        if kind == "json":
            try:
                json.loads(content)
            except ValueError:
                return False
            return True
        if kind == "css":
            return "{" in content and "}" in content
        if kind == "html":
            return bool(re.search(r"<[a-zA-Z!]", content))
        return True


@dataclass
class ExtractionResult:
    files: list[ExtractedFile] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def get(self, name: str) -> ExtractedFile | None:
        for f in self.files:
            if f.name == name:
                return f
        return None


def file_type(filepath: str) -> str:
    """Map a file extension to a type tag."""
    if filepath.endswith(".tsx"):
        return "tsx"
    if filepath.endswith(".ts"):
        return "typescript"
    if filepath.endswith(".jsx"):
        return "jsx"
    if filepath.endswith((".js", ".mjs", ".cjs")):
        return "javascript"
    if filepath.endswith(".css"):
        return "css"
    if filepath.endswith(".json"):
        return "json"
    if filepath.endswith(".html"):
        return "html"
    if filepath.endswith(".md"):
        return "markdown"
    return "text"


# ---------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------

_FENCE_LINE = re.compile(r"^[ \t]*```.*$")
_PATH_TOKEN = r"(?:\./)?[\w@./-]+\.[A-Za-z0-9]{1,6}"
_DELIMITER_LINE = re.compile(
    r"^[ \t]*(?://|#|/\*|<!--)?[ \t]*===[ \t]*" + _PATH_TOKEN
    + r"[ \t]*===[ \t]*(?:\*/|-->)?[ \t]*$"
)
_SEPARATOR_LINE = re.compile(r"^[ \t]*(?:-{3,}|={3,})[ \t]*$")
_PROVENANCE_LINES = [
    re.compile(r"^[ \t]*//[ \t]*Generated by\b.*$", re.I),
    re.compile(r"^[ \t]*/\*[ \t]*Generated by\b.*?\*/[ \t]*$", re.I),
    re.compile(r"^[ \t]*<!--[ \t]*Generated by\b.*?-->[ \t]*$", re.I),
    re.compile(r"^[ \t]*//[ \t]*Enhanced Chain\b.*$", re.I),
    re.compile(r"^[ \t]*//[ \t]*Chat ID:.*$", re.I),
]
_DIRECTIVE_LINE = re.compile(r"""^[ \t]*(['"])use (client|server|strict)\1;?[ \t]*$""")


def _is_noise(line: str) -> bool:
    if _FENCE_LINE.match(line) or _DELIMITER_LINE.match(line) or _SEPARATOR_LINE.match(line):
        return True
    return any(p.match(line) for p in _PROVENANCE_LINES)


def sanitize_content(content: str) -> str:
    """
    Strip fence markers, delimiter and separator lines, and provenance
    comments; collapse runs of blank lines; trim. Idempotent.
    """
    if not content:
        return ""
    text = content.replace("\r\n", "\n").replace("\r", "\n")
    lines = [line.rstrip() for line in text.split("\n") if not _is_noise(line)]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _has_import(content: str, module: str) -> bool:
    quoted = re.escape(module)
    pattern = rf"""(?:\bfrom[ \t]+|\bimport[ \t]*\(?[ \t]*|\brequire\([ \t]*)['"]{quoted}['"]"""
    return bool(re.search(pattern, content))


def ensure_imports(content: str, required_imports: list[tuple[str, str]]) -> str:
    """Prepend required imports whose module is not imported yet. Idempotent."""
    missing = [stmt for module, stmt in required_imports if not _has_import(content, module)]
    if not missing:
        return content

    lines = content.split("\n")
    head = 0
    while head < len(lines) and _DIRECTIVE_LINE.match(lines[head]):
        head += 1
    return "\n".join(lines[:head] + missing + lines[head:])


# ---------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------

def _names_pattern(target: FileTarget) -> str:
    return "(?:" + "|".join(r"(?:\./)?" + re.escape(n) for n in target.names) + ")"


class ExtractionStrategy:
    """Base strategy: yield raw candidates in document order."""

    name = "base"
    specificity = 0

    def candidates(self, text: str, target: FileTarget) -> Iterator[str]:
        raise NotImplementedError

    def try_extract(self, text: str, target: FileTarget) -> str | None:
        for raw in self.candidates(text, target):
            content = ensure_imports(sanitize_content(raw), target.required_imports)
            if target.accepts(content):
                return content
        return None


class DelimiterBlockStrategy(ExtractionStrategy):
    """`// === path ===` headers; the block runs to the next header or end of text."""

    name = "delimiter"
    specificity = 40

    def candidates(self, text, target):
        header = re.compile(
            r"^[ \t]*(?://|#|/\*|<!--)?[ \t]*===[ \t]*" + _names_pattern(target)
            + r"[ \t]*===[ \t]*(?:\*/|-->)?[ \t]*$",
            re.M,
        )
        for m in header.finditer(text):
            nxt = _DELIMITER_LINE_M.search(text, m.end())
            yield text[m.end():nxt.start() if nxt else len(text)]


_DELIMITER_LINE_M = re.compile(_DELIMITER_LINE.pattern, re.M)


class FencedBlockStrategy(ExtractionStrategy):
    """Markdown fences labelled with the path, on the fence line or a heading just above it."""

    name = "fenced"
    specificity = 30

    def candidates(self, text, target):
        names = _names_pattern(target)
        inline = re.compile(
            r"^[ \t]*```[\w+.-]*[ \t]+(?:title=)?[\"'`]?" + names + r"[\"'`]?[^\n]*\n(.*?)^[ \t]*```[ \t]*$",
            re.M | re.S,
        )
        heading = re.compile(
            r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\*\*)?`?" + names + r"`?(?:\*\*)?:?[ \t]*\n"
            r"(?:[ \t]*\n)*[ \t]*```[\w+.-]*[ \t]*\n(.*?)^[ \t]*```[ \t]*$",
            re.M | re.S,
        )
        matches = list(inline.finditer(text)) + list(heading.finditer(text))
        matches.sort(key=lambda m: m.start())
        for m in matches:
            yield m.group(1)


class CommentMarkerStrategy(ExtractionStrategy):
    """A bare `// path` line; content runs to the next path-like marker or delimiter."""

    name = "comment-marker"
    specificity = 20

    _NEXT_MARKER = re.compile(
        r"^(?:[ \t]*(?://|/\*)[ \t]*" + _PATH_TOKEN + r"[ \t]*(?:\*/)?[ \t]*$"
        r"|" + _DELIMITER_LINE.pattern[1:] + ")",
        re.M,
    )

    def candidates(self, text, target):
        marker = re.compile(
            r"^[ \t]*(?://|/\*)[ \t]*" + _names_pattern(target) + r"[ \t]*(?:\*/)?[ \t]*$",
            re.M,
        )
        for m in marker.finditer(text):
            nxt = self._NEXT_MARKER.search(text, m.end())
            yield text[m.end():nxt.start() if nxt else len(text)]


class StructuralStrategy(ExtractionStrategy):
    """
    Last-resort regex heuristic. A match must be at least `min_length` long
    and satisfy every pattern in `requires` (e.g. a declaration and a
    return/export).
    """

    name = "structural"
    specificity = 10

    def __init__(self, pattern: str, requires: list[str] | None = None, min_length: int = 200):
        self.pattern = re.compile(pattern, re.S | re.M)
        self.requires = [re.compile(r) for r in (requires or [])]
        self.min_length = min_length

    def candidates(self, text, target):
        for m in self.pattern.finditer(text):
            chunk = m.group(0)
            if len(chunk.strip()) < self.min_length:
                continue
            if all(r.search(chunk) for r in self.requires):
                yield chunk


def _ordered(strategies: list) -> list:
    # Stable sort keeps declaration order among equally specific strategies
    return sorted(strategies, key=lambda s: -s.specificity)


# ---------------------------------------------------------------
# Public API
# ---------------------------------------------------------------

def extract_file(text: str, target: FileTarget) -> str | None:
    """Return the sanitized content for one target, or None."""
    if not text:
        return None
    strategies = target.strategies or _standard_strategies()
    for strategy in _ordered(strategies):
        content = strategy.try_extract(text, target)
        if content is not None:
            logger.debug("[extractor] %s matched by %s strategy", target.name, strategy.name)
            return content
    return None


def extract_files(text: str, targets: list[FileTarget] | None = None) -> ExtractionResult:
    """
    Run every target against the text.

    Returns ExtractionResult(files, missing): `files` holds one
    ExtractedFile per located target (source "llm-generated"), `missing`
    lists required targets nothing matched.
    """
    targets = targets if targets is not None else default_targets()
    result = ExtractionResult()
    seen = set()

    for target in targets:
        if target.name in seen:
            logger.info("[extractor] Duplicate target %s ignored", target.name)
            continue
        content = extract_file(text, target)
        if content is None:
            if target.required:
                result.missing.append(target.name)
            continue
        seen.add(target.name)
        result.files.append(ExtractedFile(
            name=target.name,
            content=content,
            type=target.type,
            source=SOURCE_LLM,
        ))

    logger.info(
        "[extractor] Extracted %d file(s), %d required missing",
        len(result.files), len(result.missing),
    )
    return result


def _standard_strategies() -> list:
    return [DelimiterBlockStrategy(), FencedBlockStrategy(), CommentMarkerStrategy()]


# ---------------------------------------------------------------
# Default targets (Vite + React layout)
# ---------------------------------------------------------------

REACT_IMPORT = ("react", "import React, { useEffect, useRef, useState } from 'react';")
REACT_DOM_IMPORT = ("react-dom/client", "import ReactDOM from 'react-dom/client';")

# Structural patterns never cross into another module's default export
_NO_EXPORT = r"(?:(?!export\s+default)[\s\S])*?"

APP_STRUCTURE = (
    r"^import[^\n]*['\"]react['\"][^\n]*\n" + _NO_EXPORT
    + r"(?:function|const)\s+App\b[\s\S]*?export\s+default\s+App\b;?"
)
MAIN_STRUCTURE = (
    r"^import[^\n]*\n" + _NO_EXPORT + r"createRoot[\s\S]*?\.render\([\s\S]*?\);"
)
GAME_COMPONENT_STRUCTURE = (
    r"^import[^\n]*\n" + _NO_EXPORT
    + r"(?:function|const)\s+GameComponent\b[\s\S]*?export\s+default\s+GameComponent\b;?"
)


def default_targets() -> list[FileTarget]:
    """Targets for the Vite + React game layout."""
    return [
        FileTarget(
            name="src/App.tsx",
            required=True,
            aliases=["App.tsx"],
            min_length=50,
            strategies=_standard_strategies() + [
                StructuralStrategy(
                    APP_STRUCTURE,
                    requires=[r"(?:function|const)\s+App\b", r"\breturn\b|export\s+default"],
                ),
            ],
        ),
        FileTarget(
            name="src/main.tsx",
            required=True,
            aliases=["main.tsx"],
            required_imports=[REACT_DOM_IMPORT],
            min_length=50,
            strategies=_standard_strategies() + [
                StructuralStrategy(MAIN_STRUCTURE, requires=[r"createRoot"], min_length=80),
            ],
        ),
        FileTarget(
            name="src/components/GameComponent.tsx",
            aliases=["components/GameComponent.tsx", "GameComponent.tsx"],
            required_imports=[REACT_IMPORT],
            min_length=50,
            strategies=_standard_strategies() + [
                StructuralStrategy(
                    GAME_COMPONENT_STRUCTURE,
                    requires=[r"(?:function|const)\s+GameComponent\b", r"\breturn\b"],
                ),
            ],
        ),
        FileTarget(name="src/App.css", aliases=["App.css"], min_length=5),
        FileTarget(name="src/index.css", aliases=["index.css"], min_length=5),
    ]
