"""Extract ``@ai`` comments from source files for watch mode.

Comment syntax is chosen per file extension; ``*.blade.php`` is its own
style. The captured text is normalised to ``"<search word> <body>"``.
"""

from __future__ import annotations

import fnmatch
import os
import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from taskloop.config import DEFAULT_SEARCH_WORD, DEFAULT_STOP_WORD
from taskloop.lockfile import now_iso

MAX_FILE_SIZE = 1024 * 1024

WATCHABLE_EXTENSIONS = frozenset({
    "php", "js", "jsx", "ts", "tsx", "mjs", "cjs",
    "py", "rb", "html", "htm", "vue", "svelte",
    "css", "scss", "sass", "less", "sql",
    "sh", "bash", "zsh", "yaml", "yml",
    "go", "rs", "java", "kt", "scala",
    "c", "cpp", "cc", "h", "hpp",
})

# Directory names never scanned or watched.
IGNORED_DIRS = ("vendor", "node_modules", "storage", ".git", ".idea", ".vscode", ".taskloop")
IGNORED_GLOBS = ("**/bootstrap/cache/**", "*.log", ".DS_Store")

# Comment shapes, each with ``{w}`` standing for the escaped search word.
_LINE_SLASH = r"//\s*{w}\b(.*)$"
_LINE_HASH = r"#\s*{w}\b(.*)$"
_LINE_DASH = r"--\s*{w}\b(.*)$"
_BLOCK_C = r"/\*\s*{w}\b([\s\S]*?)\*/"
_BLOCK_HTML = r"<!--\s*{w}\b([\s\S]*?)-->"
_BLOCK_BLADE = r"\{{\{{--\s*{w}\b([\s\S]*?)--\}}\}}"
_DOC_DOUBLE = r'"""\s*{w}\b([\s\S]*?)"""'
_DOC_SINGLE = r"'''\s*{w}\b([\s\S]*?)'''"
_BLOCK_RUBY = r"=begin\s*{w}\b([\s\S]*?)=end"

_C_STYLE = (_LINE_SLASH, _BLOCK_C)

_STYLES: dict[str, tuple[str, ...]] = {
    "php": (_LINE_SLASH, _BLOCK_C, _LINE_HASH),
    "blade.php": (_BLOCK_BLADE, _BLOCK_HTML, _LINE_SLASH, _BLOCK_C, _LINE_HASH),
    "py": (_LINE_HASH, _DOC_DOUBLE, _DOC_SINGLE),
    "rb": (_LINE_HASH, _BLOCK_RUBY),
    "css": (_BLOCK_C, _LINE_SLASH),
    "sql": (_LINE_DASH, _BLOCK_C),
}
for _ext in ("js", "jsx", "ts", "tsx", "mjs", "cjs", "go", "rs", "java", "kt", "scala",
             "c", "cpp", "cc", "h", "hpp"):
    _STYLES[_ext] = _C_STYLE
for _ext in ("html", "htm", "vue", "svelte"):
    _STYLES[_ext] = (_BLOCK_HTML,)
for _ext in ("scss", "sass", "less"):
    _STYLES[_ext] = _STYLES["css"]
for _ext in ("sh", "bash", "zsh", "yaml", "yml"):
    _STYLES[_ext] = (_LINE_HASH,)

_DEFAULT_STYLE = (_LINE_SLASH, _LINE_HASH, _BLOCK_C, _BLOCK_HTML)


def effective_extension(path: str | Path) -> str:
    name = Path(path).name
    if name.endswith(".blade.php"):
        return "blade.php"
    return Path(name).suffix.lstrip(".").lower()


def is_watchable(path: str | Path) -> bool:
    ext = effective_extension(path)
    return ext == "blade.php" or ext in WATCHABLE_EXTENSIONS


def is_excluded(rel_path: str, exclude: Iterable[str] = ()) -> bool:
    """Match *rel_path* (posix, project-relative) against ignore globs."""
    parts = rel_path.split("/")
    if any(p in IGNORED_DIRS for p in parts[:-1]):
        return True
    name = parts[-1]
    for pattern in (*IGNORED_GLOBS, *exclude):
        # A leading "**/" also matches at the top level.
        variants = (pattern, pattern[3:]) if pattern.startswith("**/") else (pattern,)
        for p in variants:
            if fnmatch.fnmatch(rel_path, p) or fnmatch.fnmatch(name, p):
                return True
    return False


def collect_files(root: Path, paths: Iterable[str], exclude: Iterable[str] = ()) -> list[str]:
    """All watchable files below each of *paths* (relative to *root*)."""
    exclude = tuple(exclude)
    found: list[str] = []
    for rel in paths:
        base = root / rel
        if base.is_file():
            if is_watchable(base):
                found.append(str(base))
            continue
        if not base.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for name in sorted(filenames):
                full = Path(dirpath) / name
                if not is_watchable(full):
                    continue
                try:
                    rel_path = full.relative_to(root).as_posix()
                except ValueError:
                    rel_path = full.as_posix()
                if not is_excluded(rel_path, exclude):
                    found.append(str(full))
    return list(dict.fromkeys(found))


@dataclass
class Comment:
    file: str
    line: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "text": self.text}


@dataclass
class ScanResult:
    comments: list[Comment] = field(default_factory=list)
    stop_word_found: bool = False
    stop_word_file: str | None = None
    files_scanned: int = 0
    timestamp: str = field(default_factory=now_iso)

    @property
    def files(self) -> list[str]:
        """Distinct files with comments, in first-seen order."""
        return list(dict.fromkeys(c.file for c in self.comments))

    def to_dict(self) -> dict[str, Any]:
        return {
            "comments": [c.to_dict() for c in self.comments],
            "metadata": {
                "stopWordFound": self.stop_word_found,
                "stopWordFile": self.stop_word_file,
                "filesScanned": self.files_scanned,
                "timestamp": self.timestamp,
            },
        }


class CommentScanner:
    def __init__(
        self,
        search_word: str = DEFAULT_SEARCH_WORD,
        stop_word: str = DEFAULT_STOP_WORD,
    ) -> None:
        self.search_word = search_word
        self.stop_word = stop_word
        self._compiled: dict[str, list[re.Pattern[str]]] = {}

    def comment_patterns(self, extension: str) -> list[re.Pattern[str]]:
        ext = extension.lower()
        if ext not in self._compiled:
            word = re.escape(self.search_word)
            shapes = _STYLES.get(ext, _DEFAULT_STYLE)
            self._compiled[ext] = [re.compile(s.format(w=word), re.MULTILINE) for s in shapes]
        return self._compiled[ext]

    def has_stop_word(self, text: str) -> bool:
        return self.stop_word.lower() in text.lower()

    def extract_from_file(self, path: str | Path) -> list[Comment]:
        """Comments in one file, sorted by line. Unreadable or >1 MiB files yield none."""
        p = Path(path)
        try:
            if not p.is_file() or p.stat().st_size > MAX_FILE_SIZE:
                return []
            content = p.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return []

        found: list[Comment] = []
        for pattern in self.comment_patterns(effective_extension(p)):
            for m in pattern.finditer(content):
                line = content.count("\n", 0, m.start()) + 1
                body = (m.group(1) or "").strip()
                found.append(Comment(file=str(path), line=line, text=f"{self.search_word} {body}"))
        found.sort(key=lambda c: c.line)
        return found

    def scan_files(self, paths: Iterable[str | Path]) -> ScanResult:
        result = ScanResult()
        for path in paths:
            result.files_scanned += 1
            for comment in self.extract_from_file(path):
                result.comments.append(comment)
                if not result.stop_word_found and self.has_stop_word(comment.text):
                    result.stop_word_found = True
                    result.stop_word_file = str(path)
        return result


def group_by_file(comments: Iterable[Comment]) -> "OrderedDict[str, list[Comment]]":
    grouped: OrderedDict[str, list[Comment]] = OrderedDict()
    for c in comments:
        grouped.setdefault(c.file, []).append(c)
    return grouped
