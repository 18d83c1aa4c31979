"""Wrappers for text and JSON file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding. Forwards extra kwargs to Path.write_text."""
    p = path if isinstance(path, Path) else Path(path)
    p.write_text(text, encoding="utf-8", **kwargs)


def dump_json(data: Any) -> str:
    """Serialize *data* the way every taskloop file is stored on disk."""
    return json.dumps(data, indent=4, ensure_ascii=False) + "\n"


def write_json_atomic(path: PathLike, data: Any) -> None:
    """Write *data* as JSON via a sibling temp file and ``os.replace``.

    Readers never observe a half-written file. Parent directories are created.
    ``OSError`` propagates to the caller.
    """
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", suffix=".tmp", dir=p.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(dump_json(data))
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def read_json_object(path: PathLike) -> dict[str, Any] | None:
    """Return the JSON object stored at *path*, or ``None``.

    ``None`` covers a missing file, unreadable file, invalid JSON and a
    top-level value that is not an object.
    """
    p = path if isinstance(path, Path) else Path(path)
    try:
        raw = read_text(p)
    except (OSError, UnicodeDecodeError):
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
