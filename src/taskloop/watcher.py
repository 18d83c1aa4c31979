"""File watcher subprocess for ``taskloop watch``.

Run as ``python -m taskloop.watcher [PATHS...] [--exclude=a,b]``. Emits one
JSON object per line on stdout::

    {"event": "ready", "paths": [...], "ignored": [...], "timestamp": "..."}
    {"event": "add" | "change" | "unlink" | "addDir" | "unlinkDir", "path": "/abs", "timestamp": "..."}
    {"event": "shutdown", "signal": "SIGTERM", "timestamp": "..."}

Errors go to stderr as ``{"event": "error", "error": "...", "timestamp": "..."}``.
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

import click
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from taskloop.comments import IGNORED_DIRS, IGNORED_GLOBS, is_excluded
from taskloop.config import DEFAULT_WATCH_PATHS

_emit_lock = threading.Lock()


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def emit(payload: dict[str, Any], stream: IO[str] | None = None) -> None:
    """Write one JSON line and flush; safe to call from observer threads."""
    out = stream or sys.stdout
    line = json.dumps({**payload, "timestamp": _timestamp()})
    with _emit_lock:
        out.write(line + "\n")
        out.flush()


def emit_error(message: str) -> None:
    emit({"event": "error", "error": message}, sys.stderr)


class JsonLineHandler(FileSystemEventHandler):
    """Translate watchdog events into the watcher's JSON-line vocabulary."""

    def __init__(self, root: Path, exclude: tuple[str, ...] = ()) -> None:
        super().__init__()
        self.root = root
        self.exclude = exclude

    def _ignored(self, path: str) -> bool:
        try:
            rel = Path(path).resolve().relative_to(self.root).as_posix()
        except ValueError:
            rel = Path(path).as_posix()
        return is_excluded(rel, self.exclude)

    def _emit(self, event: str, path: str | bytes) -> None:
        p = os.fsdecode(path)
        if self._ignored(p):
            return
        emit({"event": event, "path": os.path.abspath(p)})

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit("addDir" if event.is_directory else "add", event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._emit("change", event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit("unlinkDir" if event.is_directory else "unlink", event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # Editors save atomically via rename; report as delete + add.
        self._emit("unlinkDir" if event.is_directory else "unlink", event.src_path)
        self._emit("addDir" if event.is_directory else "add", event.dest_path)


def watch(paths: list[str], exclude: tuple[str, ...]) -> int:
    root = Path.cwd().resolve()
    handler = JsonLineHandler(root, exclude)
    observer = Observer()

    watched: list[str] = []
    for rel in paths:
        target = (root / rel).resolve()
        if not target.exists():
            emit_error(f"Path does not exist: {rel}")
            continue
        observer.schedule(handler, str(target), recursive=True)
        watched.append(rel)

    stop = threading.Event()
    received: list[str] = []

    def _on_signal(signum: int, _frame: object) -> None:
        received.append(signal.Signals(signum).name)
        stop.set()

    for sig in (signal.SIGTERM, signal.SIGINT, getattr(signal, "SIGHUP", None)):
        if sig is not None:
            signal.signal(sig, _on_signal)

    try:
        observer.start()
    except OSError as e:
        emit_error(f"Cannot start watcher: {e}")
        return 1

    emit({
        "event": "ready",
        "paths": watched,
        "ignored": [f"**/{d}/**" for d in IGNORED_DIRS] + list(IGNORED_GLOBS) + list(exclude),
    })

    code = 0
    while not stop.wait(0.5):
        if not observer.is_alive():
            emit_error("Observer thread stopped unexpectedly")
            code = 1
            break

    if received:
        emit({"event": "shutdown", "signal": received[0]})
    observer.stop()
    observer.join(timeout=5)
    return code


@click.command()
@click.argument("paths", nargs=-1)
@click.option("--exclude", default="", help="Comma-separated glob patterns to ignore.")
def main(paths: tuple[str, ...], exclude: str) -> None:
    patterns = tuple(p.strip() for p in exclude.split(",") if p.strip())
    sys.exit(watch(list(paths) or list(DEFAULT_WATCH_PATHS), patterns))


if __name__ == "__main__":
    main()
