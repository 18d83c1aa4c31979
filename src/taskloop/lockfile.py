"""Lock files: the filesystem liveness record for a running agent process.

A lock is ``{"pid": int, "started": ISO-8601, ...context}``. It is not a
mutex. Its presence tells other processes (statusline, ``stop``, ``notify``)
that an agent is working, and deleting it asks the supervising loop to stop
its child. Several independent processes read, rewrite and delete the same
file, so every reader treats a missing or malformed lock as "no process".
"""

from __future__ import annotations

import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from taskloop import log
from taskloop.config import LOCK_FILE_NAME, SPECS_DIR, WATCH_LOCK_FILE
from taskloop.errors import LockFileError
from taskloop.io_utils import read_json_object, write_json_atomic

DEFAULT_GRACE_PERIOD = 0.5


def now_iso() -> str:
    """Local time with UTC offset, second precision."""
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass
class LockRecord:
    pid: int
    started: str = field(default_factory=now_iso)
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "started": self.started, **self.context}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "LockRecord | None":
        pid = raw.get("pid")
        started = raw.get("started")
        if isinstance(pid, bool) or not isinstance(pid, int):
            return None
        if not isinstance(started, str) or not started:
            return None
        context = {k: v for k, v in raw.items() if k not in ("pid", "started")}
        return cls(pid=pid, started=started, context=context)


class TerminateOutcome(str, Enum):
    NOT_RUNNING = "not_running"
    TERMINATED = "terminated"
    KILLED = "killed"


# ── file operations ──────────────────────────────────────────────


def write_lock(path: Path, record: LockRecord) -> None:
    """Persist *record* at *path*, creating parent directories.

    Raises :class:`LockFileError`; callers must not proceed without a lock.
    """
    try:
        write_json_atomic(path, record.to_dict())
    except OSError as e:
        raise LockFileError(f"Cannot write lock file {path}: {e}") from e
    log.debug(f"Lock written: {path} (pid {record.pid})")


def read_lock(path: Path) -> LockRecord | None:
    """Return the lock at *path*, or ``None`` if absent, corrupt or incomplete."""
    raw = read_json_object(path)
    if raw is None:
        return None
    return LockRecord.from_dict(raw)


def update_lock(path: Path, **fields: Any) -> bool:
    """Merge *fields* into an existing valid lock. ``False`` if there is none."""
    record = read_lock(path)
    if record is None:
        return False
    record.context.update(fields)
    write_lock(path, record)
    return True


def cleanup_lock(path: Path) -> bool:
    """Delete the lock if present. Never raises for an already-removed file.

    Returns ``True`` when this call removed the file.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        log.warn(f"Could not delete lock file {path}: {e}")
        return False
    log.debug(f"Lock removed: {path}")
    return True


def find_active_lock(project_dir: Path) -> Path | None:
    """First build lock under ``.taskloop/specs/*/``, else the watch lock."""
    specs = project_dir / SPECS_DIR
    if specs.is_dir():
        for spec_dir in sorted(p for p in specs.iterdir() if p.is_dir()):
            candidate = spec_dir / LOCK_FILE_NAME
            if candidate.is_file():
                return candidate
    watch_lock = project_dir / WATCH_LOCK_FILE
    if watch_lock.is_file():
        return watch_lock
    return None


# ── process probing ──────────────────────────────────────────────


def is_process_alive(pid: int) -> bool:
    """Probe *pid* with signal 0."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, owned by someone else
    except (OverflowError, OSError):
        return False
    return True


def _send(pid: int, sig: int) -> None:
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_signal() -> int:
    return int(getattr(signal, "SIGKILL", signal.SIGTERM))


def terminate_pid(pid: int, grace: float = DEFAULT_GRACE_PERIOD) -> TerminateOutcome:
    """SIGTERM, wait *grace* seconds, SIGKILL if the process is still alive.

    For a pid we did not spawn (``stop``/``notify``); the supervisor uses
    :func:`taskloop.supervisor.terminate_process` for its own children.
    """
    if not is_process_alive(pid):
        return TerminateOutcome.NOT_RUNNING

    log.debug(f"Sending SIGTERM to process {pid}")
    _send(pid, signal.SIGTERM)
    time.sleep(grace)

    if not is_process_alive(pid):
        return TerminateOutcome.TERMINATED

    log.debug(f"Process {pid} still running, sending SIGKILL")
    _send(pid, _kill_signal())
    return TerminateOutcome.KILLED
