"""Completion signals and per-task / cumulative build statistics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from taskloop import log
from taskloop.git_ops import DiffStats
from taskloop.io_utils import read_json_object, write_json_atomic
from taskloop.lockfile import now_iso
from taskloop.tasks.model import TaskGraph, TaskStatus

_COUNTERS = ("filesChanged", "linesAdded", "linesRemoved")


@dataclass
class CompletionSignal:
    task_id: int
    started_at: str
    completed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }

    @property
    def duration_seconds(self) -> int:
        start = parse_timestamp(self.started_at)
        end = parse_timestamp(self.completed_at)
        if start is None or end is None:
            return 0
        return max(0, int((end - start).total_seconds()))


def parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def read_signal(path: Path) -> CompletionSignal | None:
    """Return the completion signal at *path*, or ``None`` if absent/invalid."""
    raw = read_json_object(path)
    if raw is None:
        return None
    task_id = raw.get("taskId")
    if isinstance(task_id, bool) or not isinstance(task_id, int):
        return None
    started = raw.get("startedAt")
    completed = raw.get("completedAt")
    return CompletionSignal(
        task_id=task_id,
        started_at=started if isinstance(started, str) else "",
        completed_at=completed if isinstance(completed, str) else now_iso(),
    )


def write_signal(path: Path, task_id: int, started_at: str | None = None) -> CompletionSignal:
    sig = CompletionSignal(
        task_id=task_id,
        started_at=started_at or now_iso(),
        completed_at=now_iso(),
    )
    write_json_atomic(path, sig.to_dict())
    return sig


def discard_signal(path: Path) -> bool:
    """Remove a (stale or consumed) signal file; absent is fine."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def apply_completion(graph: TaskGraph, signal: CompletionSignal, diff: DiffStats) -> bool:
    """Mark the signalled task completed and merge telemetry into *graph*.

    Task ``stats`` get timestamps, duration and diff counters; root ``stats``
    accumulate the diff counters. Returns ``False`` for an unknown task id.
    """
    task = graph.get_task(signal.task_id)
    if task is None:
        log.warn(f"Completion signal for unknown task #{signal.task_id}; ignoring")
        return False

    task.status = TaskStatus.COMPLETED.value
    task.stats = {
        **(task.stats or {}),
        "startedAt": signal.started_at,
        "completedAt": signal.completed_at,
        "durationSeconds": signal.duration_seconds,
        "filesChanged": diff.files_changed,
        "linesAdded": diff.lines_added,
        "linesRemoved": diff.lines_removed,
    }

    root = dict(graph.stats or {})
    increments = (diff.files_changed, diff.lines_added, diff.lines_removed)
    for key, inc in zip(_COUNTERS, increments):
        root[key] = _as_int(root.get(key)) + inc
    graph.stats = root
    return True


def _as_int(value: object) -> int:
    try:
        return max(0, int(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0


@dataclass
class BuildTotals:
    duration_seconds: int = 0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


def build_totals(graph: TaskGraph) -> BuildTotals:
    """Sum task durations; take change counters from the root ``stats``."""
    totals = BuildTotals()
    for task in graph.tasks:
        if task.stats:
            totals.duration_seconds += _as_int(task.stats.get("durationSeconds"))
    root = graph.stats or {}
    totals.files_changed = _as_int(root.get("filesChanged"))
    totals.lines_added = _as_int(root.get("linesAdded"))
    totals.lines_removed = _as_int(root.get("linesRemoved"))
    return totals


def format_duration(seconds: int) -> str:
    """``45s``, ``7m 0s``, ``1h 2m 3s``."""
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
