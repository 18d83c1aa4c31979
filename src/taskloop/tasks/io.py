"""Load and persist ``tasks.json`` task graphs."""

from __future__ import annotations

import json
from pathlib import Path

from taskloop import log
from taskloop.errors import TaskGraphError
from taskloop.io_utils import read_text, write_json_atomic
from taskloop.tasks.model import TaskGraph, TaskStatus


def load_task_graph(path: Path) -> TaskGraph:
    """Read and validate the task graph at *path*.

    Raises :class:`TaskGraphError` with a message naming the file for a
    missing file, invalid JSON, a non-object root or a missing ``tasks`` array.
    """
    if not path.is_file():
        raise TaskGraphError(f"Tasks file not found: {path}")

    try:
        raw = json.loads(read_text(path))
    except json.JSONDecodeError as e:
        raise TaskGraphError(f"Invalid JSON in tasks file {path}: {e.msg} (line {e.lineno})") from e
    except (OSError, UnicodeDecodeError) as e:
        raise TaskGraphError(f"Cannot read tasks file {path}: {e}") from e

    if not isinstance(raw, dict):
        raise TaskGraphError(
            f"Tasks file {path} must contain a JSON object, found {type(raw).__name__}"
        )

    try:
        return TaskGraph.from_dict(raw)
    except TaskGraphError as e:
        raise TaskGraphError(f"{e} ({path})") from e


def save_task_graph(path: Path, graph: TaskGraph) -> None:
    """Rewrite the whole graph file atomically."""
    write_json_atomic(path, graph.to_dict())


def set_task_status(path: Path, task_id: int, status: TaskStatus) -> bool:
    """Reload *path*, set one task's status and write it back.

    Returns ``False`` when the task id is not in the graph.
    """
    graph = load_task_graph(path)
    task = graph.get_task(task_id)
    if task is None:
        return False
    task.status = status.value
    save_task_graph(path, graph)
    log.debug(f"Task {task_id}: -> {status.value}")
    return True
