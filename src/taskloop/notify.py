"""``taskloop notify``: signals sent by the agent back to the loops.

Each action is a stateless handler returning an exit code. Prompting is gated
by :class:`PermissionMode`: ``yolo`` auto-continues, other modes ask.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import click
from rich.markup import escape

from taskloop import log
from taskloop.config import COMPLETION_SIGNAL_NAME, PermissionMode
from taskloop.errors import LockFileError
from taskloop.io_utils import read_text
from taskloop.lockfile import TerminateOutcome, cleanup_lock, terminate_pid
from taskloop.stats import write_signal

Confirm = Callable[[str], bool]


def _default_confirm(prompt: str) -> bool:
    return click.confirm(prompt, default=True)


def _json_data(data: str | None) -> dict[str, Any] | None:
    if not data:
        return None
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def load_lock_strict(lock_path: str | None) -> dict[str, Any]:
    """Parse a lock for a stop request, naming exactly what is wrong."""
    if not lock_path:
        raise LockFileError("Lock path is required")
    path = Path(lock_path)
    if not path.is_file():
        raise LockFileError(f"Lock file not found: {path}")
    try:
        raw = json.loads(read_text(path))
    except (OSError, UnicodeDecodeError) as e:
        raise LockFileError(f"Cannot read lock file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise LockFileError(f"Invalid JSON in lock file {path}: {e.msg}") from e
    if not isinstance(raw, dict):
        raise LockFileError(f"Invalid JSON in lock file {path}: expected an object")
    pid = raw.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        raise LockFileError(f"Lock file {path} missing 'pid' field")
    return raw


def stop_locked_process(
    lock_path: str | None,
    *,
    task_id: int | None = None,
    grace: float = 0.5,
) -> None:
    """Terminate the process named in a lock file and remove the lock.

    With *task_id*, a ``completed.json`` is written next to the lock first,
    so the supervising loop finds it as soon as it sees the agent exit.
    """
    lock = load_lock_strict(lock_path)
    path = Path(str(lock_path))
    pid = lock["pid"]

    if task_id is not None:
        started = lock.get("started")
        write_signal(
            path.parent / COMPLETION_SIGNAL_NAME,
            task_id,
            started if isinstance(started, str) else None,
        )
        log.debug(f"Completion signal written for task #{task_id}")

    log.console.print(f"Sending SIGTERM to process {pid}...")
    match terminate_pid(pid, grace):
        case TerminateOutcome.NOT_RUNNING:
            log.console.print(f"Process {pid} is not running")
        case TerminateOutcome.KILLED:
            log.console.print("Process still running, sent SIGKILL")
        case _:
            pass

    cleanup_lock(path)


# ── actions ──────────────────────────────────────────────────────


def _build(data: str | None, mode: PermissionMode, message: str | None,
           task_id: int | None, confirm: Confirm) -> int:
    try:
        stop_locked_process(data, task_id=task_id)
    except LockFileError as e:
        log.error(str(e))
        return 1
    log.success("Build signal processed and lock file cleaned up")
    return 0


def _stop(data: str | None, mode: PermissionMode, message: str | None,
          task_id: int | None, confirm: Confirm) -> int:
    try:
        stop_locked_process(data, task_id=task_id)
    except LockFileError as e:
        log.error(str(e))
        return 1
    log.success("Stopped agent and cleaned up lock file")
    return 0


def _plan_ready(data: str | None, mode: PermissionMode, message: str | None,
                task_id: int | None, confirm: Confirm) -> int:
    if message:
        log.info(escape(message))
    if not mode.prompts:
        log.success("Plan ready - auto-continuing in yolo mode")
        return 0

    log.console.print("")
    log.rule()
    log.info("Plan Ready for Review")
    payload = _json_data(data) or {}
    if "planPath" in payload:
        log.console.print(f"Plan file: [yellow]{escape(str(payload['planPath']))}[/yellow]")
    log.console.print("")

    if not confirm("Approve this plan and continue?"):
        log.warn("Plan rejected. Watch will continue waiting for changes.")
        return 1
    log.success("Plan approved - continuing to task generation")
    return 0


def _tasks_ready(data: str | None, mode: PermissionMode, message: str | None,
                 task_id: int | None, confirm: Confirm) -> int:
    if message:
        log.info(escape(message))
    if not mode.prompts:
        log.success("Tasks ready - auto-starting build in yolo mode")
        return 0

    log.console.print("")
    log.rule()
    log.info("Tasks Generated and Ready")
    payload = _json_data(data) or {}
    if "tasksPath" in payload:
        log.console.print(f"Tasks file: [yellow]{escape(str(payload['tasksPath']))}[/yellow]")
    if "taskCount" in payload:
        log.console.print(f"Total tasks: [yellow]{escape(str(payload['taskCount']))}[/yellow]")
    log.console.print("")

    if not confirm("Start the build loop now?"):
        log.warn("Build skipped. Watch will continue waiting for changes.")
        return 1
    log.success("Starting build loop")
    return 0


def _watch_complete(data: str | None, mode: PermissionMode, message: str | None,
                    task_id: int | None, confirm: Confirm) -> int:
    log.console.print("")
    log.rule()
    log.success("Watch Cycle Complete")
    if message:
        log.console.print(escape(message))
    payload = _json_data(data) or {}
    for key, label in (
        ("filesProcessed", "Files processed"),
        ("commentsFound", "Comments found"),
        ("tasksCompleted", "Tasks completed"),
    ):
        if key in payload:
            log.console.print(f"{label}: [yellow]{escape(str(payload[key]))}[/yellow]")
    log.console.print("")
    log.console.print("Continuing to watch for changes...")
    return 0


def _error(data: str | None, mode: PermissionMode, message: str | None,
           task_id: int | None, confirm: Confirm) -> int:
    log.console.print("")
    log.error("Error During Watch/Build")
    if message:
        log.error(escape(message))
    if data:
        payload = _json_data(data)
        if payload is None:
            log.error(escape(data))
        else:
            if "error" in payload:
                log.error(f"Error: {escape(str(payload['error']))}")
            if "file" in payload:
                log.console.print(f"File: [yellow]{escape(str(payload['file']))}[/yellow]")
            if "line" in payload:
                log.console.print(f"Line: [yellow]{escape(str(payload['line']))}[/yellow]")
    return 1


ACTIONS: dict[str, Callable[..., int]] = {
    "build": _build,
    "stop": _stop,
    "plan-ready": _plan_ready,
    "tasks-ready": _tasks_ready,
    "watch-complete": _watch_complete,
    "error": _error,
}


def handle(
    action: str,
    data: str | None = None,
    *,
    mode: PermissionMode | str = PermissionMode.INTERACTIVE,
    message: str | None = None,
    task_id: int | None = None,
    confirm: Confirm | None = None,
) -> int:
    """Dispatch *action*; returns the process exit code."""
    handler = ACTIONS.get(action)
    if handler is None:
        log.error(f"Unknown action: {action}")
        log.console.print(f"Valid actions: {', '.join(ACTIONS)}")
        return 1
    return handler(data, PermissionMode.parse(mode), message, task_id, confirm or _default_confirm)
