"""Agent statusline and session hook.

Both are invoked by the agent CLI itself with a JSON document on stdin:

- statusline: ``{"model": {...}, "context_window": {...}}`` → one ANSI line
- session-start hook: ``{"session_id": "..."}`` → recorded in the lock named
  by ``TASKLOOP_LOCK_FILE``
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from taskloop.config import LOCK_ENV_VAR
from taskloop.io_utils import read_json_object
from taskloop.lockfile import find_active_lock, update_lock

CYAN = "\033[36m"
YELLOW = "\033[33m"
GREEN = "\033[32m"
RED = "\033[31m"
RESET = "\033[0m"

MAX_TITLE = 40


def parse_status(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def model_name(status: dict[str, Any]) -> str:
    model = status.get("model")
    if isinstance(model, dict):
        return str(model.get("display_name") or model.get("id") or "Unknown")
    if model:
        return str(model)
    return "Unknown"


def short_model_name(model: str) -> str:
    lowered = model.lower()
    for family in ("opus", "sonnet", "haiku"):
        if family in lowered:
            return family.capitalize()
    return lowered.split("-")[0].capitalize()


def _number(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def context_percent(status: dict[str, Any]) -> int:
    window = status.get("context_window")
    if isinstance(window, dict):
        return int(round(_number(window.get("used_percentage"))))
    if window is None:
        return 0
    # Older format: context_window is the size and context_used the usage.
    size = _number(window)
    used = _number(status.get("context_used"))
    return int(round(used / size * 100)) if size > 0 else 0


def context_color(percent: int) -> str:
    if percent >= 80:
        return RED
    if percent >= 60:
        return YELLOW
    return GREEN


def task_info(lock: dict[str, Any] | None) -> str:
    if not lock:
        return ""
    current = lock.get("currentTask")
    if not isinstance(current, dict):
        return ""
    task_id = current.get("id", "?")
    title = str(current.get("title") or "Untitled")
    if len(title) > MAX_TITLE:
        title = title[: MAX_TITLE - 3] + "..."
    return f"#{task_id}: {title} | "


def render(status: dict[str, Any], lock: dict[str, Any] | None = None) -> str:
    line = ""
    info = task_info(lock)
    if info:
        line += f"{CYAN}{info}{RESET}"
    line += f"{YELLOW}[{short_model_name(model_name(status))}]{RESET} "
    pct = context_percent(status)
    line += f"{context_color(pct)}{pct}%{RESET}"
    return line


def statusline(raw: str, project_dir: Path) -> str:
    lock_path = find_active_lock(project_dir)
    lock = read_json_object(lock_path) if lock_path else None
    return render(parse_status(raw), lock)


def record_session(raw: str, environ: dict[str, str] | None = None) -> bool:
    """Store ``session_id`` in the current lock. Missing pieces are not errors.

    Raises :class:`LockFileError` if the lock exists but cannot be rewritten.
    """
    env = os.environ if environ is None else environ
    session_id = parse_status(raw).get("session_id")
    lock_file = env.get(LOCK_ENV_VAR)
    if not session_id or not lock_file:
        return False
    return update_lock(Path(lock_file), session_id=session_id)
