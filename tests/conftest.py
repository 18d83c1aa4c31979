"""Shared fixtures for taskloop tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Agent processes are real ``sys.executable -c`` scripts; nothing talks to a real agent CLI.
"""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from taskloop.config import PermissionMode
from taskloop.engines.base import EngineBase
from taskloop.io_utils import write_text
from taskloop.tasks.model import Task, TaskGraph


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX signals")


# Agent script: wait for our lock, complete the current task, drop completed.json.
COMPLETE_TASK_SCRIPT = """
import json, os, pathlib, time
lock = pathlib.Path(os.environ["TASKLOOP_LOCK_FILE"])
while not lock.exists():
    time.sleep(0.01)
data = json.loads(lock.read_text())
task_id = data["currentTask"]["id"]
tasks_path = pathlib.Path(data["tasksPath"])
graph = json.loads(tasks_path.read_text())
for t in graph["tasks"]:
    if t["id"] == task_id:
        t["status"] = "completed"
tasks_path.write_text(json.dumps(graph))
(lock.parent / "completed.json").write_text(json.dumps({
    "taskId": task_id, "startedAt": data["started"], "completedAt": data["started"],
}))
"""

# Agent script: exit without touching anything.
NOOP_SCRIPT = "import sys; sys.exit(0)"

# Agent script: fail.
FAIL_SCRIPT = "import sys; sys.exit(3)"


class ScriptEngine(EngineBase):
    """Engine that runs a Python snippet instead of an agent CLI."""

    name = "python"

    def __init__(self, script: str) -> None:
        super().__init__(sys.executable)
        self.script = script
        self.calls: list[tuple[str, PermissionMode]] = []

    def build_cmd(self, prompt: str, mode: PermissionMode) -> list[str]:
        self.calls.append((prompt, mode))
        return [sys.executable, "-c", self.script, prompt]

    def check_available(self) -> str | None:
        return None


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Create a minimal git repo for testing."""
    subprocess.run(["git", "init"], cwd=tmp_path, capture_output=True, check=True)
    subprocess.run(
        ["git", "config", "user.name", "Test"], cwd=tmp_path, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@test"], cwd=tmp_path, capture_output=True
    )
    write_text(tmp_path / "README.md", "# Test\n")
    subprocess.run(["git", "add", "README.md"], cwd=tmp_path, capture_output=True)
    subprocess.run(
        ["git", "commit", "-m", "Initial"], cwd=tmp_path, capture_output=True
    )
    return tmp_path


def _make_task(
    id: int,
    status: str = "pending",
    dependencies: list[int] | None = None,
    priority: int | None = None,
    title: str = "",
) -> Task:
    return Task(
        id=id,
        title=title or f"Task {id}",
        status=status,
        dependencies=dependencies or [],
        priority=priority,
    )


def _make_graph(tasks: list[Task], title: str = "Feature", **kwargs: Any) -> TaskGraph:
    return TaskGraph(title=title, tasks=tasks, **kwargs)


@pytest.fixture
def make_task():
    """Factory fixture that creates Task instances."""
    return _make_task


@pytest.fixture
def make_graph():
    """Factory fixture that creates TaskGraph instances."""
    return _make_graph


@pytest.fixture
def write_tasks(tmp_path: Path):
    """Write a raw tasks.json under ``.taskloop/specs/<feature>/`` and return its path."""

    def _write(data: dict[str, Any] | str, feature: str = "feature") -> Path:
        path = tmp_path / ".taskloop" / "specs" / feature / "tasks.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        write_text(path, data if isinstance(data, str) else json.dumps(data, indent=2))
        return path

    return _write


@pytest.fixture
def script_engine():
    """Factory fixture for :class:`ScriptEngine`."""
    return ScriptEngine
