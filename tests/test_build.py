"""Tests for taskloop.build — the sequential build loop against real child processes."""

from __future__ import annotations

import json
import os
import signal
import threading
import time

import pytest

from conftest import COMPLETE_TASK_SCRIPT, FAIL_SCRIPT, NOOP_SCRIPT, posix_only
from taskloop.build import (
    BuildLoop,
    BuildOutcome,
    BuildResult,
    progress_bar,
    reset_task,
)
from taskloop.config import Config, PermissionMode
from taskloop.errors import LockFileError, TaskGraphError
from taskloop.lockfile import LockRecord, is_process_alive, read_lock, write_lock
from taskloop.tasks.io import load_task_graph

DEAD_PID = 999_999_999

# Completes the task and edits the tracked README so git sees one change.
EDIT_AND_COMPLETE_SCRIPT = COMPLETE_TASK_SCRIPT + (
    "pathlib.Path('README.md').write_text('# Test\\nmore\\n')\n"
)

# Completes the task and leaves one new, uncommitted one-line file behind.
ADD_FILE_AND_COMPLETE_SCRIPT = COMPLETE_TASK_SCRIPT + (
    "pathlib.Path(f'task{task_id}.txt').write_text('done\\n')\n"
)

# Holds the lock until terminated.
SLEEP_SCRIPT = "import time; time.sleep(60)"


# ── Helpers ─────────────────────────────────────────────────────────


def _cfg(**kwargs) -> Config:
    kwargs.setdefault("delay", 0)
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("grace_period", 0.2)
    return Config(agent_command="python", **kwargs)


def _graph(*tasks: dict, **root) -> dict:
    return {"title": root.pop("title", "Feature"), **root, "tasks": list(tasks)}


def _task(id: int, deps: list[int] | None = None, status: str = "pending", **kw) -> dict:
    return {"id": id, "title": f"Task {id}", "status": status, "dependencies": deps or [], **kw}


def _loop(tmp_path, tasks_path, engine, **cfg) -> BuildLoop:
    return BuildLoop(_cfg(**cfg), tasks_path, engine, project_dir=tmp_path)


# ═══════════════════════════════════════════════════════════════════
#  Outcomes
# ═══════════════════════════════════════════════════════════════════


@posix_only
class TestBuildOutcomes:
    """Tests for the terminal outcomes of BuildLoop.run."""

    def test_runs_all_tasks_in_order(self, tmp_path, write_tasks, script_engine):
        """Each task is handed to the agent once, dependencies first."""
        path = write_tasks(_graph(_task(1), _task(2, deps=[1]), _task(3, priority=1)))
        engine = script_engine(COMPLETE_TASK_SCRIPT)

        result = _loop(tmp_path, path, engine).run()

        assert result.outcome is BuildOutcome.COMPLETE
        assert result.exit_code == 0
        assert result.iterations == 3
        graph = load_task_graph(path)
        assert [t.status for t in graph.tasks] == ["completed"] * 3
        assert len(engine.calls) == 3
        assert all(prompt == f"/build-next {path}" for prompt, _ in engine.calls)
        assert all(mode is PermissionMode.YOLO for _, mode in engine.calls)

    def test_records_stats_and_cleans_up(self, tmp_path, write_tasks, script_engine):
        """Completion signals become task stats; lock and signal are removed."""
        path = write_tasks(_graph(_task(1)))

        _loop(tmp_path, path, script_engine(COMPLETE_TASK_SCRIPT)).run()

        graph = load_task_graph(path)
        stats = graph.get_task(1).stats
        assert stats["durationSeconds"] == 0
        assert stats["startedAt"] == stats["completedAt"]
        assert stats["filesChanged"] == 0
        assert graph.stats == {"filesChanged": 0, "linesAdded": 0, "linesRemoved": 0}
        assert not (path.parent / "index.lock").exists()
        assert not (path.parent / "completed.json").exists()

    def test_diff_stats_from_git(self, git_repo, write_tasks, script_engine, capsys):
        """Changes made by the agent are counted against the tree at spawn."""
        path = write_tasks(_graph(_task(1)))

        _loop(git_repo, path, script_engine(EDIT_AND_COMPLETE_SCRIPT)).run()

        stats = load_task_graph(path).get_task(1).stats
        assert stats["filesChanged"] == 1
        assert stats["linesAdded"] == 1
        assert stats["linesRemoved"] == 0
        out = capsys.readouterr().out
        assert "Build Statistics" in out
        assert "Files changed: 1" in out

    def test_uncommitted_work_counted_once(self, git_repo, write_tasks, script_engine):
        """When the agent never commits, each task still counts only its own changes."""
        path = write_tasks(_graph(_task(1), _task(2, deps=[1])))

        _loop(git_repo, path, script_engine(ADD_FILE_AND_COMPLETE_SCRIPT)).run()

        graph = load_task_graph(path)
        for task in graph.tasks:
            assert task.stats["filesChanged"] == 1
            assert task.stats["linesAdded"] == 1
        assert graph.stats == {"filesChanged": 2, "linesAdded": 2, "linesRemoved": 0}

    def test_max_iterations(self, tmp_path, write_tasks, script_engine, capsys):
        """The iteration budget is its own outcome and exits 0."""
        path = write_tasks(_graph(_task(1), _task(2)))

        result = _loop(tmp_path, path, script_engine(COMPLETE_TASK_SCRIPT), max_iterations=1).run()

        assert result.outcome is BuildOutcome.MAX_ITERATIONS
        assert result.exit_code == 0
        assert result.iterations == 1
        graph = load_task_graph(path)
        assert graph.get_task(1).is_completed
        assert graph.get_task(2).is_pending
        assert "Reached max iterations (1)" in capsys.readouterr().out

    def test_zero_iterations_is_unlimited(self, tmp_path, write_tasks, script_engine):
        """max_iterations=0 runs until done."""
        path = write_tasks(_graph(_task(1), _task(2)))
        result = _loop(tmp_path, path, script_engine(COMPLETE_TASK_SCRIPT), max_iterations=0).run()
        assert result.outcome is BuildOutcome.COMPLETE
        assert result.iterations == 2

    def test_deadlock(self, tmp_path, write_tasks, script_engine, capsys):
        """Pending work with nothing runnable stops without running the agent."""
        path = write_tasks(_graph(_task(1, deps=[9])))
        engine = script_engine(COMPLETE_TASK_SCRIPT)

        result = _loop(tmp_path, path, engine).run()

        assert result.outcome is BuildOutcome.DEADLOCKED
        assert result.exit_code == 1
        assert engine.calls == []
        captured = capsys.readouterr()
        assert "DEADLOCK" in captured.err
        assert "9 (missing)" in captured.out

    def test_cycle_refused_up_front(self, tmp_path, write_tasks, script_engine, capsys):
        """A cyclic graph is rejected before anything runs."""
        path = write_tasks(_graph(_task(1, deps=[2]), _task(2, deps=[1]), _task(3)))
        engine = script_engine(COMPLETE_TASK_SCRIPT)

        result = _loop(tmp_path, path, engine).run()

        assert result.outcome is BuildOutcome.CYCLE
        assert result.exit_code == 1
        assert engine.calls == []
        assert "#1, #2" in capsys.readouterr().err
        assert load_task_graph(path).get_task(3).is_pending

    def test_missing_tasks_file(self, tmp_path, script_engine):
        """A missing graph raises TaskGraphError."""
        loop = _loop(tmp_path, tmp_path / "nope" / "tasks.json", script_engine(NOOP_SCRIPT))
        with pytest.raises(TaskGraphError, match="Tasks file not found"):
            loop.run()

    def test_interrupted_before_start(self, tmp_path, write_tasks, script_engine):
        """A stop request ends the loop with 128 + SIGINT."""
        path = write_tasks(_graph(_task(1)))
        engine = script_engine(COMPLETE_TASK_SCRIPT)
        loop = _loop(tmp_path, path, engine)
        loop.stop()

        result = loop.run()

        assert result.outcome is BuildOutcome.INTERRUPTED
        assert result.exit_code == 128 + int(signal.SIGINT)
        assert engine.calls == []

    def test_sigterm_while_agent_runs(self, tmp_path, write_tasks, script_engine):
        """SIGTERM mid-task stops the agent, drops the lock and exits 128 + SIGTERM."""
        path = write_tasks(_graph(_task(1)))
        lock_path = path.parent / "index.lock"
        agent_pids: list[int] = []
        original_handler = signal.getsignal(signal.SIGTERM)

        def signal_when_running() -> None:
            deadline = time.monotonic() + 10
            while time.monotonic() < deadline:
                record = read_lock(lock_path)
                if record is not None:
                    agent_pids.append(record.pid)
                    os.kill(os.getpid(), signal.SIGTERM)
                    return
                time.sleep(0.01)

        sender = threading.Thread(target=signal_when_running, daemon=True)
        sender.start()
        result = _loop(tmp_path, path, script_engine(SLEEP_SCRIPT)).run()
        sender.join(timeout=10)

        assert result.outcome is BuildOutcome.INTERRUPTED
        assert result.exit_code == 128 + int(signal.SIGTERM)
        assert len(agent_pids) == 1
        assert not is_process_alive(agent_pids[0])
        assert not lock_path.exists()
        assert load_task_graph(path).get_task(1).is_in_progress
        assert signal.getsignal(signal.SIGTERM) == original_handler


# ═══════════════════════════════════════════════════════════════════
#  Agent failures
# ═══════════════════════════════════════════════════════════════════


@posix_only
class TestAgentFailures:
    """Tests for agents that exit without reporting completion."""

    def test_failure_continues_to_next_task(self, tmp_path, write_tasks, script_engine, capsys):
        """A non-zero exit is logged and the loop moves on."""
        path = write_tasks(_graph(_task(1), _task(2)))
        engine = script_engine(FAIL_SCRIPT)

        result = _loop(tmp_path, path, engine).run()

        assert len(engine.calls) == 2
        assert result.outcome is BuildOutcome.COMPLETE
        graph = load_task_graph(path)
        assert graph.in_progress_ids() == [1, 2]
        out = capsys.readouterr().out
        assert "exited with code 3" in out
        assert "still in progress" in out

    def test_stuck_dependency_halts(self, tmp_path, write_tasks, script_engine, capsys):
        """A task left in progress blocks its dependents: deadlock, not retry."""
        path = write_tasks(_graph(_task(1), _task(2, deps=[1])))
        engine = script_engine(NOOP_SCRIPT)

        result = _loop(tmp_path, path, engine).run()

        assert result.outcome is BuildOutcome.DEADLOCKED
        assert len(engine.calls) == 1
        assert "still in progress" in capsys.readouterr().err
        assert load_task_graph(path).get_task(1).is_in_progress


# ═══════════════════════════════════════════════════════════════════
#  Startup checks
# ═══════════════════════════════════════════════════════════════════


@posix_only
class TestStartup:
    """Tests for lock, signal and header handling at startup."""

    def test_live_lock_refused(self, tmp_path, write_tasks, script_engine):
        """Another live agent on the same graph blocks the run."""
        path = write_tasks(_graph(_task(1)))
        write_lock(path.parent / "index.lock", LockRecord(pid=os.getpid()))
        engine = script_engine(COMPLETE_TASK_SCRIPT)

        with pytest.raises(LockFileError, match="already running"):
            _loop(tmp_path, path, engine).run()
        assert engine.calls == []

    def test_stale_lock_removed(self, tmp_path, write_tasks, script_engine):
        """A lock naming a dead pid is removed and the run proceeds."""
        path = write_tasks(_graph(_task(1)))
        write_lock(path.parent / "index.lock", LockRecord(pid=DEAD_PID))

        result = _loop(tmp_path, path, script_engine(COMPLETE_TASK_SCRIPT)).run()

        assert result.outcome is BuildOutcome.COMPLETE

    def test_stale_signal_discarded(self, tmp_path, write_tasks, script_engine):
        """A leftover completed.json is not applied to the next task."""
        path = write_tasks(_graph(_task(1)))
        (path.parent / "completed.json").write_text(
            json.dumps({"taskId": 1, "startedAt": "2024-01-01T00:00:00Z",
                        "completedAt": "2024-01-01T00:01:00Z"}),
            encoding="utf-8",
        )

        _loop(tmp_path, path, script_engine(NOOP_SCRIPT)).run()

        task = load_task_graph(path).get_task(1)
        assert task.is_in_progress
        assert task.stats is None

    def test_header(self, tmp_path, write_tasks, script_engine, capsys):
        """The header shows metadata, progress and blocked count."""
        path = write_tasks(_graph(
            _task(1, status="completed"),
            _task(2, status="in_progress"),
            _task(3, deps=[2]),
            _task(4),
            title="Auth",
            branch="feature/auth",
            created="2024-05-01T10:00:00+02:00",
        ))
        loop = _loop(tmp_path, path, script_engine(NOOP_SCRIPT))

        loop.show_header(load_task_graph(path))

        out = capsys.readouterr().out
        assert "Auth" in out
        assert "Branch:  feature/auth" in out
        assert "Created: 2024-05-01" in out
        assert "Mode:    yolo" in out
        assert "1/4 completed, 2 pending" in out
        assert "1 blocked" in out
        assert "#2" in out


# ═══════════════════════════════════════════════════════════════════
#  Helpers and reset
# ═══════════════════════════════════════════════════════════════════


class TestBuildResult:
    """Tests for BuildResult.exit_code."""

    @pytest.mark.parametrize("outcome,code", [
        (BuildOutcome.COMPLETE, 0),
        (BuildOutcome.MAX_ITERATIONS, 0),
        (BuildOutcome.DEADLOCKED, 1),
        (BuildOutcome.CYCLE, 1),
    ])
    def test_exit_codes(self, outcome, code):
        """Success outcomes exit 0, scheduling failures exit 1."""
        assert BuildResult(outcome).exit_code == code

    def test_interrupted_uses_signal(self):
        """Interrupted by SIGTERM exits 143."""
        result = BuildResult(BuildOutcome.INTERRUPTED, signum=int(signal.SIGTERM))
        assert result.exit_code == 128 + int(signal.SIGTERM)


class TestProgressBar:
    """Tests for progress_bar."""

    def test_half(self):
        """Half done fills half the bar."""
        assert progress_bar(1, 2, width=10) == (
            "[green]█████[/green][dim]░░░░░[/dim] 50%"
        )

    def test_empty_graph(self):
        """No tasks renders as complete."""
        assert progress_bar(0, 0, width=4).endswith(" 100%")


class TestResetTask:
    """Tests for reset_task."""

    def test_resets_in_progress(self, write_tasks):
        """An in-progress task goes back to pending."""
        path = write_tasks(_graph(_task(1, status="in_progress")))
        assert reset_task(path, 1)
        assert load_task_graph(path).get_task(1).is_pending

    def test_not_in_progress(self, write_tasks):
        """Pending or completed tasks are left alone."""
        path = write_tasks(_graph(_task(1), _task(2, status="completed")))
        assert not reset_task(path, 1)
        assert not reset_task(path, 2)
        assert load_task_graph(path).get_task(2).is_completed

    def test_unknown_task(self, write_tasks):
        """An unknown id is an error."""
        path = write_tasks(_graph(_task(1)))
        with pytest.raises(TaskGraphError, match="Task #7 not found"):
            reset_task(path, 7)

    def test_refused_while_agent_runs(self, write_tasks):
        """A live lock on the graph blocks the reset."""
        path = write_tasks(_graph(_task(1, status="in_progress")))
        write_lock(path.parent / "index.lock", LockRecord(pid=os.getpid()))
        with pytest.raises(LockFileError, match="an agent is running"):
            reset_task(path, 1)
        assert load_task_graph(path).get_task(1).is_in_progress
