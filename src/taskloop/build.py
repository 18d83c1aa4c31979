"""Build loop: run the agent once per task until the graph is done."""

from __future__ import annotations

import signal
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from taskloop import log
from taskloop.config import COMPLETION_SIGNAL_NAME, LOCK_FILE_NAME, STATE_DIR, Config
from taskloop.engines.base import EngineBase
from taskloop.errors import LockFileError, TaskGraphError
from taskloop.git_ops import diff_stats, snapshot_tree
from taskloop.lockfile import cleanup_lock, is_process_alive, read_lock
from taskloop.scheduler import (
    count_blocked_tasks,
    detect_circular_dependencies,
    explain_block,
    has_pending_tasks,
    select_next_task,
)
from taskloop.stats import (
    apply_completion,
    build_totals,
    discard_signal,
    format_duration,
    read_signal,
)
from taskloop.supervisor import MonitorResult, StopReason, run_supervised
from taskloop.tasks.io import load_task_graph, save_task_graph
from taskloop.tasks.model import TaskGraph, TaskStatus

SHOW_CURSOR = "\033[?25h"


class BuildOutcome(str, Enum):
    COMPLETE = "complete"
    MAX_ITERATIONS = "max_iterations"
    DEADLOCKED = "deadlocked"
    CYCLE = "cycle"
    INTERRUPTED = "interrupted"


@dataclass
class BuildResult:
    outcome: BuildOutcome
    iterations: int = 0
    signum: int | None = None

    @property
    def exit_code(self) -> int:
        match self.outcome:
            case BuildOutcome.COMPLETE | BuildOutcome.MAX_ITERATIONS:
                return 0
            case BuildOutcome.INTERRUPTED:
                return 128 + (self.signum or int(signal.SIGINT))
            case _:
                return 1


def progress_bar(done: int, total: int, width: int = 30) -> str:
    pct = int(done * 100 / total) if total else 100
    filled = int(width * done / total) if total else width
    return f"[green]{'█' * filled}[/green][dim]{'░' * (width - filled)}[/dim] {pct}%"


def lock_path_for(tasks_path: Path) -> Path:
    return tasks_path.parent / LOCK_FILE_NAME


def signal_path_for(tasks_path: Path) -> Path:
    return tasks_path.parent / COMPLETION_SIGNAL_NAME


def _check_live_lock(lock_path: Path) -> None:
    """Raise if another process still owns *lock_path*; drop a stale lock."""
    record = read_lock(lock_path)
    if record is not None and is_process_alive(record.pid):
        raise LockFileError(
            f"An agent is already running for this graph (pid {record.pid}, lock {lock_path})"
        )
    if lock_path.exists():
        log.warn(f"Removing stale lock file {lock_path}")
        cleanup_lock(lock_path)


class BuildLoop:
    """Sequential build loop over one ``tasks.json``.

    Each iteration reloads the graph, picks the next runnable task, marks it
    ``in_progress`` and hands it to the agent under supervision. The agent (or
    ``taskloop notify build --task``) reports completion through
    ``completed.json`` next to the graph.
    """

    def __init__(
        self,
        cfg: Config,
        tasks_path: Path,
        engine: EngineBase,
        project_dir: Path | None = None,
    ) -> None:
        self.cfg = cfg
        self.tasks_path = tasks_path
        self.engine = engine
        self.project_dir = project_dir or Path.cwd()
        self.lock_path = lock_path_for(tasks_path)
        self.signal_path = signal_path_for(tasks_path)
        self.iteration = 0
        self._stop_requested = False
        self._stop_signum: int | None = None
        self._orig_signal_handlers: dict[int, object] = {}

    # ── public ───────────────────────────────────────────────────

    def run(self) -> BuildResult:
        """Run to completion. Raises :class:`TaskGraphError` for a bad graph."""
        graph = load_task_graph(self.tasks_path)

        cycles = detect_circular_dependencies(graph.tasks)
        if cycles:
            ids = ", ".join(f"#{i}" for i in sorted(cycles))
            log.error(f"Circular dependencies detected between tasks: {ids}")
            return BuildResult(BuildOutcome.CYCLE)

        _check_live_lock(self.lock_path)
        if discard_signal(self.signal_path):
            log.debug(f"Removed stale completion signal {self.signal_path}")

        self.show_header(graph)

        self._install_signal_handlers()
        try:
            try:
                result = self._main_loop()
            except KeyboardInterrupt:
                self._stop_requested = True
                self._stop_signum = int(signal.SIGINT)
                result = self._interrupted()
        finally:
            self._restore_signal_handlers()
            cleanup_lock(self.lock_path)
            log.console.file.write(SHOW_CURSOR)
            log.console.file.flush()

        if result.outcome is not BuildOutcome.INTERRUPTED:
            self.show_summary(load_task_graph(self.tasks_path))
        return result

    def stop(self) -> None:
        self._stop_requested = True

    # ── loop ─────────────────────────────────────────────────────

    def _main_loop(self) -> BuildResult:
        while True:
            if self._stop_requested:
                return self._interrupted()

            graph = load_task_graph(self.tasks_path)
            task = select_next_task(graph.tasks)

            if task is None:
                if not has_pending_tasks(graph.tasks):
                    log.console.print("")
                    stuck = graph.in_progress_ids()
                    if stuck:
                        ids = ", ".join(f"#{i}" for i in stuck)
                        log.warn(f"No pending tasks left; still in progress: {ids}")
                    else:
                        log.success("All tasks completed!")
                    return BuildResult(BuildOutcome.COMPLETE, self.iteration)
                self._report_deadlock(graph)
                return BuildResult(BuildOutcome.DEADLOCKED, self.iteration)

            if self.cfg.max_iterations > 0 and self.iteration >= self.cfg.max_iterations:
                log.console.print("")
                log.warn(f"Reached max iterations ({self.cfg.max_iterations})")
                return BuildResult(BuildOutcome.MAX_ITERATIONS, self.iteration)

            if self.iteration > 0 and self.cfg.delay > 0:
                self._sleep(self.cfg.delay)
                if self._stop_requested:
                    return self._interrupted()

            self.iteration += 1
            result = self._run_task(graph, task.id)
            if result.reason is StopReason.INTERRUPTED:
                return self._interrupted()

    def _run_task(self, graph: TaskGraph, task_id: int) -> MonitorResult:
        task = graph.get_task(task_id)
        if task is None:
            raise TaskGraphError(f"Task #{task_id} not found in {self.tasks_path}")

        log.console.print("")
        log.rule()
        log.console.print(
            f"[bold]Iteration {self.iteration}[/bold]  [cyan]#{task.id}[/cyan] {task.label}"
        )
        log.rule()

        task.status = TaskStatus.IN_PROGRESS.value
        save_task_graph(self.tasks_path, graph)

        before = snapshot_tree(self.project_dir)
        cmd = self.engine.build_task_cmd(self.tasks_path, self.cfg.mode)
        result = run_supervised(
            cmd,
            cwd=self.project_dir,
            lock_path=self.lock_path,
            context={
                "currentTask": {"id": task.id, "title": task.title},
                "tasksPath": str(self.tasks_path),
            },
            poll_interval=self.cfg.poll_interval,
            grace=self.cfg.grace_period,
            stop_requested=lambda: self._stop_requested,
        )

        match result.reason:
            case StopReason.EXITED if result.return_code != 0:
                log.warn(f"Agent exited with code {result.return_code}; continuing")
            case StopReason.LOCK_REMOVED:
                log.info(f"Agent for task #{task.id} was stopped")
            case _:
                log.debug(f"Agent finished in {format_duration(int(result.duration))}")

        self._consume_signal(before)
        return result

    def _consume_signal(self, before: str) -> None:
        """Fold ``completed.json`` into the graph, then delete it.

        Change counters cover only what happened since *before*, the snapshot
        taken when the agent was spawned.
        """
        sig = read_signal(self.signal_path)
        if sig is None:
            discard_signal(self.signal_path)
            log.debug("No completion signal")
            return

        try:
            graph = load_task_graph(self.tasks_path)
        except TaskGraphError as e:
            log.warn(f"Cannot record stats for task #{sig.task_id}: {e}")
            discard_signal(self.signal_path)
            return

        diff = diff_stats(
            before, snapshot_tree(self.project_dir), self.project_dir, self._state_paths()
        )
        if apply_completion(graph, sig, diff):
            save_task_graph(self.tasks_path, graph)
            log.success(
                f"Task #{sig.task_id} completed in {format_duration(sig.duration_seconds)} "
                f"({diff.files_changed} files, [green]+{diff.lines_added}[/green] "
                f"[red]-{diff.lines_removed}[/red])"
            )
        discard_signal(self.signal_path)

    def _state_paths(self) -> list[str]:
        """Our own bookkeeping files, relative to the project, left out of change stats."""
        paths = [STATE_DIR]
        root = self.project_dir.resolve()
        for path in (self.tasks_path, self.lock_path, self.signal_path):
            try:
                paths.append(path.resolve().relative_to(root).as_posix())
            except ValueError:
                continue
        return list(dict.fromkeys(paths))

    def _sleep(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 0.1))

    def _interrupted(self) -> BuildResult:
        log.warn("Build interrupted")
        return BuildResult(BuildOutcome.INTERRUPTED, self.iteration, self._stop_signum)

    # ── reporting ────────────────────────────────────────────────

    def show_header(self, graph: TaskGraph) -> None:
        total = len(graph.tasks)
        done = graph.count_completed()
        pending = graph.count_pending()
        blocked = count_blocked_tasks(graph.tasks)

        log.rule()
        log.console.print(f"[bold]{graph.title or self.tasks_path.parent.name}[/bold]")
        log.rule()
        if graph.branch:
            log.console.print(f"Branch:  {graph.branch}")
        if graph.created:
            log.console.print(f"Created: {graph.created[:10]}")
        log.console.print(f"Mode:    {self.cfg.mode.value}")
        log.console.print("")
        log.console.print(f"Progress: {progress_bar(done, total)}")

        counts = f"  {done}/{total} completed, {pending} pending"
        if blocked:
            counts += f", [yellow]{blocked} blocked[/yellow]"
        log.console.print(counts)

        stuck = graph.in_progress_ids()
        if stuck:
            ids = ", ".join(f"#{i}" for i in stuck)
            log.warn(
                f"{len(stuck)} task(s) still in progress from a previous run: {ids}. "
                f"Run 'taskloop reset {self.tasks_path} <id>' if they are stuck."
            )

    def show_summary(self, graph: TaskGraph) -> None:
        totals = build_totals(graph)
        log.console.print("")
        log.rule()
        log.console.print("[bold]Build Statistics[/bold]")
        log.rule()
        log.console.print(f"Tasks:         {graph.count_completed()}/{len(graph.tasks)} completed")
        log.console.print(f"Iterations:    {self.iteration}")
        log.console.print(f"Duration:      {format_duration(totals.duration_seconds)}")
        log.console.print(f"Files changed: {totals.files_changed}")
        log.console.print(
            f"Lines:         [green]+{totals.lines_added}[/green] "
            f"[red]-{totals.lines_removed}[/red]"
        )

    def _report_deadlock(self, graph: TaskGraph) -> None:
        if graph.in_progress_ids():
            log.error("Build halted: pending tasks depend on tasks still in progress.")
        else:
            log.error("DEADLOCK: No pending task has its dependencies satisfied")

        log.console.print("")
        log.console.print("[red]Blocked tasks:[/red]")
        for task in graph.tasks:
            if task.is_pending:
                log.console.print(f"  #{task.id} {task.label}: {explain_block(task, graph.tasks)}")

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        self._orig_signal_handlers = {}
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        if not self._stop_requested:
            log.warn(f"Interrupt received (signal {signum}). Stopping agent...")
        self._stop_requested = True
        self._stop_signum = signum


def reset_task(tasks_path: Path, task_id: int) -> bool:
    """Move an ``in_progress`` task back to ``pending``.

    Refused (``LockFileError``) while a live agent holds this graph's lock.
    Returns ``False`` when the task is not in progress.
    """
    lock_path = lock_path_for(tasks_path)
    record = read_lock(lock_path)
    if record is not None and is_process_alive(record.pid):
        raise LockFileError(
            f"Cannot reset task #{task_id}: an agent is running (pid {record.pid})"
        )

    graph = load_task_graph(tasks_path)
    task = graph.get_task(task_id)
    if task is None:
        raise TaskGraphError(f"Task #{task_id} not found in {tasks_path}")
    if not task.is_in_progress:
        return False
    task.status = TaskStatus.PENDING.value
    save_task_graph(tasks_path, graph)
    return True
