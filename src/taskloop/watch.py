"""Watch loop: run the agent when a stop word shows up in ``@ai`` comments."""

from __future__ import annotations

import json
import queue
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from rich.markup import escape

from taskloop import log
from taskloop.comments import CommentScanner, ScanResult, collect_files, group_by_file
from taskloop.config import COMMENTS_FILE, WATCH_LOCK_FILE, WatchConfig
from taskloop.engines.base import EngineBase
from taskloop.errors import AgentSpawnError, TaskloopError
from taskloop.io_utils import write_json_atomic
from taskloop.lockfile import cleanup_lock
from taskloop.supervisor import MonitorResult, StopReason, run_supervised, terminate_process

_ACCUMULATING_EVENTS = ("add", "change")


# ── trigger evaluation ───────────────────────────────────────────


@dataclass
class TriggerDecision:
    trigger: bool
    files: list[str] = field(default_factory=list)
    result: ScanResult | None = None
    # Changed files left to evaluate later; every check consumes the batch.
    remaining: list[str] = field(default_factory=list)


def accumulate(changed: list[str], event: dict[str, Any]) -> list[str]:
    """Return *changed* plus the event's path for add/change events."""
    path = event.get("path")
    if event.get("event") not in _ACCUMULATING_EVENTS or not isinstance(path, str):
        return changed
    if path in changed:
        return changed
    return [*changed, path]


def evaluate_trigger(changed: list[str], scanner: CommentScanner) -> TriggerDecision:
    """Scan *changed* and decide whether to process it.

    The batch is always consumed: ``remaining`` is empty whether or not the
    stop word was found.
    """
    if not changed:
        return TriggerDecision(trigger=False)

    result = scanner.scan_files(changed)
    if not result.comments:
        log.console.print(f"[dim]No {scanner.search_word} comments found[/dim]")
        return TriggerDecision(trigger=False, result=result)

    log.console.print(f"[dim]Found {len(result.comments)} comment(s):[/dim]")
    for c in result.comments:
        marker = "[green]✓ STOP[/green]" if scanner.has_stop_word(c.text) else "[dim]-[/dim]"
        log.console.print(f"  {marker} {c.file}:{c.line} - {escape(c.text)}")

    if not result.stop_word_found:
        log.console.print(
            f'[yellow]Stop word "{scanner.stop_word}" not found. Add it to trigger processing.[/yellow]'
        )
        return TriggerDecision(trigger=False, result=result)

    return TriggerDecision(trigger=True, files=list(changed), result=result)


def parse_event(line: str) -> dict[str, Any] | None:
    """Decode one watcher JSON line; ``None`` for anything malformed."""
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None
    if not isinstance(event.get("event"), str) or not isinstance(event.get("timestamp"), str):
        return None
    return event


# ── loop ─────────────────────────────────────────────────────────


@dataclass
class WatchState:
    changed: list[str] = field(default_factory=list)
    batches: int = 0
    stop_requested: bool = False
    # (file, text) of stop-word comments already handed to the agent.
    seen: set[tuple[str, str]] = field(default_factory=set)


def watcher_cmd(paths: list[str], exclude: list[str]) -> list[str]:
    cmd = [sys.executable, "-m", "taskloop.watcher", *paths]
    if exclude:
        cmd.append(f"--exclude={','.join(exclude)}")
    return cmd


def _pump(stream: IO[str], name: str, out: "queue.Queue[tuple[str, str | None]]") -> None:
    try:
        for line in stream:
            out.put((name, line))
    except (OSError, ValueError):
        pass  # pipe closed during shutdown
    finally:
        out.put((name, None))


class WatchLoop:
    def __init__(
        self,
        cfg: WatchConfig,
        engine: EngineBase,
        project_dir: Path | None = None,
    ) -> None:
        self.cfg = cfg
        self.engine = engine
        self.project_dir = project_dir or Path.cwd()
        self.lock_path = self.project_dir / WATCH_LOCK_FILE
        self.comments_path = self.project_dir / COMMENTS_FILE
        self.scanner = CommentScanner(cfg.search_word, cfg.stop_word)
        self.state = WatchState()
        self.watcher: subprocess.Popen | None = None  # type: ignore[type-arg]
        self._events: queue.Queue[tuple[str, str | None]] = queue.Queue()
        self._orig_signal_handlers: dict[int, object] = {}

    def run(self) -> int:
        self.show_startup()
        self._install_signal_handlers()
        try:
            log.console.print("[dim]Scanning for existing stop words...[/dim]")
            pending = self.scan_all()
            if pending:
                log.info("Stop word found on startup! Processing immediately...")
                self.process(pending)
                log.console.print("Resuming watch...")
            else:
                log.console.print("[dim]No stop words found. Starting watch...[/dim]")

            if self.state.stop_requested:
                return 0
            self.watcher = self.spawn_watcher()
            return self._main_loop()
        finally:
            self._restore_signal_handlers()
            self.shutdown()

    # ── scanning / processing ────────────────────────────────────

    def scan_all(self) -> list[str]:
        """Files under the watch paths whose comments carry the stop word."""
        files = collect_files(self.project_dir, self.cfg.paths, self.cfg.exclude)
        if not files:
            return []
        result = self.scanner.scan_files(files)
        return result.files if result.stop_word_found else []

    def rescan(self) -> list[str]:
        """Like :meth:`scan_all`, but only for stop words not processed this session."""
        files = collect_files(self.project_dir, self.cfg.paths, self.cfg.exclude)
        if not files:
            return []
        result = self.scanner.scan_files(files)
        fresh = [
            c for c in result.comments
            if self.scanner.has_stop_word(c.text) and (c.file, c.text) not in self.state.seen
        ]
        return result.files if fresh else []

    def process(self, files: list[str]) -> None:
        """Process *files*, then rescan while new stop words keep appearing.

        A cancelled or failed agent run ends the chain; the next file change
        starts a new one.
        """
        batch = files
        rescans = 0
        while batch and not self.state.stop_requested:
            outcome = self.process_batch(batch)
            if outcome is None or self.state.stop_requested:
                return
            if not outcome.succeeded:
                log.console.print("[dim]Skipping rescan. Waiting for the next file change...[/dim]")
                return

            log.console.print("[dim]Checking for new stop words...[/dim]")
            batch = self.rescan()
            if not batch:
                log.console.print("[dim]No new stop words found. Continuing watch...[/dim]")
                return
            rescans += 1
            if rescans > self.cfg.max_rescans:
                log.warn(
                    f"Stop word still present after {self.cfg.max_rescans} rescans; "
                    "waiting for the next file change"
                )
                return
            log.info("New stop word detected! Processing again...")

    def process_batch(self, files: list[str]) -> MonitorResult | None:
        """Hand the comments in *files* to the agent; ``None`` if it never ran."""
        log.console.print("")
        log.info(f"Stop word detected! Processing {self.cfg.search_word} comments...")
        log.rule()

        result = self.scanner.scan_files(files)
        if not result.comments:
            log.warn(f"No {self.cfg.search_word} comments found in changed files")
            return None

        self.show_comments(result)
        write_json_atomic(self.comments_path, result.to_dict())
        self.state.batches += 1
        self.state.seen.update(
            (c.file, c.text) for c in result.comments if self.scanner.has_stop_word(c.text)
        )

        log.console.print(f"[yellow]Invoking agent with mode:[/yellow] {self.cfg.mode.value}")
        cmd = self.engine.comments_cmd(self.comments_path, self.cfg.mode)
        try:
            outcome = run_supervised(
                cmd,
                cwd=self.project_dir,
                lock_path=self.lock_path,
                context={"mode": self.cfg.mode.value, "commentsPath": str(self.comments_path)},
                poll_interval=self.cfg.poll_interval,
                grace=self.cfg.grace_period,
                stop_requested=lambda: self.state.stop_requested,
            )
        except AgentSpawnError as e:
            log.error(f"Failed to invoke agent: {e}")
            return None

        log.console.print("")
        match outcome.reason:
            case StopReason.EXITED if outcome.return_code != 0:
                log.warn(f"Agent exited with code {outcome.return_code}")
            case StopReason.LOCK_REMOVED:
                log.info("Agent stopped")
            case StopReason.INTERRUPTED:
                log.info("Agent interrupted")
            case _:
                log.success("Processing complete")
        log.rule()
        return outcome

    # ── watcher subprocess ───────────────────────────────────────

    def spawn_watcher(self) -> subprocess.Popen:  # type: ignore[type-arg]
        cmd = watcher_cmd(self.cfg.paths, self.cfg.exclude)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=self.project_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise TaskloopError(f"Failed to spawn watcher process: {e}") from e

        for stream, name in ((proc.stdout, "stdout"), (proc.stderr, "stderr")):
            if stream is None:
                continue
            threading.Thread(
                target=_pump, args=(stream, name, self._events), daemon=True
            ).start()
        log.debug(f"Watcher pid {proc.pid}: {' '.join(cmd)}")
        return proc

    def _main_loop(self) -> int:
        watcher = self.watcher
        if watcher is None:
            raise TaskloopError("Watcher process is not running")
        while not self.state.stop_requested:
            if watcher.poll() is not None:
                self._drain()
                log.error(f"Watcher process exited unexpectedly (code {watcher.returncode})")
                return 1

            try:
                stream, line = self._events.get(timeout=0.1)
            except queue.Empty:
                continue
            self._dispatch(stream, line)
        return 0

    def _drain(self) -> None:
        while True:
            try:
                stream, line = self._events.get_nowait()
            except queue.Empty:
                return
            if stream == "stderr":
                self._dispatch(stream, line)

    def _dispatch(self, stream: str, line: str | None) -> None:
        if line is None or not line.strip():
            return
        if stream == "stderr":
            self._handle_stderr(line.strip())
            return

        event = parse_event(line)
        if event is None:
            log.debug(f"Ignoring watcher output: {line.strip()}")
            return
        self.show_event(event)

        self.state.changed = accumulate(self.state.changed, event)
        if not self.state.changed:
            return
        log.console.print(
            f"[dim]Scanning {len(self.state.changed)} file(s) for {self.cfg.search_word}...[/dim]"
        )
        decision = evaluate_trigger(self.state.changed, self.scanner)
        self.state.changed = decision.remaining
        if decision.trigger:
            self.process(decision.files)
            log.console.print("Resuming watch...")

    def _handle_stderr(self, line: str) -> None:
        event = parse_event(line)
        if event is not None and event.get("event") == "error":
            log.error(f"Watcher error: {event.get('error', 'Unknown error')}")
        else:
            log.error(f"Watcher: {line}")

    def shutdown(self) -> None:
        """Stop the watcher (SIGTERM then SIGKILL), close its pipes and drop the watch lock."""
        cleanup_lock(self.lock_path)
        proc = self.watcher
        if proc is None:
            return
        self.watcher = None
        terminate_process(proc, self.cfg.grace_period)
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                try:
                    pipe.close()
                except OSError:
                    pass

    # ── output ───────────────────────────────────────────────────

    def _rel(self, path: str) -> str:
        try:
            return Path(path).resolve().relative_to(self.project_dir.resolve()).as_posix()
        except ValueError:
            return path

    def show_startup(self) -> None:
        log.console.print("")
        log.console.print("[bold green]taskloop watch[/bold green]")
        log.rule()
        log.console.print(f"[yellow]Watching:[/yellow] {', '.join(self.cfg.paths)}")
        log.console.print(f"[yellow]Search word:[/yellow] {self.cfg.search_word}")
        log.console.print(f"[yellow]Stop word:[/yellow] {self.cfg.stop_word}")
        log.console.print(f"[yellow]Mode:[/yellow] {self.cfg.mode.value}")
        log.console.print("")
        log.console.print(
            f'[dim]Add {self.cfg.search_word} comments to your files, then include '
            f'"{self.cfg.stop_word}" to trigger processing[/dim]'
        )

    def show_event(self, event: dict[str, Any]) -> None:
        kind = event["event"]
        path = event.get("path")
        match kind:
            case "ready":
                log.console.print("[green]✓[/green] Watcher ready")
            case "add" | "change" if isinstance(path, str):
                log.console.print(f"[blue]•[/blue] {kind}: {self._rel(path)}")
            case "unlink" if isinstance(path, str):
                log.console.print(f"[red]•[/red] deleted: {self._rel(path)}")
            case "error":
                log.error(f"Watcher error: {event.get('error', 'Unknown error')}")
            case "shutdown":
                log.console.print(f"[yellow]Watcher received {event.get('signal', 'unknown')}[/yellow]")
            case _:
                log.debug(f"Watcher event: {kind}")

    def show_comments(self, result: ScanResult) -> None:
        log.console.print(
            f"[yellow]Found {len(result.comments)} {self.cfg.search_word} comment(s):[/yellow]"
        )
        for file, comments in group_by_file(result.comments).items():
            log.console.print(f"[green]{self._rel(file)}[/green]")
            for c in comments:
                log.console.print(f"  [dim]L{c.line}:[/dim] {escape(c.text)}")

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        self._orig_signal_handlers = {}
        for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
            if sig is None:
                continue
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
        if not self.state.stop_requested:
            log.console.print("")
            log.warn("Shutting down watcher...")
        self.state.stop_requested = True
