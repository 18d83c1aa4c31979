"""taskloop CLI.

Installed as the ``taskloop`` console_script; also runnable as
``python -m taskloop``.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from taskloop import __version__
from taskloop.config import PermissionMode

if TYPE_CHECKING:
    from taskloop.engines.base import EngineBase

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

MODE_CHOICE = click.Choice([m.value for m in PermissionMode], case_sensitive=False)


def _check_engine(engine: EngineBase) -> None:
    from taskloop import log as tlog

    err = engine.check_available()
    if err:
        tlog.error(err)
        sys.exit(1)


def _read_stdin() -> str:
    stream = click.get_text_stream("stdin")
    if stream.isatty():
        return ""
    return stream.read()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.version_option(__version__, prog_name="taskloop")
def main(verbose: bool) -> None:
    """taskloop: autonomous AI build loop.

    Runs an AI coding agent once per task of a dependency graph, or whenever
    an ``@ai`` comment with the stop word appears in watched files.

    \b
    EXAMPLES:
      taskloop init
      taskloop build .taskloop/specs/auth/tasks.json
      taskloop build .taskloop/specs/auth/tasks.json --mode accept --iterations 5
      taskloop watch --paths src/ --stop-word "ai!"
      taskloop stop .taskloop/specs/auth/index.lock
    """
    from taskloop import log as tlog

    tlog.set_verbose(verbose)


# ── build ────────────────────────────────────────────────────────


@main.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--iterations", "max_iterations", type=int, default=100, show_default=True,
              help="Stop after N agent runs (0=unlimited)")
@click.option("--delay", type=float, default=3.0, show_default=True, help="Seconds between iterations")
@click.option("--mode", type=MODE_CHOICE, default=PermissionMode.YOLO.value, show_default=True,
              help="Agent permission mode")
@click.option("--grace", "grace_period", type=float, default=0.5, show_default=True,
              help="Seconds between SIGTERM and SIGKILL when stopping the agent")
def build(path: Path, max_iterations: int, delay: float, mode: str, grace_period: float) -> None:
    """Run the agent on each task of PATH (a tasks.json) until done."""
    from taskloop import log as tlog
    from taskloop.build import BuildLoop
    from taskloop.config import Config
    from taskloop.engines.claude import ClaudeEngine
    from taskloop.errors import TaskloopError

    try:
        cfg = Config(
            mode=PermissionMode.parse(mode),
            max_iterations=max_iterations,
            delay=delay,
            grace_period=grace_period,
            verbose=tlog.is_verbose(),
        )
        engine = ClaudeEngine(cfg.agent_command)
        _check_engine(engine)
        result = BuildLoop(cfg, path.absolute(), engine).run()
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)

    sys.exit(result.exit_code)


@main.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.argument("task_id", type=int)
def reset(path: Path, task_id: int) -> None:
    """Move in-progress task TASK_ID of PATH back to pending."""
    from taskloop import log as tlog
    from taskloop.build import reset_task
    from taskloop.errors import TaskloopError

    try:
        changed = reset_task(path, task_id)
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)

    if changed:
        tlog.success(f"Task #{task_id} reset to pending")
    else:
        tlog.info(f"Task #{task_id} is not in progress; nothing to do")


# ── watch ────────────────────────────────────────────────────────


@main.command()
@click.option("--paths", multiple=True, help="Paths to watch (default: app/, routes/, resources/)")
@click.option("--stop-word", default=None, help="Stop word that triggers processing (default: ai!)")
@click.option("--search-word", default=None, help="Comment marker to search for (default: @ai)")
@click.option("--mode", type=MODE_CHOICE, default=None, help="Agent permission mode (default: interactive)")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to watch.json (default: .taskloop/watch.json)")
@click.option("--exclude", multiple=True, help="Additional glob patterns to ignore")
def watch(
    paths: tuple[str, ...],
    stop_word: str | None,
    search_word: str | None,
    mode: str | None,
    config_path: Path | None,
    exclude: tuple[str, ...],
) -> None:
    """Watch files for @ai comments and process them when the stop word appears."""
    from taskloop import log as tlog
    from taskloop.config import load_watch_config, resolve_watch_config
    from taskloop.engines.claude import ClaudeEngine
    from taskloop.errors import TaskloopError
    from taskloop.watch import WatchLoop

    project_dir = Path.cwd()
    try:
        file_cfg = load_watch_config(config_path, project_dir)
        cfg = resolve_watch_config(
            file_cfg,
            paths=paths,
            stop_word=stop_word,
            search_word=search_word,
            mode=mode,
            exclude=exclude,
        )
        engine = ClaudeEngine(cfg.agent_command)
        _check_engine(engine)
        code = WatchLoop(cfg, engine, project_dir).run()
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)

    sys.exit(code)


# ── coordination ─────────────────────────────────────────────────


@main.command()
@click.argument("lock_path", required=False)
@click.option("--grace", type=float, default=0.5, show_default=True,
              help="Seconds between SIGTERM and SIGKILL")
def stop(lock_path: str | None, grace: float) -> None:
    """Stop the agent named in LOCK_PATH (default: the active lock)."""
    from taskloop import log as tlog
    from taskloop.errors import TaskloopError
    from taskloop.lockfile import find_active_lock
    from taskloop.notify import stop_locked_process

    if lock_path is None:
        found = find_active_lock(Path.cwd())
        if found is None:
            tlog.error("No active lock file found")
            sys.exit(1)
        lock_path = str(found)

    try:
        stop_locked_process(lock_path, grace=grace)
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)
    tlog.success("Stopped agent and cleaned up lock file")


@main.command()
@click.argument("action")
@click.argument("data", required=False)
@click.option("--mode", type=MODE_CHOICE, default=PermissionMode.INTERACTIVE.value, show_default=True)
@click.option("--message", default=None, help="Optional message to display")
@click.option("--task", "task_id", type=int, default=None, help="Completed task id (build action)")
def notify(action: str, data: str | None, mode: str, message: str | None, task_id: int | None) -> None:
    """Handle a signal from the agent.

    \b
    ACTIONS:
      build LOCK_PATH [--task ID]   stop the agent, record completion
      stop LOCK_PATH                stop the agent
      plan-ready [JSON]             approve a plan (auto in yolo mode)
      tasks-ready [JSON]            start the build (auto in yolo mode)
      watch-complete [JSON]         report a finished watch batch
      error [JSON]                  report an error (exit 1)
    """
    from taskloop.notify import handle

    sys.exit(handle(action, data, mode=mode, message=message, task_id=task_id))


# ── agent integration ────────────────────────────────────────────


@main.command()
def statusline() -> None:
    """Render the agent statusline (status JSON on stdin)."""
    from taskloop.statusline import statusline as render_statusline

    click.echo(render_statusline(_read_stdin(), Path.cwd()), nl=False)


@main.group()
def hook() -> None:
    """Agent lifecycle hooks."""


@hook.command("session-start")
def session_start() -> None:
    """Record the agent session id in the current lock file."""
    from taskloop import log as tlog
    from taskloop.errors import TaskloopError
    from taskloop.statusline import record_session

    try:
        record_session(_read_stdin())
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)


@main.command()
@click.argument("path", required=False, type=click.Path(path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite existing files")
def init(path: Path | None, force: bool) -> None:
    """Set up taskloop in PATH (default: current directory)."""
    from taskloop import log as tlog
    from taskloop.errors import TaskloopError
    from taskloop.scaffold import init_project

    try:
        init_project((path or Path.cwd()).resolve(), force=force)
    except TaskloopError as e:
        tlog.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
