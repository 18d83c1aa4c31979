"""Spawn-and-monitor protocol shared by the build and watch loops.

1. Spawn the agent attached to our terminal (it may ask the human questions),
   with ``TASKLOOP_LOCK_FILE`` in its environment.
2. Write the lock file with the child's pid right after spawning.
3. Poll every ``poll_interval`` seconds: child exited on its own, lock file
   deleted by someone else (``taskloop stop`` / ``notify build``), or our own
   loop asked to stop (signal handler).
4. On the way out, terminate the child if it is still alive and delete the
   lock if it is still there.
"""

from __future__ import annotations

import os
import subprocess
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from taskloop import log
from taskloop.config import LOCK_ENV_VAR
from taskloop.errors import AgentSpawnError, LockFileError
from taskloop.lockfile import DEFAULT_GRACE_PERIOD, LockRecord, cleanup_lock, write_lock

DEFAULT_POLL_INTERVAL = 0.1


class StopReason(str, Enum):
    EXITED = "exited"            # child finished on its own
    LOCK_REMOVED = "lock_removed"  # lock deleted externally, child terminated
    INTERRUPTED = "interrupted"  # our own loop asked to stop


@dataclass
class MonitorResult:
    reason: StopReason
    pid: int
    return_code: int | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.reason is StopReason.EXITED and self.return_code == 0


def _creationflags() -> int:
    """Creation flags for agent processes."""
    if sys.platform == "win32":
        return int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    return 0


def spawn_agent(
    cmd: list[str],
    *,
    cwd: Path,
    lock_path: Path,
    context: dict[str, Any] | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.Popen:  # type: ignore[type-arg]
    """Start *cmd* on the controlling terminal and record its lock file.

    Raises :class:`AgentSpawnError` if the executable cannot be started and
    :class:`LockFileError` if the lock cannot be written (the child is
    terminated first in that case).
    """
    child_env = dict(os.environ)
    child_env[LOCK_ENV_VAR] = str(lock_path)
    if env:
        child_env.update(env)

    popen_kwargs: dict[str, object] = {
        "cwd": cwd,
        "env": child_env,
        # stdin/stdout/stderr inherited: the agent talks to the human directly.
        "stdin": None,
        "stdout": None,
        "stderr": None,
    }
    creationflags = _creationflags()
    if creationflags:
        popen_kwargs["creationflags"] = creationflags

    try:
        proc = subprocess.Popen(cmd, **popen_kwargs)  # type: ignore[call-overload]
    except FileNotFoundError as e:
        raise AgentSpawnError(f"{cmd[0]} not found") from e
    except OSError as e:
        raise AgentSpawnError(f"Failed to start {cmd[0]}: {e}") from e

    try:
        write_lock(lock_path, LockRecord(pid=proc.pid, context=dict(context or {})))
    except LockFileError:
        terminate_process(proc)
        raise

    log.debug(f"Spawned pid {proc.pid}: {' '.join(cmd)}")
    return proc


def terminate_process(
    proc: subprocess.Popen,  # type: ignore[type-arg]
    grace: float = DEFAULT_GRACE_PERIOD,
) -> None:
    """SIGTERM, wait up to *grace* seconds, SIGKILL, then reap the handle."""
    if proc.poll() is None:
        try:
            proc.terminate()
        except OSError:
            pass
        try:
            proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            log.debug(f"Process {proc.pid} still running, sending SIGKILL")
            try:
                proc.kill()
            except OSError:
                pass

    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        log.warn(f"Process {proc.pid} did not exit after SIGKILL")


def monitor(
    proc: subprocess.Popen,  # type: ignore[type-arg]
    lock_path: Path,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    grace: float = DEFAULT_GRACE_PERIOD,
    stop_requested: Callable[[], bool] | None = None,
) -> MonitorResult:
    """Poll until the child exits, the lock disappears, or *stop_requested*."""
    start = time.monotonic()

    def _result(reason: StopReason) -> MonitorResult:
        return MonitorResult(
            reason=reason,
            pid=proc.pid,
            return_code=proc.returncode,
            duration=time.monotonic() - start,
        )

    while True:
        if proc.poll() is not None:
            return _result(StopReason.EXITED)

        if stop_requested is not None and stop_requested():
            log.debug(f"Stop requested, terminating pid {proc.pid}")
            terminate_process(proc, grace)
            return _result(StopReason.INTERRUPTED)

        if not lock_path.exists():
            log.warn("Lock file removed, terminating agent...")
            terminate_process(proc, grace)
            return _result(StopReason.LOCK_REMOVED)

        time.sleep(poll_interval)


def run_supervised(
    cmd: list[str],
    *,
    cwd: Path,
    lock_path: Path,
    context: dict[str, Any] | None = None,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    grace: float = DEFAULT_GRACE_PERIOD,
    stop_requested: Callable[[], bool] | None = None,
    env: dict[str, str] | None = None,
) -> MonitorResult:
    """Spawn *cmd*, monitor it, and always clean up child and lock."""
    proc = spawn_agent(cmd, cwd=cwd, lock_path=lock_path, context=context, env=env)
    try:
        return monitor(
            proc,
            lock_path,
            poll_interval=poll_interval,
            grace=grace,
            stop_requested=stop_requested,
        )
    finally:
        if proc.poll() is None:
            terminate_process(proc, grace)
        cleanup_lock(lock_path)
