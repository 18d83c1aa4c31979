"""Base class for AI agent adapters."""

from __future__ import annotations

import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from taskloop.config import PermissionMode


class EngineBase(ABC):
    """Abstract agent adapter.  Subclasses implement ``build_cmd``.

    The agent is an opaque interactive CLI: we only decide its argv. Running
    and supervising it is :mod:`taskloop.supervisor`'s job.
    """

    name: str = "base"

    def __init__(self, executable: str = "") -> None:
        self.executable = executable or self.name

    @abstractmethod
    def build_cmd(self, prompt: str, mode: PermissionMode) -> list[str]:
        """Return the CLI command list for *prompt* under *mode*."""
        ...

    def build_task_cmd(self, tasks_path: Path, mode: PermissionMode) -> list[str]:
        """Command that asks the agent to implement the next task of a graph."""
        return self.build_cmd(f"/build-next {tasks_path}", mode)

    def comments_cmd(self, comments_path: Path, mode: PermissionMode) -> list[str]:
        """Command that asks the agent to act on a batch of extracted comments."""
        return self.build_cmd(f"/process-comments {comments_path}", mode)

    def resolve_executable(self) -> str:
        # Absolute path when resolvable so the child does not depend on PATH lookup.
        return shutil.which(self.executable) or self.executable

    def check_available(self) -> str | None:
        """Return an error message if the agent CLI is not available, else None."""
        if not shutil.which(self.executable):
            return f"{self.executable} not found in PATH"
        return None
