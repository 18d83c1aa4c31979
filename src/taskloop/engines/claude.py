"""Claude Code agent adapter."""

from __future__ import annotations

import shutil

from taskloop.config import PermissionMode
from taskloop.engines.base import EngineBase


class ClaudeEngine(EngineBase):
    name = "claude"

    def build_cmd(self, prompt: str, mode: PermissionMode) -> list[str]:
        return [self.resolve_executable(), *mode.agent_flags(), prompt]

    def check_available(self) -> str | None:
        if not shutil.which(self.executable):
            return (
                f"Agent CLI '{self.executable}' not found. "
                "Install Claude Code from https://github.com/anthropics/claude-code "
                "or set TASKLOOP_AGENT."
            )
        return None
