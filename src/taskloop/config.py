"""Configuration defaults, env vars, and runtime options for taskloop."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from taskloop.errors import ConfigError
from taskloop.io_utils import read_json_object


STATE_DIR = ".taskloop"
SPECS_DIR = f"{STATE_DIR}/specs"
WATCH_CONFIG_FILE = f"{STATE_DIR}/watch.json"
WATCH_LOCK_FILE = f"{STATE_DIR}/watch.lock"
COMMENTS_FILE = f"{STATE_DIR}/comments.json"

LOCK_FILE_NAME = "index.lock"
COMPLETION_SIGNAL_NAME = "completed.json"

LOCK_ENV_VAR = "TASKLOOP_LOCK_FILE"
AGENT_ENV_VAR = "TASKLOOP_AGENT"

DEFAULT_WATCH_PATHS = ("app/", "routes/", "resources/")
DEFAULT_STOP_WORD = "ai!"
DEFAULT_SEARCH_WORD = "@ai"


class PermissionMode(str, Enum):
    """How much the agent may do unattended, and whether we prompt the user."""

    YOLO = "yolo"
    ACCEPT = "accept"
    INTERACTIVE = "interactive"

    @classmethod
    def parse(cls, value: "str | PermissionMode") -> "PermissionMode":
        if isinstance(value, PermissionMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ConfigError(
                f"Invalid permission mode: {value!r}. Valid modes: {allowed}."
            ) from None

    @property
    def prompts(self) -> bool:
        """Whether decision points ask the user instead of auto-continuing."""
        return self is not PermissionMode.YOLO

    def agent_flags(self) -> list[str]:
        """CLI flags that grant the agent this level of autonomy."""
        match self:
            case PermissionMode.YOLO:
                return ["--dangerously-skip-permissions"]
            case PermissionMode.ACCEPT:
                return ["--permission-mode", "acceptEdits"]
            case _:
                return []

    def describe(self) -> str:
        match self:
            case PermissionMode.YOLO:
                return "Execute all changes without prompting for approval"
            case PermissionMode.ACCEPT:
                return "Accept all edits but prompt for other permissions"
            case _:
                return "Interactive mode - prompt for all permissions"


def default_agent_command() -> str:
    return os.environ.get(AGENT_ENV_VAR) or "claude"


@dataclass
class Config:
    """Runtime configuration for the build loop."""

    # Agent
    agent_command: str = ""
    mode: PermissionMode = PermissionMode.YOLO

    # Loop
    max_iterations: int = 100
    delay: float = 3.0

    # Supervision
    poll_interval: float = 0.1
    grace_period: float = 0.5

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if not self.agent_command:
            self.agent_command = default_agent_command()
        self.mode = PermissionMode.parse(self.mode)
        if self.max_iterations < 0:
            raise ConfigError("max_iterations must be >= 0")
        if self.delay < 0:
            raise ConfigError("delay must be >= 0")
        if self.grace_period < 0:
            raise ConfigError("grace_period must be >= 0")


@dataclass
class WatchConfig:
    """Settings for ``taskloop watch``; file values are overridden by CLI flags."""

    paths: list[str] = field(default_factory=lambda: list(DEFAULT_WATCH_PATHS))
    stop_word: str = DEFAULT_STOP_WORD
    search_word: str = DEFAULT_SEARCH_WORD
    mode: PermissionMode = PermissionMode.INTERACTIVE
    exclude: list[str] = field(default_factory=list)
    max_rescans: int = 10
    agent_command: str = ""
    poll_interval: float = 0.1
    grace_period: float = 0.5

    def __post_init__(self) -> None:
        if not self.agent_command:
            self.agent_command = default_agent_command()
        self.mode = PermissionMode.parse(self.mode)


def load_watch_config(path: Path | None, project_dir: Path) -> dict[str, object]:
    """Read ``watch.json`` (explicit *path* or the project default).

    Returns the raw camelCase mapping; a missing or unreadable file is an empty
    mapping, since the config file is optional.
    """
    if path is None:
        candidate = project_dir / WATCH_CONFIG_FILE
        if not candidate.is_file():
            return {}
        path = candidate
    return read_json_object(path) or {}


def resolve_watch_config(
    file_cfg: dict[str, object],
    *,
    paths: tuple[str, ...] | list[str] = (),
    stop_word: str | None = None,
    search_word: str | None = None,
    mode: str | None = None,
    exclude: tuple[str, ...] | list[str] = (),
) -> WatchConfig:
    """Merge CLI options over file settings over defaults."""
    cfg_paths = file_cfg.get("paths")
    cfg_exclude = file_cfg.get("excludePatterns")

    resolved_paths = list(paths) or (
        [str(p) for p in cfg_paths] if isinstance(cfg_paths, list) and cfg_paths else list(DEFAULT_WATCH_PATHS)
    )

    patterns: list[str] = list(exclude)
    if isinstance(cfg_exclude, list):
        patterns.extend(str(p) for p in cfg_exclude)
    deduped = list(dict.fromkeys(patterns))

    return WatchConfig(
        paths=resolved_paths,
        stop_word=stop_word or str(file_cfg.get("stopWord") or DEFAULT_STOP_WORD),
        search_word=search_word or str(file_cfg.get("searchWord") or DEFAULT_SEARCH_WORD),
        mode=PermissionMode.parse(mode or str(file_cfg.get("mode") or PermissionMode.INTERACTIVE.value)),
        exclude=deduped,
    )


def is_windows() -> bool:
    return sys.platform == "win32"
