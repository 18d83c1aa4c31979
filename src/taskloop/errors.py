"""Exception hierarchy shared by the library modules.

Library code raises these; only :mod:`taskloop.cli` turns them into exit codes.
"""

from __future__ import annotations


class TaskloopError(Exception):
    """Base class for all taskloop errors."""


class TaskGraphError(TaskloopError):
    """The task graph file is missing, unparseable or structurally invalid."""


class LockFileError(TaskloopError):
    """A lock file could not be written."""


class ConfigError(TaskloopError):
    """Invalid configuration value (e.g. an unknown permission mode)."""


class AgentSpawnError(TaskloopError):
    """The agent CLI could not be started."""
