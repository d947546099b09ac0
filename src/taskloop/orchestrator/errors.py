"""Exception hierarchy for the iteration loop."""

from __future__ import annotations


class TaskLoopError(RuntimeError):
    """Base class for all taskloop errors."""


class ConfigError(TaskLoopError, ValueError):
    """Invalid CLI arguments or environment configuration."""


class PersistenceError(TaskLoopError):
    """Backlog or progress log cannot be read or written."""


class BacklogNotFoundError(PersistenceError):
    """Backlog file does not exist yet."""


class CorruptBacklogError(PersistenceError):
    """Backlog file exists but cannot be parsed into task items."""


class UnknownTaskIdError(PersistenceError):
    """Status update addressed an id that is not in the backlog."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Unknown task id: {task_id!r}")
        self.task_id = task_id


class CorruptProgressLogError(PersistenceError):
    """Progress log has a malformed entry that is not a torn trailing write."""


class ProgressLogWriteError(PersistenceError):
    """Appending to the progress log failed."""


class WorkerLaunchError(TaskLoopError):
    """Worker command could not be started."""
