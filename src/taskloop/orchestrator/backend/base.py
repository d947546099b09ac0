"""Worker interface for one loop iteration."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskloop.orchestrator.models import IterationRecord, ProgressEntry, TaskItem


@dataclass(slots=True)
class WorkerRunRequest:
    """Inputs required to run the worker once for one task."""

    task: TaskItem
    context: Sequence[ProgressEntry]
    command_template: str
    completion_marker: str
    iteration_number: int = 0
    timeout_seconds: float | None = None
    task_done_token: str | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None
    stop_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 10.0


class WorkerBackend(Protocol):
    """Protocol implemented by worker runners."""

    def invoke(self, request: WorkerRunRequest) -> IterationRecord:
        """Run one iteration and return what was observed.

        Raises ``WorkerLaunchError`` when the command cannot be started.
        """
