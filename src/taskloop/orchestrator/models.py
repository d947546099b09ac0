"""Domain models for the backlog iteration loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Persisted backlog item states."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class ProgressOutcome(str, Enum):
    """Outcome recorded for one iteration."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ERROR = "error"


class WorkerFailure(str, Enum):
    """Ways a single worker invocation can go wrong."""

    LAUNCH_ERROR = "launch_error"
    TIMEOUT = "timeout"
    NON_ZERO_EXIT = "non_zero_exit"


class Decision(str, Enum):
    """Stop-condition verdict after one iteration."""

    CONTINUE = "continue"
    STOP_SUCCESS = "stop_success"
    STOP_FAILURE = "stop_failure"


class HaltReason(str, Enum):
    """Why the loop stopped."""

    BACKLOG_EXHAUSTED = "backlog_exhausted"
    COMPLETION_MARKER = "completion_marker"
    TASK_FAILED_REPEATEDLY = "task_failed_repeatedly"
    WORKER_LAUNCH_FAILED = "worker_launch_failed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    INTERRUPTED = "interrupted"

    @property
    def succeeded(self) -> bool:
        return self in (HaltReason.BACKLOG_EXHAUSTED, HaltReason.COMPLETION_MARKER)


class LoopState(str, Enum):
    """Iteration controller states."""

    IDLE = "idle"
    SELECTING = "selecting"
    INVOKING = "invoking"
    RECORDING = "recording"
    DECIDING = "deciding"
    HALTED = "halted"


class RetryPolicy(str, Enum):
    """What happens to failed items between iterations."""

    AUTO = "auto"
    MANUAL = "manual"


class Attribution(str, Enum):
    """How a worker invocation is credited to the selected task."""

    EXIT_CODE = "exit-code"
    MARKER = "marker"
    TASK_ID = "task-id"


@dataclass(slots=True)
class TaskItem:
    """One backlog entry."""

    id: str
    description: str
    priority: int
    status: TaskStatus = TaskStatus.PENDING
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProgressEntry:
    """One append-only progress log record."""

    iteration_number: int
    timestamp: datetime
    task_id: str
    outcome: ProgressOutcome
    notes: str
    exit_code: int | None = None
    duration_seconds: float | None = None


@dataclass(slots=True)
class IterationRecord:
    """Captured result of one worker invocation. Never persisted as-is."""

    task_id: str
    exit_code: int | None
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    launch_error: str | None = None
    interrupted: bool = False

    @property
    def failure(self) -> WorkerFailure | None:
        if self.launch_error is not None:
            return WorkerFailure.LAUNCH_ERROR
        if self.timed_out:
            return WorkerFailure.TIMEOUT
        if self.exit_code != 0:
            return WorkerFailure.NON_ZERO_EXIT
        return None


@dataclass(slots=True)
class LoopRunResult:
    """Final outcome of one `IterationController.run` call."""

    halt_reason: HaltReason
    iterations: int
    last_task_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.halt_reason.succeeded
