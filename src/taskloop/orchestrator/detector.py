"""Stop-condition evaluation after each iteration."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from taskloop.orchestrator.models import (
    Decision,
    HaltReason,
    IterationRecord,
    TaskItem,
    TaskStatus,
)

DEFAULT_COMPLETION_MARKER = "<promise>COMPLETE</promise>"


@dataclass(frozen=True, slots=True)
class StopPolicy:
    """Configured thresholds for `evaluate`."""

    completion_marker: str = DEFAULT_COMPLETION_MARKER
    require_all_passed: bool = True
    max_consecutive_failures: int = 3


def evaluate(
    record: IterationRecord,
    tasks: Sequence[TaskItem],
    *,
    consecutive_failures: int,
    policy: StopPolicy,
) -> Decision:
    """Decide whether the loop continues. Depends only on its arguments.

    ``tasks`` is the backlog as persisted after this iteration was recorded and
    ``consecutive_failures`` counts the current attempt.
    """

    if record.launch_error is not None:
        return Decision.STOP_FAILURE

    if has_marker(record, policy.completion_marker) and (
        not policy.require_all_passed or all_passed(tasks)
    ):
        return Decision.STOP_SUCCESS

    if consecutive_failures >= policy.max_consecutive_failures:
        return Decision.STOP_FAILURE

    return Decision.CONTINUE


def has_marker(record: IterationRecord, marker: str) -> bool:
    if not marker:
        return False
    return marker in record.stdout or marker in record.stderr


def all_passed(tasks: Sequence[TaskItem]) -> bool:
    return all(task.status == TaskStatus.PASSED for task in tasks)


def halt_reason_for(record: IterationRecord, decision: Decision) -> HaltReason | None:
    """Map a stop decision to the reason reported to operators."""

    if decision == Decision.STOP_SUCCESS:
        return HaltReason.COMPLETION_MARKER
    if decision == Decision.STOP_FAILURE:
        if record.launch_error is not None:
            return HaltReason.WORKER_LAUNCH_FAILED
        return HaltReason.TASK_FAILED_REPEATEDLY
    return None
