"""Iteration controller: select, invoke, record, decide."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path

from taskloop.orchestrator.backend import WorkerBackend, WorkerRunRequest
from taskloop.orchestrator.backlog import BacklogStore, select_next_pending
from taskloop.orchestrator.detector import StopPolicy, evaluate, has_marker, halt_reason_for
from taskloop.orchestrator.errors import (
    BacklogNotFoundError,
    PersistenceError,
    WorkerLaunchError,
)
from taskloop.orchestrator.models import (
    Attribution,
    Decision,
    HaltReason,
    IterationRecord,
    LoopRunResult,
    LoopState,
    ProgressEntry,
    ProgressOutcome,
    RetryPolicy,
    TaskItem,
    TaskStatus,
)
from taskloop.orchestrator.progress import ProgressLog
from taskloop.orchestrator.prompts import DEFAULT_TASK_DONE_TEMPLATE, render_task_done_token
from taskloop.orchestrator.sanitization import sanitize_notes
from taskloop.orchestrator.storage import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class IterationReport:
    """What the controller tells its observer after each iteration."""

    entry: ProgressEntry
    record: IterationRecord
    decision: Decision


IterationObserver = Callable[[IterationReport], None]


class IterationController:
    """Drive the worker through the backlog one task at a time.

    Nothing survives between iterations except what the backlog store and
    the progress log persist, so ``run`` can be called from a fresh process
    at any point and will pick up where the last one stopped.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backlog: BacklogStore,
        progress: ProgressLog,
        worker: WorkerBackend,
        command_template: str,
        stop_policy: StopPolicy,
        timeout_seconds: float | None = 1800.0,
        retry_policy: RetryPolicy = RetryPolicy.AUTO,
        attribution: Attribution = Attribution.EXIT_CODE,
        task_done_template: str = DEFAULT_TASK_DONE_TEMPLATE,
        context_entries: int = 5,
        output_dir: Path | None = None,
        graceful_shutdown_seconds: float = 10.0,
        on_iteration: IterationObserver | None = None,
    ) -> None:
        self.backlog = backlog
        self.progress = progress
        self.worker = worker
        self.command_template = command_template
        self.stop_policy = stop_policy
        self.timeout_seconds = timeout_seconds
        self.retry_policy = retry_policy
        self.attribution = attribution
        self.task_done_template = task_done_template
        self.context_entries = context_entries
        self.output_dir = output_dir
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.on_iteration = on_iteration
        self.state = LoopState.IDLE
        self._stop_requested = False

    def run(self, max_iterations: int) -> LoopRunResult:
        """Iterate until a stop condition or ``max_iterations`` worker runs."""

        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")

        iterations = 0
        last_task_id: str | None = None
        with self._signal_handlers():
            self._guarded(self.progress.recover, task_id=None)
            while True:
                self._transition(LoopState.SELECTING)
                task = self._guarded(self._select, task_id=None)
                if task is None:
                    return self._halt(HaltReason.BACKLOG_EXHAUSTED, iterations, last_task_id)
                if iterations >= max_iterations:
                    return self._halt(HaltReason.MAX_ITERATIONS_REACHED, iterations, last_task_id)
                if self._stop_requested:
                    return self._halt(HaltReason.INTERRUPTED, iterations, last_task_id)

                iterations += 1
                last_task_id = task.id
                decision, record = self._guarded(partial(self._iterate, task), task_id=task.id)

                reason = halt_reason_for(record, decision)
                if reason is None and (record.interrupted or self._stop_requested):
                    reason = HaltReason.INTERRUPTED
                if reason is not None:
                    return self._halt(reason, iterations, last_task_id)
                self._transition(LoopState.IDLE)

    def request_stop(self, signal_name: str | None = None) -> None:
        if not self._stop_requested:
            logger.warning("Stop requested (%s); finishing current iteration", signal_name)
        self._stop_requested = True

    def _select(self) -> TaskItem | None:
        """Pick the next task; under auto-retry, failed tasks below the limit count as pending."""

        try:
            tasks = self.backlog.load()
        except BacklogNotFoundError:
            logger.warning("Backlog %s does not exist; treating it as empty", self.backlog.path)
            return None

        candidates = list(tasks)
        if self.retry_policy == RetryPolicy.AUTO:
            candidates = [
                replace(task, status=TaskStatus.PENDING) if self._retryable(task) else task
                for task in tasks
            ]

        selected = select_next_pending(candidates)
        if selected is None:
            failed = sum(1 for task in tasks if task.status == TaskStatus.FAILED)
            if failed:
                logger.warning("No pending tasks left; %d task(s) remain failed", failed)
            return None
        return next(task for task in tasks if task.id == selected.id)

    def _retryable(self, task: TaskItem) -> bool:
        if task.status != TaskStatus.FAILED:
            return False
        failures = self.progress.consecutive_failures(task.id)
        return failures < self.stop_policy.max_consecutive_failures

    def _iterate(self, task: TaskItem) -> tuple[Decision, IterationRecord]:
        if task.status == TaskStatus.FAILED:
            logger.info("Retrying failed task %s", task.id)
            self.backlog.update_status(task.id, TaskStatus.PENDING)

        iteration_number = self.progress.next_iteration_number()
        self._transition(LoopState.INVOKING)
        record = self._invoke(task, iteration_number)

        self._transition(LoopState.RECORDING)
        outcome = attribute_outcome(
            record,
            attribution=self.attribution,
            completion_marker=self.stop_policy.completion_marker,
            task_done_token=render_task_done_token(self.task_done_template, task.id),
        )
        entry = ProgressEntry(
            iteration_number=iteration_number,
            timestamp=utc_now(),
            task_id=task.id,
            outcome=outcome,
            notes=build_notes(record),
            exit_code=record.exit_code,
            duration_seconds=round(record.duration_seconds, 3),
        )
        self.progress.append(entry)
        self.backlog.update_status(
            task.id,
            TaskStatus.PASSED if outcome == ProgressOutcome.SUCCEEDED else TaskStatus.FAILED,
        )

        self._transition(LoopState.DECIDING)
        decision = evaluate(
            record,
            self.backlog.load(),
            consecutive_failures=self.progress.consecutive_failures(task.id),
            policy=self.stop_policy,
        )
        logger.info(
            "Iteration %d task=%s outcome=%s decision=%s",
            iteration_number,
            task.id,
            outcome.value,
            decision.value,
        )
        if self.on_iteration is not None:
            self.on_iteration(IterationReport(entry=entry, record=record, decision=decision))
        return decision, record

    def _invoke(self, task: TaskItem, iteration_number: int) -> IterationRecord:
        stdout_path: Path | None = None
        stderr_path: Path | None = None
        if self.output_dir is not None:
            stdout_path = self.output_dir / f"iteration-{iteration_number:04d}.stdout.txt"
            stderr_path = self.output_dir / f"iteration-{iteration_number:04d}.stderr.txt"

        request = WorkerRunRequest(
            task=task,
            context=self.progress.tail(self.context_entries),
            command_template=self.command_template,
            completion_marker=self.stop_policy.completion_marker,
            iteration_number=iteration_number,
            timeout_seconds=self.timeout_seconds,
            task_done_token=(
                render_task_done_token(self.task_done_template, task.id)
                if self.attribution == Attribution.TASK_ID
                else None
            ),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            stop_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        started = time.monotonic()
        try:
            return self.worker.invoke(request)
        except WorkerLaunchError as error:
            logger.error("Worker launch failed for task %s: %s", task.id, error)
            return IterationRecord(
                task_id=task.id,
                exit_code=None,
                stdout="",
                stderr="",
                duration_seconds=time.monotonic() - started,
                launch_error=str(error),
            )

    def _guarded(self, action, *, task_id: str | None):
        """Run ``action``; persistence failures are logged to the progress log, then re-raised."""

        try:
            return action()
        except PersistenceError as error:
            self._record_persistence_failure(error, task_id=task_id)
            raise

    def _record_persistence_failure(self, error: PersistenceError, *, task_id: str | None) -> None:
        logger.error("Persistence failure: %s", error)
        try:
            self.progress.append(
                ProgressEntry(
                    iteration_number=self.progress.next_iteration_number(),
                    timestamp=utc_now(),
                    task_id=task_id or "-",
                    outcome=ProgressOutcome.ERROR,
                    notes=f"persistence error: {error}",
                ),
            )
        except PersistenceError as log_error:
            logger.error("Could not record persistence failure in progress log: %s", log_error)

    def _halt(self, reason: HaltReason, iterations: int, last_task_id: str | None) -> LoopRunResult:
        self._transition(LoopState.HALTED)
        log = logger.info if reason.succeeded else logger.warning
        log("Loop halted: %s after %d iteration(s)", reason.value, iterations)
        return LoopRunResult(halt_reason=reason, iterations=iterations, last_task_id=last_task_id)

    def _transition(self, state: LoopState) -> None:
        logger.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def attribute_outcome(
    record: IterationRecord,
    *,
    attribution: Attribution,
    completion_marker: str,
    task_done_token: str,
) -> ProgressOutcome:
    """Credit one invocation to the selected task according to ``attribution``."""

    if record.launch_error is not None or record.timed_out or record.interrupted:
        return ProgressOutcome.ERROR
    if record.exit_code != 0:
        return ProgressOutcome.FAILED
    if attribution == Attribution.MARKER and not has_marker(record, completion_marker):
        return ProgressOutcome.FAILED
    if attribution == Attribution.TASK_ID and task_done_token not in record.stdout:
        return ProgressOutcome.FAILED
    return ProgressOutcome.SUCCEEDED


def build_notes(record: IterationRecord) -> str:
    if record.launch_error is not None:
        return f"launch error: {record.launch_error}"
    output = sanitize_notes(record.stdout) or sanitize_notes(record.stderr)
    if record.timed_out:
        prefix = f"timed out after {record.duration_seconds:.0f}s"
    elif record.interrupted:
        prefix = "interrupted"
    elif record.exit_code != 0:
        prefix = f"exit code {record.exit_code}"
    else:
        return output
    return f"{prefix}: {output}" if output else prefix
