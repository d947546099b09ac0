"""Controllers for taskloop CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskloop.config import Settings, timeout_from_seconds
from taskloop.orchestrator.backend import CliWorker
from taskloop.orchestrator.backlog import BacklogStore
from taskloop.orchestrator.errors import BacklogNotFoundError, ConfigError, PersistenceError
from taskloop.orchestrator.loop import IterationController, IterationReport
from taskloop.orchestrator.models import Attribution, LoopRunResult, RetryPolicy, TaskStatus
from taskloop.orchestrator.progress import ProgressLog
from taskloop.orchestrator.prompts import render_context

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


@dataclass(slots=True)
class LoopRunCommand:
    """CLI input for one loop run. ``None`` means: use the environment/default."""

    max_iterations: int
    backlog_path: Path | None = None
    progress_path: Path | None = None
    worker_command: str | None = None
    completion_marker: str | None = None
    timeout_seconds: float | None = None
    max_consecutive_failures: int | None = None
    retry_policy: str | None = None
    attribution: str | None = None
    require_all_passed: bool | None = None
    context_entries: int | None = None
    output_dir: Path | None = None


@dataclass(slots=True)
class LoopRunOutcome:
    """Final CLI lines and process exit code for a loop run."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class LoopStatusCommand:
    """CLI input for backlog status."""

    backlog_path: Path | None
    progress_path: Path | None
    recent: int = 5


@dataclass(slots=True)
class LoopRetryCommand:
    """CLI input for resetting failed tasks."""

    backlog_path: Path | None
    task_ids: tuple[str, ...] = ()


@dataclass(slots=True)
class LoopLogCommand:
    """CLI input for printing the progress log tail."""

    progress_path: Path | None
    tail: int = 20


class LoopCliController:
    """Translate CLI commands into loop runs and store queries."""

    def run(
        self,
        command: LoopRunCommand,
        *,
        emit: Callable[[str], None] | None = None,
    ) -> LoopRunOutcome:
        """Run the loop; raises ``ConfigError`` before any iteration on bad input."""

        settings = self.resolve_settings(command)
        backlog = BacklogStore(settings.backlog_path)
        progress = ProgressLog(settings.progress_path)

        def _on_iteration(report: IterationReport) -> None:
            if emit is not None:
                emit(format_iteration_line(report))

        controller = IterationController(
            backlog=backlog,
            progress=progress,
            worker=CliWorker(),
            command_template=settings.worker.command_template or "",
            stop_policy=settings.stop.to_policy(),
            timeout_seconds=settings.worker.timeout_seconds,
            retry_policy=settings.loop.retry_policy,
            attribution=settings.loop.attribution,
            task_done_template=settings.loop.task_done_template,
            context_entries=settings.loop.context_entries,
            output_dir=settings.worker.output_dir,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            on_iteration=_on_iteration,
        )

        try:
            result = controller.run(command.max_iterations)
        except PersistenceError as error:
            return LoopRunOutcome(
                lines=[f"status=persistence_error result=failure error={error}"],
                exit_code=EXIT_FAILURE,
            )

        return LoopRunOutcome(
            lines=[format_status_line(result, _safe_summary(backlog))],
            exit_code=EXIT_SUCCESS if result.succeeded else EXIT_FAILURE,
        )

    def resolve_settings(self, command: LoopRunCommand) -> Settings:
        """Environment settings with CLI overrides applied, validated."""

        if command.max_iterations < 1:
            raise ConfigError("--max-iterations must be >= 1.")

        settings = Settings.from_env()
        if command.backlog_path is not None:
            settings.backlog_path = command.backlog_path
        if command.progress_path is not None:
            settings.progress_path = command.progress_path
        if command.worker_command is not None:
            settings.worker.command_template = command.worker_command
        if command.completion_marker is not None:
            settings.stop.completion_marker = command.completion_marker
        if command.timeout_seconds is not None:
            settings.worker.timeout_seconds = timeout_from_seconds(command.timeout_seconds)
        if command.max_consecutive_failures is not None:
            settings.stop.max_consecutive_failures = command.max_consecutive_failures
        if command.retry_policy is not None:
            settings.loop.retry_policy = RetryPolicy(command.retry_policy)
        if command.attribution is not None:
            settings.loop.attribution = Attribution(command.attribution)
        if command.require_all_passed is not None:
            settings.stop.require_all_passed = command.require_all_passed
        if command.context_entries is not None:
            settings.loop.context_entries = command.context_entries
        if command.output_dir is not None:
            settings.worker.output_dir = command.output_dir
        settings.validate()
        return settings

    def status(self, command: LoopStatusCommand) -> list[str]:
        settings = Settings.from_env()
        backlog = BacklogStore(command.backlog_path or settings.backlog_path)
        progress = ProgressLog(command.progress_path or settings.progress_path)

        lines = [f"backlog: {backlog.path}"]
        try:
            tasks = backlog.load()
        except BacklogNotFoundError:
            lines.append("Backlog not found.")
            return lines

        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        lines.append(" ".join(f"{status.value}={counts[status]}" for status in TaskStatus))

        next_task = backlog.next_pending()
        if next_task is None:
            lines.append("next: none")
        else:
            lines.append(
                f"next: {next_task.id} (priority {next_task.priority}) "
                f"{_first_line(next_task.description)}",
            )

        recent = progress.tail(command.recent)
        if recent:
            lines.append("recent progress:")
            lines.extend(f"  {line}" for line in render_context(recent).splitlines())
        else:
            lines.append("recent progress: none")
        return lines

    def retry(self, command: LoopRetryCommand) -> list[str]:
        settings = Settings.from_env()
        backlog = BacklogStore(command.backlog_path or settings.backlog_path)
        changed = backlog.reset_failed(command.task_ids or None)
        if not changed:
            return ["No failed tasks to reset."]
        return [f"Reset {task.id} to pending." for task in changed]

    def log(self, command: LoopLogCommand) -> list[str]:
        settings = Settings.from_env()
        progress = ProgressLog(command.progress_path or settings.progress_path)
        entries = progress.tail(command.tail)
        if not entries:
            return ["Progress log is empty."]
        return render_context(entries).splitlines()


def format_iteration_line(report: IterationReport) -> str:
    entry = report.entry
    exit_code = "-" if entry.exit_code is None else str(entry.exit_code)
    return (
        f"iteration={entry.iteration_number} task={entry.task_id} "
        f"outcome={entry.outcome.value} exit_code={exit_code} "
        f"duration={entry.duration_seconds or 0:.1f}s decision={report.decision.value}"
    )


def format_status_line(result: LoopRunResult, counts: dict[TaskStatus, int] | None) -> str:
    parts = [
        f"status={result.halt_reason.value}",
        f"result={'success' if result.succeeded else 'failure'}",
        f"iterations={result.iterations}",
    ]
    if counts is not None:
        parts.extend(f"{status.value}={counts[status]}" for status in TaskStatus)
    return " ".join(parts)


def _safe_summary(backlog: BacklogStore) -> dict[TaskStatus, int] | None:
    if not backlog.exists():
        return None
    return backlog.summary()


def _first_line(text: str, *, limit: int = 80) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    if len(line) <= limit:
        return line
    return line[:limit] + "..."
