"""CLI entrypoint for taskloop."""

import logging
from pathlib import Path

import rich_click as click

from taskloop import __version__
from taskloop.orchestrator.controllers import (
    LoopCliController,
    LoopLogCommand,
    LoopRetryCommand,
    LoopRunCommand,
    LoopStatusCommand,
)
from taskloop.orchestrator.errors import ConfigError, PersistenceError
from taskloop.orchestrator.models import Attribution, RetryPolicy

click.rich_click.USE_MARKDOWN = True
LOOP_CONTROLLER = LoopCliController()

_BACKLOG_OPTION = click.option(
    "--backlog",
    "backlog_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Backlog JSON file. Defaults to TASKLOOP_BACKLOG_PATH or plans/prd.json.",
)
_PROGRESS_OPTION = click.option(
    "--progress-log",
    "progress_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Progress log file. Defaults to TASKLOOP_PROGRESS_PATH or progress.txt.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Diagnostic log level (written to stderr).",
)
def taskloop(log_level: str) -> None:
    """Drive an external worker command through a task backlog, one task per iteration."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskloop.command("run")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    required=True,
    help="Hard limit on worker invocations for this run.",
)
@_BACKLOG_OPTION
@_PROGRESS_OPTION
@click.option(
    "--worker-command",
    default=None,
    help=(
        "Worker command template. Supports {task_id}, {task}, {prompt} and {prompt_file}; "
        "must include one of {task}, {prompt}, {prompt_file}. "
        "If omitted, TASKLOOP_WORKER_COMMAND is used."
    ),
)
@click.option(
    "--completion-marker",
    default=None,
    help="Literal string in worker output that signals overall completion.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Per-iteration wall-clock limit; 0 disables it. Defaults to 1800.",
)
@click.option(
    "--max-consecutive-failures",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many failed attempts of the same task in a row. Defaults to 3.",
)
@click.option(
    "--retry-policy",
    type=click.Choice([policy.value for policy in RetryPolicy], case_sensitive=False),
    default=None,
    help="auto: retry failed tasks until the failure limit; manual: leave them failed.",
)
@click.option(
    "--attribution",
    type=click.Choice([mode.value for mode in Attribution], case_sensitive=False),
    default=None,
    help=(
        "When an iteration counts as the task passing: exit-code (exit 0), "
        "marker (exit 0 + completion marker) or task-id (exit 0 + task-done token)."
    ),
)
@click.option(
    "--require-all-passed/--no-require-all-passed",
    default=None,
    help="Only honour the completion marker once every task has passed. Default: on.",
)
@click.option(
    "--context-entries",
    type=click.IntRange(min=0),
    default=None,
    help="How many recent progress entries to pass to the worker. Defaults to 5.",
)
@click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Keep each iteration's stdout/stderr in this directory.",
)
@click.pass_context
def loop_run(  # noqa: PLR0913
    ctx: click.Context,
    max_iterations: int,
    backlog_path: Path | None,
    progress_path: Path | None,
    worker_command: str | None,
    completion_marker: str | None,
    timeout_seconds: float | None,
    max_consecutive_failures: int | None,
    retry_policy: str | None,
    attribution: str | None,
    require_all_passed: bool | None,
    context_entries: int | None,
    output_dir: Path | None,
) -> None:
    """Run iterations until the backlog is done, a stop condition fires, or the budget runs out.

    Exit codes: 0 success, 1 failure or budget exhausted, 2 invalid configuration.
    """

    command = LoopRunCommand(
        max_iterations=max_iterations,
        backlog_path=backlog_path,
        progress_path=progress_path,
        worker_command=worker_command,
        completion_marker=completion_marker,
        timeout_seconds=timeout_seconds,
        max_consecutive_failures=max_consecutive_failures,
        retry_policy=retry_policy.lower() if retry_policy else None,
        attribution=attribution.lower() if attribution else None,
        require_all_passed=require_all_passed,
        context_entries=context_entries,
        output_dir=output_dir,
    )
    try:
        outcome = LOOP_CONTROLLER.run(command, emit=click.echo)
    except ConfigError as error:
        raise click.UsageError(str(error)) from error
    except PersistenceError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(outcome.lines)
    ctx.exit(outcome.exit_code)


@taskloop.command("status")
@_BACKLOG_OPTION
@_PROGRESS_OPTION
@click.option(
    "--recent",
    type=click.IntRange(min=0, max=100),
    default=5,
    show_default=True,
    help="How many recent progress entries to show.",
)
def loop_status(backlog_path: Path | None, progress_path: Path | None, recent: int) -> None:
    """Show task counts, the next pending task and recent progress."""

    _emit_lines(
        _call(
            LOOP_CONTROLLER.status,
            LoopStatusCommand(
                backlog_path=backlog_path,
                progress_path=progress_path,
                recent=recent,
            ),
        ),
    )


@taskloop.command("retry")
@_BACKLOG_OPTION
@click.option(
    "--task-id",
    "task_ids",
    multiple=True,
    help="Failed task to reset. Can be repeated; defaults to every failed task.",
)
def loop_retry(backlog_path: Path | None, task_ids: tuple[str, ...]) -> None:
    """Manually reset failed tasks to pending."""

    _emit_lines(
        _call(
            LOOP_CONTROLLER.retry,
            LoopRetryCommand(backlog_path=backlog_path, task_ids=task_ids),
        ),
    )


@taskloop.command("log")
@_PROGRESS_OPTION
@click.option(
    "--tail",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many entries to print.",
)
def loop_log(progress_path: Path | None, tail: int) -> None:
    """Print the most recent progress log entries."""

    _emit_lines(_call(LOOP_CONTROLLER.log, LoopLogCommand(progress_path=progress_path, tail=tail)))


def _call(handler, command) -> list[str]:
    try:
        return handler(command)
    except ConfigError as error:
        raise click.UsageError(str(error)) from error
    except PersistenceError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
