"""Subprocess-based worker runner for arbitrary CLI commands."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from contextlib import suppress
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import IO

from taskloop.orchestrator.backend.base import WorkerRunRequest
from taskloop.orchestrator.errors import WorkerLaunchError
from taskloop.orchestrator.models import IterationRecord
from taskloop.orchestrator.prompts import render_prompt

logger = logging.getLogger(__name__)

TASK_PLACEHOLDERS = ("{task}", "{prompt}", "{prompt_file}")
TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130
_POLL_INTERVAL_SECONDS = 0.1
_KILL_GRACE_SECONDS = 2.0


class CliWorker:
    """Render the command template, run it, and capture everything it prints."""

    def invoke(self, request: WorkerRunRequest) -> IterationRecord:
        prompt = render_prompt(
            task=request.task,
            context=request.context,
            completion_marker=request.completion_marker,
            task_done_token=request.task_done_token,
        )

        with TemporaryDirectory(prefix="taskloop-") as temp_dir:
            scratch = Path(temp_dir)
            prompt_file = scratch / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")

            run_args, command_head = build_run_args(
                command_template=request.command_template,
                values={
                    "task_id": request.task.id,
                    "task": request.task.description,
                    "prompt": prompt,
                    "prompt_file": str(prompt_file),
                },
            )

            stdout_path = request.stdout_path or scratch / "stdout.txt"
            stderr_path = request.stderr_path or scratch / "stderr.txt"
            stdout_path.parent.mkdir(parents=True, exist_ok=True)
            stderr_path.parent.mkdir(parents=True, exist_ok=True)

            env = os.environ.copy()
            env["TASKLOOP_TASK_ID"] = request.task.id
            env["TASKLOOP_ITERATION"] = str(request.iteration_number)
            env["TASKLOOP_COMPLETION_MARKER"] = request.completion_marker

            logger.debug("Starting worker for task %s: %s", request.task.id, command_head)
            started = time.monotonic()
            try:
                with (
                    prompt_file.open("rb") as stdin_handle,
                    stdout_path.open("wb") as stdout_handle,
                    stderr_path.open("wb") as stderr_handle,
                ):
                    exit_code, timed_out, interrupted = _run_subprocess(
                        run_args=run_args,
                        env=env,
                        stdin_handle=stdin_handle,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        timeout_seconds=request.timeout_seconds,
                        stop_requested=request.stop_requested,
                        graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    )
            except FileNotFoundError as error:
                raise WorkerLaunchError(f"Worker command not found: {command_head}") from error
            except OSError as error:
                raise WorkerLaunchError(f"Worker failed to start: {error}") from error
            duration = time.monotonic() - started

            record = IterationRecord(
                task_id=request.task.id,
                exit_code=exit_code,
                stdout=stdout_path.read_text("utf-8", errors="replace"),
                stderr=stderr_path.read_text("utf-8", errors="replace"),
                duration_seconds=duration,
                timed_out=timed_out,
                interrupted=interrupted,
            )

        if timed_out:
            logger.warning(
                "Worker for task %s timed out after %.1fs",
                request.task.id,
                duration,
            )
        return record


def build_run_args(
    *,
    command_template: str,
    values: dict[str, str],
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    """Substitute quoted placeholder values and split the command.

    Returns ``(run_args, command_head)``; ``run_args`` is a command line string
    on Windows and an argv list elsewhere.
    """

    stripped = command_template.strip()
    if not stripped:
        raise WorkerLaunchError("Worker command template is empty.")
    if not any(placeholder in stripped for placeholder in TASK_PLACEHOLDERS):
        raise WorkerLaunchError(
            "Worker command template must include one of " + ", ".join(TASK_PLACEHOLDERS) + ".",
        )

    current_os_name = os_name or os.name
    quote = _quote_windows if current_os_name == "nt" else shlex.quote
    try:
        rendered = stripped.format(**{key: quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise WorkerLaunchError(f"Unsupported command template placeholder: {error}") from error
    except ValueError as error:
        raise WorkerLaunchError(f"Malformed command template: {error}") from error

    if current_os_name == "nt":
        rendered = rendered.strip()
        if not rendered:
            raise WorkerLaunchError("Worker command template rendered empty command.")
        return rendered, rendered.split(maxsplit=1)[0]

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise WorkerLaunchError(f"Malformed command template: {error}") from error
    if not argv:
        raise WorkerLaunchError("Worker command template rendered empty command.")
    return argv, argv[0]


def _quote_windows(value: str) -> str:
    return subprocess.list2cmdline([value])


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: str | list[str],
    env: dict[str, str],
    stdin_handle: IO[bytes],
    stdout_handle: IO[bytes],
    stderr_handle: IO[bytes],
    timeout_seconds: float | None,
    stop_requested,
    graceful_shutdown_seconds: float,
) -> tuple[int, bool, bool]:
    """Wait for the worker; returns ``(exit_code, timed_out, interrupted)``."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdin=stdin_handle,
        stdout=stdout_handle,
        stderr=stderr_handle,
        **_new_process_group_kwargs(),
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, False

        now = time.monotonic()
        if timeout_seconds is not None and now - start_monotonic >= timeout_seconds:
            terminate_process_tree(process)
            return TIMEOUT_EXIT_CODE, True, False

        if stop_requested is not None and stop_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0.0, graceful_shutdown_seconds)
                logger.info(
                    "Stop requested; giving worker %.0fs to finish",
                    graceful_shutdown_seconds,
                )
            if now >= shutdown_deadline:
                terminate_process_tree(process)
                return INTERRUPTED_EXIT_CODE, False, True

        time.sleep(_POLL_INTERVAL_SECONDS)


def _new_process_group_kwargs() -> dict[str, object]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def terminate_process_tree(process: subprocess.Popen[bytes]) -> None:
    """Terminate the worker and everything it spawned in its process group."""

    if os.name == "nt":
        _terminate_windows(process)
        return

    try:
        os.killpg(process.pid, signal.SIGTERM)
    except ProcessLookupError:
        process.wait()
        return
    try:
        process.wait(timeout=_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.debug("Worker %d ignored SIGTERM; killing its process group", process.pid)
    # The leader may be gone while descendants in its group are still alive.
    with suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)
    process.wait()


def _terminate_windows(process: subprocess.Popen[bytes]) -> None:
    try:
        subprocess.run(  # noqa: S603
            ["taskkill", "/T", "/F", "/PID", str(process.pid)],  # noqa: S607
            check=False,
            capture_output=True,
        )
    except OSError:
        process.kill()
    process.wait()
