"""Runtime configuration for the iteration loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from taskloop.orchestrator.backend.cli_worker import TASK_PLACEHOLDERS, build_run_args
from taskloop.orchestrator.detector import DEFAULT_COMPLETION_MARKER, StopPolicy
from taskloop.orchestrator.errors import ConfigError, WorkerLaunchError
from taskloop.orchestrator.models import Attribution, RetryPolicy
from taskloop.orchestrator.prompts import DEFAULT_TASK_DONE_TEMPLATE

DEFAULT_BACKLOG_PATH = Path("plans/prd.json")
DEFAULT_PROGRESS_PATH = Path("progress.txt")
DEFAULT_TIMEOUT_SECONDS = 1800.0
_TEMPLATE_FIELDS = ("task_id", "task", "prompt", "prompt_file")

_E = TypeVar("_E", bound=Enum)


@dataclass(slots=True)
class WorkerSettings:
    """How the external worker command is run."""

    command_template: str | None = None
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS
    graceful_shutdown_seconds: float = 10.0
    output_dir: Path | None = None


@dataclass(slots=True)
class StopSettings:
    """Stop-condition thresholds."""

    completion_marker: str = DEFAULT_COMPLETION_MARKER
    require_all_passed: bool = True
    max_consecutive_failures: int = 3

    def to_policy(self) -> StopPolicy:
        return StopPolicy(
            completion_marker=self.completion_marker,
            require_all_passed=self.require_all_passed,
            max_consecutive_failures=self.max_consecutive_failures,
        )


@dataclass(slots=True)
class LoopSettings:
    """Selection and attribution policy."""

    retry_policy: RetryPolicy = RetryPolicy.AUTO
    attribution: Attribution = Attribution.EXIT_CODE
    task_done_template: str = DEFAULT_TASK_DONE_TEMPLATE
    context_entries: int = 5


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    backlog_path: Path = DEFAULT_BACKLOG_PATH
    progress_path: Path = DEFAULT_PROGRESS_PATH
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    stop: StopSettings = field(default_factory=StopSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``TASKLOOP_*`` environment variables."""

        output_dir = os.getenv("TASKLOOP_OUTPUT_DIR", "").strip()
        return cls(
            backlog_path=Path(os.getenv("TASKLOOP_BACKLOG_PATH", str(DEFAULT_BACKLOG_PATH))),
            progress_path=Path(os.getenv("TASKLOOP_PROGRESS_PATH", str(DEFAULT_PROGRESS_PATH))),
            worker=WorkerSettings(
                command_template=os.getenv("TASKLOOP_WORKER_COMMAND") or None,
                timeout_seconds=timeout_from_seconds(
                    _env_float("TASKLOOP_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
                ),
                graceful_shutdown_seconds=_env_float("TASKLOOP_GRACEFUL_SHUTDOWN_SECONDS", 10.0),
                output_dir=Path(output_dir) if output_dir else None,
            ),
            stop=StopSettings(
                completion_marker=os.getenv(
                    "TASKLOOP_COMPLETION_MARKER",
                    DEFAULT_COMPLETION_MARKER,
                ),
                require_all_passed=_env_bool("TASKLOOP_REQUIRE_ALL_PASSED", default=True),
                max_consecutive_failures=_env_int("TASKLOOP_MAX_CONSECUTIVE_FAILURES", 3),
            ),
            loop=LoopSettings(
                retry_policy=_env_choice("TASKLOOP_RETRY_POLICY", RetryPolicy, RetryPolicy.AUTO),
                attribution=_env_choice(
                    "TASKLOOP_ATTRIBUTION",
                    Attribution,
                    Attribution.EXIT_CODE,
                ),
                task_done_template=os.getenv(
                    "TASKLOOP_TASK_DONE_TEMPLATE",
                    DEFAULT_TASK_DONE_TEMPLATE,
                ),
                context_entries=_env_int("TASKLOOP_CONTEXT_ENTRIES", 5),
            ),
        )

    def validate(self) -> None:
        """Raise ``ConfigError`` if the loop cannot run with these settings."""

        template = (self.worker.command_template or "").strip()
        if not template:
            raise ConfigError(
                "A worker command is required. "
                "Set TASKLOOP_WORKER_COMMAND or pass --worker-command.",
            )
        if not any(placeholder in template for placeholder in TASK_PLACEHOLDERS):
            raise ConfigError(
                "Worker command must include one of " + ", ".join(TASK_PLACEHOLDERS) + ".",
            )
        try:
            build_run_args(command_template=template, values=dict.fromkeys(_TEMPLATE_FIELDS, "x"))
        except WorkerLaunchError as error:
            raise ConfigError(f"Invalid worker command: {error}") from error
        if self.worker.timeout_seconds is not None and self.worker.timeout_seconds <= 0:
            raise ConfigError("TASKLOOP_TIMEOUT_SECONDS must be > 0 (or 0 to disable).")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ConfigError("TASKLOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.stop.completion_marker:
            raise ConfigError("Completion marker must be a non-empty string.")
        if self.stop.max_consecutive_failures < 1:
            raise ConfigError("TASKLOOP_MAX_CONSECUTIVE_FAILURES must be >= 1.")
        if self.loop.context_entries < 0:
            raise ConfigError("TASKLOOP_CONTEXT_ENTRIES must be >= 0.")
        if (
            self.loop.attribution == Attribution.TASK_ID
            and "{task_id}" not in self.loop.task_done_template
        ):
            raise ConfigError("TASKLOOP_TASK_DONE_TEMPLATE must include {task_id}.")
        if self.backlog_path.resolve() == self.progress_path.resolve():
            raise ConfigError("Backlog and progress log must be different files.")


def timeout_from_seconds(value: float | None) -> float | None:
    """``0`` means no timeout."""

    if value is None or value == 0:
        return None
    return value


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigError(f"Invalid number for {name}: {value!r}") from error


def _env_choice(name: str, enum_type: type[_E], default: _E) -> _E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigError(
            f"Invalid value for {name}: {value!r}. Expected one of: {choices}",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
