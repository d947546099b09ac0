from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskloop.config import Settings, timeout_from_seconds
from taskloop.orchestrator.controllers import LoopCliController, LoopRunCommand
from taskloop.orchestrator.errors import ConfigError
from taskloop.orchestrator.models import Attribution, RetryPolicy

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Configuration"),
]


def test_settings_defaults() -> None:
    settings = Settings.from_env()

    assert settings.backlog_path == Path("plans/prd.json")
    assert settings.progress_path == Path("progress.txt")
    assert settings.worker.command_template is None
    assert settings.worker.timeout_seconds == 1800.0
    assert settings.stop.completion_marker == "<promise>COMPLETE</promise>"
    assert settings.stop.require_all_passed is True
    assert settings.stop.max_consecutive_failures == 3
    assert settings.loop.retry_policy == RetryPolicy.AUTO
    assert settings.loop.attribution == Attribution.EXIT_CODE
    assert settings.loop.context_entries == 5


def test_settings_from_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKLOOP_BACKLOG_PATH", str(tmp_path / "backlog.json"))
    monkeypatch.setenv("TASKLOOP_PROGRESS_PATH", str(tmp_path / "progress.jsonl"))
    monkeypatch.setenv("TASKLOOP_WORKER_COMMAND", "agent -p {prompt}")
    monkeypatch.setenv("TASKLOOP_COMPLETION_MARKER", "ALL DONE")
    monkeypatch.setenv("TASKLOOP_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("TASKLOOP_MAX_CONSECUTIVE_FAILURES", "5")
    monkeypatch.setenv("TASKLOOP_REQUIRE_ALL_PASSED", "no")
    monkeypatch.setenv("TASKLOOP_RETRY_POLICY", "MANUAL")
    monkeypatch.setenv("TASKLOOP_ATTRIBUTION", "task-id")
    monkeypatch.setenv("TASKLOOP_CONTEXT_ENTRIES", "2")
    monkeypatch.setenv("TASKLOOP_OUTPUT_DIR", str(tmp_path / "runs"))

    settings = Settings.from_env()
    settings.validate()

    assert settings.backlog_path == tmp_path / "backlog.json"
    assert settings.worker.command_template == "agent -p {prompt}"
    assert settings.worker.timeout_seconds is None
    assert settings.worker.output_dir == tmp_path / "runs"
    assert settings.stop.to_policy().completion_marker == "ALL DONE"
    assert settings.stop.max_consecutive_failures == 5
    assert settings.stop.require_all_passed is False
    assert settings.loop.retry_policy == RetryPolicy.MANUAL
    assert settings.loop.attribution == Attribution.TASK_ID
    assert settings.loop.context_entries == 2


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TASKLOOP_MAX_CONSECUTIVE_FAILURES", "three"),
        ("TASKLOOP_TIMEOUT_SECONDS", "soon"),
        ("TASKLOOP_REQUIRE_ALL_PASSED", "maybe"),
        ("TASKLOOP_RETRY_POLICY", "sometimes"),
        ("TASKLOOP_ATTRIBUTION", "vibes"),
    ],
)
def test_invalid_env_values_raise_config_error(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigError, match=name):
        Settings.from_env()


@pytest.mark.parametrize(
    ("command", "match"),
    [
        (None, "worker command is required"),
        ("agent --id {task_id}", "must include one of"),
        ("agent {task} {tsak}", "Unsupported command template placeholder"),
        ("agent {task} {}", "Unsupported command template placeholder"),
        ("agent {task} {", "Malformed command template"),
        ("agent '{task}", "Malformed command template"),
    ],
)
def test_validate_rejects_unusable_worker_command(command: str | None, match: str) -> None:
    settings = Settings.from_env()
    settings.worker.command_template = command

    with pytest.raises(ConfigError, match=match):
        settings.validate()


def test_validate_rejects_shared_state_file() -> None:
    settings = Settings.from_env()
    settings.worker.command_template = "agent {task}"
    settings.progress_path = settings.backlog_path

    with pytest.raises(ConfigError, match="different files"):
        settings.validate()


def test_validate_requires_task_id_in_task_done_template() -> None:
    settings = Settings.from_env()
    settings.worker.command_template = "agent {task}"
    settings.loop.attribution = Attribution.TASK_ID
    settings.loop.task_done_template = "<done/>"

    with pytest.raises(ConfigError, match="TASK_DONE_TEMPLATE"):
        settings.validate()


def test_validate_rejects_non_positive_failure_limit() -> None:
    settings = Settings.from_env()
    settings.worker.command_template = "agent {task}"
    settings.stop.max_consecutive_failures = 0

    with pytest.raises(ConfigError, match="MAX_CONSECUTIVE_FAILURES"):
        settings.validate()


def test_zero_timeout_disables_the_limit() -> None:
    assert timeout_from_seconds(0) is None
    assert timeout_from_seconds(None) is None
    assert timeout_from_seconds(12.5) == 12.5


def test_cli_overrides_take_precedence_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKLOOP_WORKER_COMMAND", "env-agent {task}")
    monkeypatch.setenv("TASKLOOP_MAX_CONSECUTIVE_FAILURES", "7")

    settings = LoopCliController().resolve_settings(
        LoopRunCommand(
            max_iterations=3,
            backlog_path=tmp_path / "prd.json",
            worker_command="cli-agent {prompt_file}",
            timeout_seconds=0,
            retry_policy="manual",
        ),
    )

    assert settings.backlog_path == tmp_path / "prd.json"
    assert settings.worker.command_template == "cli-agent {prompt_file}"
    assert settings.worker.timeout_seconds is None
    assert settings.stop.max_consecutive_failures == 7
    assert settings.loop.retry_policy == RetryPolicy.MANUAL
