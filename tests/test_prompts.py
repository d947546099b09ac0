from __future__ import annotations

from datetime import UTC, datetime

import allure

from taskloop.orchestrator.models import ProgressEntry, ProgressOutcome, TaskItem
from taskloop.orchestrator.prompts import render_context, render_prompt, render_task_done_token

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Worker Prompt"),
]


def test_render_prompt_without_context() -> None:
    prompt = render_prompt(
        task=TaskItem(id="T-1", description="  Add login form\n", priority=3),
        context=[],
        completion_marker="<promise>COMPLETE</promise>",
    )

    assert prompt.startswith("Task T-1 (priority 3):\nAdd login form\n")
    assert "Recent progress: none yet." in prompt
    assert "print exactly: <promise>COMPLETE</promise>" in prompt
    assert "When the task is done" not in prompt


def test_render_prompt_with_context_and_task_done_token() -> None:
    entry = ProgressEntry(
        iteration_number=4,
        timestamp=datetime(2026, 3, 1, 9, 30, tzinfo=UTC),
        task_id="T-0",
        outcome=ProgressOutcome.FAILED,
        notes="exit code 2: tests failed",
    )

    prompt = render_prompt(
        task=TaskItem(id="T-1", description="Add login form", priority=1),
        context=[entry],
        completion_marker="DONE",
        task_done_token=render_task_done_token("<task-done>{task_id}</task-done>", "T-1"),
    )

    assert "[4] 2026-03-01 09:30:00 task=T-0 outcome=failed: exit code 2: tests failed" in prompt
    assert "When the task is done, print exactly: <task-done>T-1</task-done>" in prompt


def test_render_context_omits_empty_notes() -> None:
    entry = ProgressEntry(
        iteration_number=1,
        timestamp=datetime(2026, 3, 1, tzinfo=UTC),
        task_id="T-1",
        outcome=ProgressOutcome.SUCCEEDED,
        notes="",
    )

    assert render_context([entry]) == "[1] 2026-03-01 00:00:00 task=T-1 outcome=succeeded"
