"""Render the text handed to the worker for one iteration."""

from __future__ import annotations

from collections.abc import Sequence

from taskloop.orchestrator.models import ProgressEntry, TaskItem

DEFAULT_TASK_DONE_TEMPLATE = "<task-done>{task_id}</task-done>"


def render_task_done_token(template: str, task_id: str) -> str:
    return template.replace("{task_id}", task_id)


def render_context(entries: Sequence[ProgressEntry]) -> str:
    """Progress log tail as plain text lines, oldest first."""

    lines: list[str] = []
    for entry in entries:
        header = (
            f"[{entry.iteration_number}] {entry.timestamp:%Y-%m-%d %H:%M:%S} "
            f"task={entry.task_id} outcome={entry.outcome.value}"
        )
        notes = entry.notes.strip()
        lines.append(f"{header}: {notes}" if notes else header)
    return "\n".join(lines)


def render_prompt(
    *,
    task: TaskItem,
    context: Sequence[ProgressEntry],
    completion_marker: str,
    task_done_token: str | None = None,
) -> str:
    """Build the full prompt: task, recent progress and the stop protocol."""

    parts = [
        f"Task {task.id} (priority {task.priority}):",
        task.description.strip(),
        "",
    ]
    if context:
        parts.extend(["Recent progress:", render_context(context), ""])
    else:
        parts.extend(["Recent progress: none yet.", ""])

    parts.append("Work on this one task only.")
    if task_done_token is not None:
        parts.append(f"When the task is done, print exactly: {task_done_token}")
    parts.append(
        f"If every task in the backlog is complete, print exactly: {completion_marker}",
    )
    return "\n".join(parts) + "\n"
