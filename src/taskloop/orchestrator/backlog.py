"""JSON-file backed backlog of task items."""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from taskloop.orchestrator.errors import (
    BacklogNotFoundError,
    CorruptBacklogError,
    PersistenceError,
    UnknownTaskIdError,
)
from taskloop.orchestrator.models import TaskItem, TaskStatus
from taskloop.orchestrator.storage import write_text_atomic

logger = logging.getLogger(__name__)

_CORE_KEYS = ("id", "description", "priority", "status")


class BacklogStore:
    """Ordered task items persisted as a JSON array.

    The store never caches: each call re-reads the file so that a fresh
    process always starts from what is on disk.  Writes go through
    ``write_text_atomic``, so a crash mid-update leaves the previous backlog
    intact.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[TaskItem]:
        """Parse the backlog file into task items, in file order."""

        try:
            raw_text = self.path.read_text("utf-8")
        except FileNotFoundError as error:
            raise BacklogNotFoundError(f"Backlog not found: {self.path}") from error
        except OSError as error:
            raise PersistenceError(f"Cannot read backlog {self.path}: {error}") from error
        return parse_backlog(raw_text, source=str(self.path))

    def save(self, tasks: list[TaskItem]) -> None:
        """Durably replace the backlog with ``tasks``."""

        try:
            write_text_atomic(self.path, serialize_backlog(tasks))
        except OSError as error:
            raise PersistenceError(f"Cannot write backlog {self.path}: {error}") from error

    def next_pending(self) -> TaskItem | None:
        """Return the highest-priority pending item, or None when nothing is pending."""

        return select_next_pending(self.load())

    def update_status(self, task_id: str, status: TaskStatus) -> TaskItem:
        """Set one item's status and persist the whole backlog before returning."""

        tasks = self.load()
        for task in tasks:
            if task.id == task_id:
                previous = task.status
                task.status = status
                self.save(tasks)
                logger.debug("Task %s: %s -> %s", task_id, previous.value, status.value)
                return task
        raise UnknownTaskIdError(task_id)

    def reset_failed(self, task_ids: Iterable[str] | None = None) -> list[TaskItem]:
        """Move failed items back to pending. Returns the items that changed."""

        tasks = self.load()
        wanted = None if task_ids is None else set(task_ids)
        if wanted is not None:
            unknown = sorted(wanted - {task.id for task in tasks})
            if unknown:
                raise UnknownTaskIdError(unknown[0])

        changed: list[TaskItem] = []
        for task in tasks:
            if task.status != TaskStatus.FAILED:
                continue
            if wanted is not None and task.id not in wanted:
                continue
            task.status = TaskStatus.PENDING
            changed.append(task)

        if changed:
            self.save(tasks)
            logger.info("Reset %d failed task(s) to pending", len(changed))
        return changed

    def summary(self) -> dict[TaskStatus, int]:
        counts = Counter(task.status for task in self.load())
        return {status: counts.get(status, 0) for status in TaskStatus}


def select_next_pending(tasks: list[TaskItem]) -> TaskItem | None:
    """Lowest ``priority`` value wins; file order breaks ties."""

    best: TaskItem | None = None
    for task in tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if best is None or task.priority < best.priority:
            best = task
    return best


def serialize_backlog(tasks: list[TaskItem]) -> str:
    """Render tasks with a stable key order so unchanged backlogs stay byte-identical."""

    records: list[dict[str, Any]] = []
    for task in tasks:
        record: dict[str, Any] = {
            "id": task.id,
            "description": task.description,
            "priority": task.priority,
            "status": task.status.value,
        }
        record.update(task.extra)
        records.append(record)
    return json.dumps(records, ensure_ascii=False, indent=2) + "\n"


def parse_backlog(raw_text: str, *, source: str = "<backlog>") -> list[TaskItem]:
    """Validate and decode a backlog document."""

    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as error:
        raise CorruptBacklogError(f"{source}: invalid JSON: {error}") from error
    if not isinstance(payload, list):
        raise CorruptBacklogError(f"{source}: expected a JSON array of task objects")

    tasks: list[TaskItem] = []
    seen: set[str] = set()
    for index, raw in enumerate(payload):
        task = _parse_task(raw, index=index, source=source)
        if task.id in seen:
            raise CorruptBacklogError(f"{source}: duplicate task id {task.id!r}")
        seen.add(task.id)
        tasks.append(task)
    return tasks


def _parse_task(raw: object, *, index: int, source: str) -> TaskItem:
    where = f"{source}[{index}]"
    if not isinstance(raw, dict):
        raise CorruptBacklogError(f"{where}: expected an object")

    task_id = raw.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise CorruptBacklogError(f"{where}: id must be a non-empty string")

    description = raw.get("description")
    if not isinstance(description, str):
        raise CorruptBacklogError(f"{where}: description must be a string")

    priority = raw.get("priority", index)
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise CorruptBacklogError(f"{where}: priority must be an integer")

    raw_status = raw.get("status", TaskStatus.PENDING.value)
    try:
        status = TaskStatus(raw_status)
    except ValueError as error:
        raise CorruptBacklogError(f"{where}: unknown status {raw_status!r}") from error

    extra = {key: value for key, value in raw.items() if key not in _CORE_KEYS}
    return TaskItem(
        id=task_id,
        description=description,
        priority=priority,
        status=status,
        extra=extra,
    )
