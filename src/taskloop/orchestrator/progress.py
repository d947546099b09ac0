"""Append-only JSON Lines progress log."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

from taskloop.orchestrator.errors import (
    CorruptProgressLogError,
    PersistenceError,
    ProgressLogWriteError,
)
from taskloop.orchestrator.models import ProgressEntry, ProgressOutcome

logger = logging.getLogger(__name__)


class ProgressLog:
    """One JSON object per line, each line fsync'd before ``append`` returns.

    A line is only a complete entry once its trailing newline is on disk.  A
    crash during ``append`` can therefore leave at most one torn line at the
    end of the file.  Readers skip it; only the writer (``recover``, called by
    ``append`` and at the start of a loop run) truncates it away.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, entry: ProgressEntry) -> None:
        line = json.dumps(entry_to_record(entry), ensure_ascii=False) + "\n"
        self.recover()
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as error:
            raise ProgressLogWriteError(
                f"Cannot append to progress log {self.path}: {error}",
            ) from error

    def entries(self) -> list[ProgressEntry]:
        """Complete entries on disk. Never modifies the file."""

        data = self._read_bytes()
        entries, _ = self._parse(data)
        return entries

    def tail(self, n: int) -> list[ProgressEntry]:
        """Most recent ``n`` entries, oldest first."""

        if n <= 0:
            return []
        return self.entries()[-n:]

    def next_iteration_number(self) -> int:
        entries = self.entries()
        if not entries:
            return 1
        return entries[-1].iteration_number + 1

    def consecutive_failures(self, task_id: str) -> int:
        """Attempts of ``task_id`` since its last success that did not succeed."""

        count = 0
        for entry in reversed(self.entries()):
            if entry.task_id != task_id:
                continue
            if entry.outcome == ProgressOutcome.SUCCEEDED:
                break
            count += 1
        return count

    def recover(self) -> list[ProgressEntry]:
        """Parse the log, truncating a torn trailing write if one is found.

        Only the process that appends to the log may call this.
        """

        data = self._read_bytes()
        entries, good_end = self._parse(data)
        if good_end < len(data):
            self._truncate(good_end, dropped=len(data) - good_end)
        return entries

    def _read_bytes(self) -> bytes:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return b""
        except OSError as error:
            raise PersistenceError(f"Cannot read progress log {self.path}: {error}") from error

    def _parse(self, data: bytes) -> tuple[list[ProgressEntry], int]:
        """Return the complete entries and the byte offset where they end."""

        entries: list[ProgressEntry] = []
        offset = 0
        good_end = 0
        lines = data.split(b"\n")
        # The element after the last newline is empty unless the final write was torn.
        for index, raw_line in enumerate(lines):
            is_last = index == len(lines) - 1
            line_end = offset + len(raw_line) + (0 if is_last else 1)
            if not raw_line.strip():
                offset = line_end
                if not is_last:
                    good_end = line_end
                continue

            entry = None if is_last else _try_parse(raw_line)
            if entry is None:
                if is_last or (index == len(lines) - 2 and not lines[-1].strip()):
                    return entries, good_end
                raise CorruptProgressLogError(
                    f"{self.path}: malformed entry on line {index + 1}",
                )
            entries.append(entry)
            offset = line_end
            good_end = line_end
        return entries, good_end

    def _truncate(self, size: int, *, dropped: int) -> None:
        logger.warning(
            "Progress log %s ends with a torn entry; truncating %d byte(s)",
            self.path,
            dropped,
        )
        try:
            os.truncate(self.path, size)
        except OSError as error:
            raise PersistenceError(
                f"Cannot truncate torn entry from {self.path}: {error}",
            ) from error


def entry_to_record(entry: ProgressEntry) -> dict[str, Any]:
    return {
        "iteration": entry.iteration_number,
        "timestamp": entry.timestamp.isoformat(),
        "task_id": entry.task_id,
        "outcome": entry.outcome.value,
        "notes": entry.notes,
        "exit_code": entry.exit_code,
        "duration_seconds": entry.duration_seconds,
    }


def entry_from_record(record: dict[str, Any]) -> ProgressEntry:
    iteration = record["iteration"]
    task_id = record["task_id"]
    if not isinstance(iteration, int) or not isinstance(task_id, str):
        raise TypeError("iteration must be int and task_id must be str")
    exit_code = record.get("exit_code")
    duration = record.get("duration_seconds")
    return ProgressEntry(
        iteration_number=iteration,
        timestamp=datetime.fromisoformat(record["timestamp"]),
        task_id=task_id,
        outcome=ProgressOutcome(record["outcome"]),
        notes=str(record.get("notes", "")),
        exit_code=exit_code if isinstance(exit_code, int) else None,
        duration_seconds=float(duration) if isinstance(duration, int | float) else None,
    )


def _try_parse(raw_line: bytes) -> ProgressEntry | None:
    try:
        record = json.loads(raw_line.decode("utf-8"))
        if not isinstance(record, dict):
            return None
        return entry_from_record(record)
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None
