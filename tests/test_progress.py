from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from taskloop.orchestrator.errors import CorruptProgressLogError, PersistenceError
from taskloop.orchestrator.models import ProgressEntry, ProgressOutcome
from taskloop.orchestrator.progress import ProgressLog, entry_to_record

pytestmark = [
    allure.epic("Task Loop"),
    allure.feature("Progress Log"),
]


def _entry(
    iteration: int,
    task_id: str,
    outcome: ProgressOutcome = ProgressOutcome.SUCCEEDED,
    notes: str = "",
) -> ProgressEntry:
    return ProgressEntry(
        iteration_number=iteration,
        timestamp=datetime(2026, 3, 1, 12, 0, iteration, tzinfo=UTC),
        task_id=task_id,
        outcome=outcome,
        notes=notes,
        exit_code=0 if outcome == ProgressOutcome.SUCCEEDED else 1,
        duration_seconds=1.5,
    )


def _line(entry: ProgressEntry) -> str:
    return json.dumps(entry_to_record(entry)) + "\n"


def test_append_then_read_back_in_order(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "logs" / "progress.txt")

    log.append(_entry(1, "T-1", notes="created login form"))
    log.append(_entry(2, "T-2", ProgressOutcome.FAILED, notes="exit code 1: boom"))

    entries = log.entries()
    assert [entry.iteration_number for entry in entries] == [1, 2]
    assert entries[0].notes == "created login form"
    assert entries[1].outcome == ProgressOutcome.FAILED
    assert entries[1].timestamp == datetime(2026, 3, 1, 12, 0, 2, tzinfo=UTC)
    assert log.path.read_text("utf-8").count("\n") == 2


def test_missing_log_reads_as_empty(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.txt")

    assert log.entries() == []
    assert log.tail(5) == []
    assert log.next_iteration_number() == 1


def test_tail_returns_most_recent_entries_oldest_first(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.txt")
    for iteration in range(1, 6):
        log.append(_entry(iteration, f"T-{iteration}"))

    assert [entry.iteration_number for entry in log.tail(2)] == [4, 5]
    assert len(log.tail(50)) == 5
    assert log.tail(0) == []
    assert log.next_iteration_number() == 6


def test_torn_trailing_write_is_skipped_by_readers(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    intact = _line(_entry(1, "T-1")) + _line(_entry(2, "T-2"))
    path.write_text(intact + '{"iteration": 3, "task_', "utf-8")
    before = path.read_bytes()
    log = ProgressLog(path)

    assert [entry.iteration_number for entry in log.entries()] == [1, 2]
    assert [entry.iteration_number for entry in log.tail(1)] == [2]
    assert log.next_iteration_number() == 3
    assert log.consecutive_failures("T-1") == 0
    assert path.read_bytes() == before


def test_recover_truncates_torn_trailing_write(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    intact = _line(_entry(1, "T-1")) + _line(_entry(2, "T-2"))
    path.write_text(intact + '{"iteration": 3, "task_', "utf-8")
    log = ProgressLog(path)

    assert [entry.iteration_number for entry in log.recover()] == [1, 2]
    assert path.read_text("utf-8") == intact


def test_append_after_torn_write_starts_on_a_clean_line(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    intact = _line(_entry(1, "T-1"))
    path.write_text(intact + '{"iteration": 2, "task_', "utf-8")
    log = ProgressLog(path)

    log.append(_entry(2, "T-2"))

    assert [entry.iteration_number for entry in log.entries()] == [1, 2]
    assert path.read_text("utf-8") == intact + _line(_entry(2, "T-2"))


def test_unparsable_final_line_is_treated_as_torn(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    intact = _line(_entry(1, "T-1"))
    path.write_text(intact + "not json\n", "utf-8")
    log = ProgressLog(path)

    assert len(log.entries()) == 1
    assert path.read_text("utf-8") == intact + "not json\n"

    log.recover()
    assert path.read_text("utf-8") == intact


def test_malformed_entry_before_the_end_is_an_error(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    path.write_text(
        _line(_entry(1, "T-1")) + "not json\n" + _line(_entry(3, "T-3")),
        "utf-8",
    )

    with pytest.raises(CorruptProgressLogError, match="line 2"):
        ProgressLog(path).entries()


def test_blank_lines_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "progress.txt"
    path.write_text(_line(_entry(1, "T-1")) + "\n" + _line(_entry(2, "T-2")), "utf-8")

    assert [entry.task_id for entry in ProgressLog(path).entries()] == ["T-1", "T-2"]


def test_consecutive_failures_counts_since_last_success(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.txt")
    log.append(_entry(1, "T-1", ProgressOutcome.FAILED))
    log.append(_entry(2, "T-1", ProgressOutcome.SUCCEEDED))
    log.append(_entry(3, "T-1", ProgressOutcome.FAILED))
    log.append(_entry(4, "T-2", ProgressOutcome.FAILED))
    log.append(_entry(5, "T-1", ProgressOutcome.ERROR))

    assert log.consecutive_failures("T-1") == 2
    assert log.consecutive_failures("T-2") == 1
    assert log.consecutive_failures("T-3") == 0


def test_append_failure_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", "utf-8")
    log = ProgressLog(blocker / "progress.txt")

    with pytest.raises(PersistenceError):
        log.append(_entry(1, "T-1"))


def test_record_keeps_non_ascii_notes(tmp_path: Path) -> None:
    log = ProgressLog(tmp_path / "progress.txt")
    log.append(_entry(1, "T-1", notes="Überprüft: ✓"))

    assert "Überprüft" in log.path.read_text("utf-8")
    assert log.entries()[0].notes == "Überprüft: ✓"
