"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import shlex
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

ECHO_WORKER = f"{shlex.quote(sys.executable)} -m taskloop.orchestrator.backend.echo_worker"
MARKER = "<promise>COMPLETE</promise>"


def echo_command(*args: str) -> str:
    """Worker template that runs the scripted echo worker with ``args``."""

    return " ".join([ECHO_WORKER, *args, "--", "{task}"])


def task_record(task_id: str, priority: int, status: str = "pending") -> dict[str, object]:
    return {
        "id": task_id,
        "description": f"Implement {task_id}",
        "priority": priority,
        "status": status,
    }


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("TASKLOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def write_backlog(tmp_path: Path) -> Callable[[list[dict[str, object]]], Path]:
    """Write raw backlog records to ``tmp_path/plans/prd.json``."""

    def _write(records: list[dict[str, object]]) -> Path:
        path = tmp_path / "plans" / "prd.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(records, indent=2) + "\n", "utf-8")
        return path

    return _write
