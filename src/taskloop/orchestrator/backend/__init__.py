"""Worker backend implementations."""

from taskloop.orchestrator.backend.base import WorkerBackend, WorkerRunRequest
from taskloop.orchestrator.backend.cli_worker import CliWorker

__all__ = [
    "CliWorker",
    "WorkerBackend",
    "WorkerRunRequest",
]
