"""Worker backend implementations."""

from boomerang_flow.orchestrator.backend.base import (
    WorkerBackend,
    WorkerHandle,
    WorkerSpawnRequest,
    WorkerStatus,
)
from boomerang_flow.orchestrator.backend.cli_backend import CliWorkerBackend, CliWorkerHandle

__all__ = [
    "CliWorkerBackend",
    "CliWorkerHandle",
    "WorkerBackend",
    "WorkerHandle",
    "WorkerSpawnRequest",
    "WorkerStatus",
]
