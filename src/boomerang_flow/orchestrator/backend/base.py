"""Backend interface for worker process execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

OutputCallback = Callable[[str, str], None]
"""Receives ``(line, stream)`` for every line a worker writes."""

ExitCallback = Callable[[int, bool], None]
"""Receives ``(exit_code, timed_out)`` once, after all output was delivered."""


class WorkerStatus(str, Enum):
    """Process-level state of one worker."""

    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"
    EXITED = "exited"


@dataclass(slots=True)
class WorkerSpawnRequest:
    """Inputs required to start one worker process."""

    task_id: str
    mode: str
    command_template: str
    timeout_seconds: int
    parent_id: str | None = None
    tools: tuple[str, ...] = ()
    max_turns: int = 10
    workdir: Path | None = None
    graceful_shutdown_seconds: int | None = None


class WorkerHandle(Protocol):
    """Controller-side handle bound to one running worker."""

    task_id: str
    status: WorkerStatus

    @property
    def pid(self) -> int | None:
        """OS process id, when the backend has one."""

    def send(self, message: str) -> None:
        """Write one message line to the worker; raises `ProcessCommunicationError`."""

    def terminate(self) -> None:
        """Stop the worker: graceful first, forceful after the grace period."""

    def is_alive(self) -> bool:
        """True until the worker exit was observed."""


class WorkerBackend(Protocol):
    """Protocol implemented by worker process launchers."""

    def spawn(
        self,
        request: WorkerSpawnRequest,
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> WorkerHandle:
        """Start a worker; raises `ProcessStartError` when it cannot be spawned."""
