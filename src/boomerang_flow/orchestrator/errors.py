"""Exception taxonomy for the orchestration core."""

from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base orchestration error with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.retryable = retryable


class TaskNotFoundError(OrchestrationError):
    """Referenced task id is not registered with the orchestrator."""


class TaskCreationRejectedError(OrchestrationError):
    """Safety gate refused a task creation."""


class StackDepthExceededError(TaskCreationRejectedError):
    """Task stack is already at its configured capacity."""


class ProcessStartError(OrchestrationError):
    """Worker process could not be spawned."""


class ProcessCommunicationError(OrchestrationError):
    """Writing to or signalling a worker process failed."""


class DirectiveParseError(OrchestrationError):
    """A matched directive could not be turned into a tool call."""


class OrchestrationToolError(OrchestrationError):
    """Executing a parsed directive failed."""


class UnsafeOperationError(OrchestrationError):
    """Command or file operation hit the safety deny-list."""
