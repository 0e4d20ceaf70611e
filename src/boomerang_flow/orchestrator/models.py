"""Domain models for the task hierarchy, progress ledger, and controller inbox."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from boomerang_flow.storage.common import utc_now


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


ACTIVE_TASK_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.PAUSED},
)


class EventType(str, Enum):
    """Lifecycle events published on the orchestration channel."""

    TASK_CREATED = "task_created"
    TASK_PAUSED = "task_paused"
    TASK_RESUMED = "task_resumed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"


STATUS_EVENTS: dict[TaskStatus, EventType] = {
    TaskStatus.PAUSED: EventType.TASK_PAUSED,
    TaskStatus.RUNNING: EventType.TASK_RESUMED,
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
}


def status_event(previous: TaskStatus, current: TaskStatus) -> EventType | None:
    """Event announcing a status change; leaving `pending` is not a resume."""

    if current is previous:
        return None
    if current is TaskStatus.RUNNING and previous is not TaskStatus.PAUSED:
        return None
    return STATUS_EVENTS.get(current)


class DirectiveType(str, Enum):
    """Directive kinds recognized in worker output."""

    NEW_TASK = "new_task"
    ATTEMPT_COMPLETION = "attempt_completion"


@dataclass(slots=True)
class Task:
    """One node of the delegation hierarchy, executed by one worker process."""

    task_id: str
    mode: str
    instruction: str
    depth: int = 0
    parent_id: str | None = None
    root_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    children: list[str] = field(default_factory=list)
    result: str | None = None
    is_paused: bool = False
    tools: tuple[str, ...] = ()
    max_turns: int | None = None
    session_name: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def touch(self) -> None:
        self.updated_at = utc_now()


@dataclass(slots=True)
class TaskStackEntry:
    """Stack slot referencing a task owned by the orchestrator."""

    task: Task
    pushed_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class OrchestrationEvent:
    """Lifecycle notification delivered to channel listeners."""

    event_type: EventType
    task_id: str
    parent_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class CreateSubtaskRequest:
    """Delegation request produced by a `new_task` directive."""

    mode: str
    instruction: str
    tools: tuple[str, ...] = ()
    max_turns: int | None = None


@dataclass(slots=True)
class CompleteTaskRequest:
    """Completion request produced by an `attempt_completion` directive."""

    result: str
    summary: str | None = None


@dataclass(slots=True)
class NewTaskParameters:
    mode: str
    instruction: str
    tools: tuple[str, ...] = ()
    max_turns: int = 10


@dataclass(slots=True)
class AttemptCompletionParameters:
    result: str
    summary: str | None = None


@dataclass(slots=True)
class ToolCall:
    """One directive extracted from worker text."""

    type: DirectiveType
    parameters: NewTaskParameters | AttemptCompletionParameters


@dataclass(slots=True)
class TaskHierarchyNode:
    """Reporting view of one task and its descendants."""

    task_id: str
    mode: str
    status: TaskStatus
    depth: int
    start_time: datetime
    end_time: datetime | None = None
    result: str | None = None
    children: list[TaskHierarchyNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Render the export shape used by status reports."""

        payload: dict[str, Any] = {
            "id": self.task_id,
            "mode": self.mode,
            "status": self.status.value,
            "depth": self.depth,
            "children": [child.to_dict() for child in self.children],
            "startTime": self.start_time.isoformat(),
        }
        if self.end_time is not None:
            payload["endTime"] = self.end_time.isoformat()
        if self.result is not None:
            payload["result"] = self.result
        return payload


class ProgressStatus(str, Enum):
    """Statuses stored in the progress ledger."""

    PENDING = "pending"
    WAITING = "waiting"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class ProgressEntry:
    """Readable progress record for one task."""

    agent_id: str
    name: str
    status: str
    progress: int
    current_task: str | None
    last_update: datetime


# Controller inbox messages. Reader threads and directive handling only ever
# enqueue these; the controller flow applies them.


@dataclass(slots=True)
class WorkerOutput:
    task_id: str
    text: str
    stream: str = "stdout"


@dataclass(slots=True)
class WorkerExited:
    task_id: str
    exit_code: int
    timed_out: bool = False


@dataclass(slots=True)
class DelegationRequested:
    parent_id: str
    request: CreateSubtaskRequest


@dataclass(slots=True)
class CompletionRequested:
    task_id: str
    request: CompleteTaskRequest


ControllerMessage = WorkerOutput | WorkerExited | DelegationRequested | CompletionRequested
