"""LIFO view of live tasks with lifecycle event emission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from boomerang_flow.orchestrator.errors import StackDepthExceededError
from boomerang_flow.orchestrator.events import EventChannel
from boomerang_flow.orchestrator.models import (
    EventType,
    OrchestrationEvent,
    Task,
    TaskStackEntry,
    TaskStatus,
    status_event,
)

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({"status", "is_paused", "result", "mode", "instruction"})


@dataclass(slots=True)
class StackInfo:
    size: int
    max_depth: int
    current_task_id: str | None
    hierarchy: list[str]


class TaskStack:
    """Push-ordered stack of task references.

    Stack order reflects push order only. Adjacency in the stack is not the
    logical parent relation; use ``Task.parent_id`` for hierarchy decisions.
    """

    def __init__(self, max_depth: int = 10, *, channel: EventChannel | None = None) -> None:
        self.max_depth = max_depth
        self.channel = channel or EventChannel()
        self._entries: list[TaskStackEntry] = []

    def push(self, task: Task) -> None:
        if len(self._entries) >= self.max_depth:
            raise StackDepthExceededError(
                f"Maximum task stack depth exceeded: {self.max_depth}",
                task_id=task.task_id,
            )
        self._entries.append(TaskStackEntry(task=task))
        self._emit(EventType.TASK_CREATED, task)
        logger.debug("Task %s pushed to stack (size: %d)", task.task_id, len(self._entries))

    def pop(self) -> Task | None:
        if not self._entries:
            return None
        entry = self._entries.pop()
        logger.debug("Task %s popped from stack (size: %d)", entry.task.task_id, len(self._entries))
        return entry.task

    def peek(self) -> Task | None:
        if not self._entries:
            return None
        return self._entries[-1].task

    def get_current_task(self) -> Task | None:
        return self.peek()

    def size(self) -> int:
        return len(self._entries)

    def is_empty(self) -> bool:
        return not self._entries

    def get_hierarchy(self) -> list[str]:
        """Task ids from bottom to top of the stack."""

        return [entry.task.task_id for entry in self._entries]

    def get_root_task(self) -> Task | None:
        if not self._entries:
            return None
        return self._entries[0].task

    def get_all_tasks(self) -> list[Task]:
        return [entry.task for entry in self._entries]

    def find_task(self, task_id: str) -> Task | None:
        index = self._index_of(task_id)
        return self._entries[index].task if index >= 0 else None

    def find_parent_task(self, task_id: str) -> Task | None:
        """Entry directly below ``task_id`` in push order."""

        index = self._index_of(task_id)
        if index <= 0:
            return None
        return self._entries[index - 1].task

    def get_task_depth(self, task_id: str) -> int:
        return self._index_of(task_id)

    def update_task(
        self,
        task_id: str,
        *,
        details: dict[str, Any] | None = None,
        **changes: Any,
    ) -> bool:
        """Apply field changes to a stacked task and emit the derived status event."""

        index = self._index_of(task_id)
        if index < 0:
            return False

        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields for update: {', '.join(sorted(unknown))}")

        task = self._entries[index].task
        previous_status = task.status
        for name, value in changes.items():
            setattr(task, name, value)
        task.touch()

        status = changes.get("status")
        if status is not None:
            event_type = status_event(previous_status, TaskStatus(status))
            if event_type is not None:
                self._emit(event_type, task, details=details)
        return True

    def remove_task(self, task_id: str) -> Task | None:
        index = self._index_of(task_id)
        if index < 0:
            return None
        entry = self._entries.pop(index)
        logger.debug("Task %s removed from stack at index %d", task_id, index)
        return entry.task

    def clear(self) -> None:
        """Empty the stack, reporting every dropped entry as completed."""

        tasks = self.get_all_tasks()
        self._entries = []
        for task in tasks:
            self._emit(EventType.TASK_COMPLETED, task, details={"reason": "stack_cleared"})
        logger.debug("Task stack cleared (%d entries dropped)", len(tasks))

    def get_stack_info(self) -> StackInfo:
        current = self.get_current_task()
        return StackInfo(
            size=self.size(),
            max_depth=self.max_depth,
            current_task_id=current.task_id if current is not None else None,
            hierarchy=self.get_hierarchy(),
        )

    def _index_of(self, task_id: str) -> int:
        for index, entry in enumerate(self._entries):
            if entry.task.task_id == task_id:
                return index
        return -1

    def _emit(
        self,
        event_type: EventType,
        task: Task,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.channel.publish(
            OrchestrationEvent(
                event_type=event_type,
                task_id=task.task_id,
                parent_id=task.parent_id,
                details=details or {},
            ),
        )
