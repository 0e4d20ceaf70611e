"""Fail-closed safety gate for task creation, commands, and file operations."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace

from boomerang_flow.orchestrator.errors import TaskCreationRejectedError, UnsafeOperationError
from boomerang_flow.orchestrator.models import Task

# Same-mode siblings tolerated under one parent before a delegation is treated
# as a loop. Best-effort heuristic: it does not bound every possible chain.
SIBLING_LOOP_THRESHOLD = 3

_DANGEROUS_COMMANDS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^sudo\s"),
    re.compile(r"^su(\s|$)"),
    re.compile(r"^rm\s+-rf\s+/"),
    re.compile(r"^rm\s+-fr\s+/"),
    re.compile(r"^dd\s+if="),
    re.compile(r"^mkfs\."),
    re.compile(r"^fdisk\s"),
    re.compile(r"^format\s"),
    re.compile(r"^del\s+/s\s+/q\s+\*", re.IGNORECASE),
    re.compile(r"^rmdir\s+/s\s+/q\s+\*", re.IGNORECASE),
)

_SENSITIVE_FILES: tuple[re.Pattern[str], ...] = (
    re.compile(r"/etc/passwd$"),
    re.compile(r"/etc/shadow$"),
    re.compile(r"/etc/sudoers$"),
    re.compile(r"\.ssh/id_rsa$"),
    re.compile(r"\.ssh/id_ed25519$"),
    re.compile(r"\.env$"),
    re.compile(r"\.secret$"),
    re.compile(r"\.key$"),
    re.compile(r"\.pem$"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"token", re.IGNORECASE),
)

_SYSTEM_PATHS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^/bin/"),
    re.compile(r"^/sbin/"),
    re.compile(r"^/usr/bin/"),
    re.compile(r"^/usr/sbin/"),
    re.compile(r"^/etc/"),
    re.compile(r"^/boot/"),
    re.compile(r"^/proc/"),
    re.compile(r"^/sys/"),
    re.compile(r"^C:\\Windows\\", re.IGNORECASE),
    re.compile(r"^C:\\Program Files\\", re.IGNORECASE),
)

FILE_OPERATIONS = frozenset({"read", "write", "delete"})


@dataclass(slots=True, frozen=True)
class SafetyLimits:
    """Session-wide limits applied to task creation."""

    max_depth: int = 5
    max_children: int = 10
    max_total_tasks: int = 50
    max_duration_seconds: float = 1800.0


@dataclass(slots=True)
class SessionStats:
    total_tasks: int
    session_duration_seconds: float
    tasks_remaining: int
    time_remaining_seconds: float
    depth_limit: int
    children_limit: int


class SafetyManager:
    """Validate operations against configured limits and deny-lists."""

    def __init__(
        self,
        limits: SafetyLimits | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits or SafetyLimits()
        self._clock = clock
        self._session_started = clock()
        self._observed_task_count = 0

    def validate_task_creation(
        self,
        parent: Task | None,
        new_mode: str,
        all_tasks: Mapping[str, Task],
    ) -> None:
        """Raise `TaskCreationRejectedError` if the new task would break a limit."""

        prospective_total = len(all_tasks) + 1
        self._observed_task_count = len(all_tasks)
        if prospective_total > self.limits.max_total_tasks:
            raise TaskCreationRejectedError(
                f"Maximum total tasks exceeded: {self.limits.max_total_tasks}",
                task_id=parent.task_id if parent is not None else None,
            )

        elapsed = self._elapsed()
        if elapsed > self.limits.max_duration_seconds:
            raise TaskCreationRejectedError(
                f"Maximum session duration exceeded: {self.limits.max_duration_seconds:g}s",
                task_id=parent.task_id if parent is not None else None,
            )

        if parent is None:
            return

        if parent.depth >= self.limits.max_depth:
            raise TaskCreationRejectedError(
                f"Maximum task depth exceeded: {self.limits.max_depth}",
                task_id=parent.task_id,
            )
        if len(parent.children) >= self.limits.max_children:
            raise TaskCreationRejectedError(
                f"Maximum children per task exceeded: {self.limits.max_children}",
                task_id=parent.task_id,
            )

        same_mode_siblings = sum(
            1
            for child_id in parent.children
            if (child := all_tasks.get(child_id)) is not None and child.mode == new_mode
        )
        if same_mode_siblings >= SIBLING_LOOP_THRESHOLD:
            raise TaskCreationRejectedError(
                f"Potential infinite loop detected: {new_mode} created too frequently",
                task_id=parent.task_id,
            )

    def validate_command_execution(self, command: str) -> None:
        normalized = command.strip()
        for pattern in _DANGEROUS_COMMANDS:
            if pattern.search(normalized):
                raise UnsafeOperationError(f"Dangerous command blocked: {command}")

    def validate_file_operation(self, path: str, operation: str) -> None:
        if operation not in FILE_OPERATIONS:
            raise ValueError(f"Unsupported file operation: {operation!r}")
        if operation == "read":
            return

        for pattern in _SENSITIVE_FILES:
            if pattern.search(path):
                raise UnsafeOperationError(
                    f"Sensitive file operation blocked: {operation} on {path}",
                )
        for pattern in _SYSTEM_PATHS:
            if pattern.search(path):
                raise UnsafeOperationError(
                    f"System path modification blocked: {operation} on {path}",
                )

    def is_command_allowed(self, command: str) -> bool:
        try:
            self.validate_command_execution(command)
        except UnsafeOperationError:
            return False
        return True

    def get_session_stats(self) -> SessionStats:
        elapsed = self._elapsed()
        return SessionStats(
            total_tasks=self._observed_task_count,
            session_duration_seconds=elapsed,
            tasks_remaining=max(0, self.limits.max_total_tasks - self._observed_task_count),
            time_remaining_seconds=max(0.0, self.limits.max_duration_seconds - elapsed),
            depth_limit=self.limits.max_depth,
            children_limit=self.limits.max_children,
        )

    def observe_task_count(self, count: int) -> None:
        """Record the live task count after the orchestrator registers a task."""

        self._observed_task_count = count

    def reset(self) -> None:
        self._session_started = self._clock()
        self._observed_task_count = 0

    def update_limits(self, **changes: float) -> None:
        self.limits = replace(self.limits, **changes)

    def _elapsed(self) -> float:
        return self._clock() - self._session_started
