"""Boomerang task controller: lifecycle, delegation, and worker supervision."""

from __future__ import annotations

import itertools
import logging
import queue
import re
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from boomerang_flow.orchestrator.backend.base import (
    WorkerBackend,
    WorkerHandle,
    WorkerSpawnRequest,
    WorkerStatus,
)
from boomerang_flow.orchestrator.errors import (
    ProcessCommunicationError,
    ProcessStartError,
    TaskCreationRejectedError,
    TaskNotFoundError,
)
from boomerang_flow.orchestrator.events import EventChannel
from boomerang_flow.orchestrator.handler import OrchestrationHandler
from boomerang_flow.orchestrator.models import (
    ACTIVE_TASK_STATUSES,
    CompleteTaskRequest,
    CompletionRequested,
    ControllerMessage,
    CreateSubtaskRequest,
    DelegationRequested,
    OrchestrationEvent,
    ProgressStatus,
    Task,
    TaskHierarchyNode,
    TaskStatus,
    WorkerExited,
    WorkerOutput,
    status_event,
)
from boomerang_flow.orchestrator.progress import ProgressTracker
from boomerang_flow.orchestrator.prompts import ORCHESTRATOR_MODE, PromptManager
from boomerang_flow.orchestrator.safety import SafetyManager
from boomerang_flow.orchestrator.task_stack import TaskStack

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = "goose session --max-turns {max_turns}"

INITIAL_PROGRESS = 10
STARTING_PROGRESS = 15
ANALYZING_PROGRESS = 30
SCANNING_PROGRESS = 45
PROCESSING_PROGRESS = 60
GENERATING_PROGRESS = 80
COMPLETING_PROGRESS = 95
COMPLETED_PROGRESS = 100
FAILED_PROGRESS = 0

# First matching row wins.
_PROGRESS_MARKERS: tuple[tuple[tuple[str, ...], int, str], ...] = (
    (("Starting", "Initializing"), STARTING_PROGRESS, "Starting analysis"),
    (("Analyzing", "Reading"), ANALYZING_PROGRESS, "Analyzing files"),
    (("Scanning", "Searching"), SCANNING_PROGRESS, "Scanning sources"),
    (("Processing", "Working"), PROCESSING_PROGRESS, "Processing results"),
    (("Generating", "Creating"), GENERATING_PROGRESS, "Generating output"),
    (("Completed", "Finished"), COMPLETING_PROGRESS, "Finalizing"),
)
_CURRENT_ACTIVITY = re.compile(r"(?:Task|Step|Action):\s*(.+)", re.IGNORECASE)
_TAG_DIRECTIVES = ("new_task", "attempt_completion")
_MAX_PENDING_DIRECTIVE_LINES = 20

CLEAN_EXIT_MESSAGE = "Subtask exited without reporting a result"


class TaskOrchestrator:
    """Own the task map and worker bindings for one orchestration session.

    Worker reader threads only enqueue messages; every state mutation happens
    on the thread that calls `process_events` or `wait_for_completion`.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: WorkerBackend,
        progress: ProgressTracker,
        safety: SafetyManager | None = None,
        stack: TaskStack | None = None,
        handler: OrchestrationHandler | None = None,
        prompts: PromptManager | None = None,
        command_template: str = DEFAULT_WORKER_COMMAND,
        worker_timeout_seconds: int = 1800,
        graceful_shutdown_seconds: int | None = 2,
        default_max_turns: int = 10,
        orchestrator_max_turns: int = 50,
        poll_interval_seconds: float = 1.0,
        workdir: Path | None = None,
    ) -> None:
        self.backend = backend
        self.progress = progress
        self.safety = safety or SafetyManager()
        self.stack = stack or TaskStack()
        self.channel: EventChannel = self.stack.channel
        self.handler = handler or OrchestrationHandler()
        self.handler.bind(self)
        self.prompts = prompts or PromptManager()
        self.command_template = command_template
        self.worker_timeout_seconds = worker_timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.default_max_turns = default_max_turns
        self.orchestrator_max_turns = orchestrator_max_turns
        self.poll_interval_seconds = poll_interval_seconds
        self.workdir = workdir
        self._tasks: dict[str, Task] = {}
        self._workers: dict[str, WorkerHandle] = {}
        self._pending_directives: dict[str, list[str]] = {}
        self._flow = threading.local()
        self._inbox: queue.Queue[ControllerMessage] = queue.Queue()
        self._lock = threading.RLock()
        self._counter = itertools.count(1)

    # Task creation

    def create_root_task(
        self,
        mode: str,
        instruction: str,
        *,
        tools: tuple[str, ...] = (),
        max_turns: int | None = None,
        session_name: str | None = None,
    ) -> str:
        """Create and start a top-level task; returns its id."""

        with self._lock:
            self.safety.validate_task_creation(None, mode, self._tasks)
            task = self._allocate(
                mode=mode,
                instruction=instruction,
                depth=0,
                parent=None,
                tools=tools,
                max_turns=max_turns,
                session_name=session_name,
            )
            self._register(task)
            self.progress.update_progress(
                task.task_id,
                name=session_name or f"{mode}-root",
                status=ProgressStatus.PENDING,
                progress=0,
            )
            logger.info("Created root task %s (%s)", task.task_id, mode)
            self.start_task(task)
            return task.task_id

    def create_subtask(self, parent_id: str, request: CreateSubtaskRequest) -> str:
        """Create a child of ``parent_id``, pause the parent, and start the child."""

        with self._lock:
            parent = self._require_task(parent_id)
            if parent.status.is_terminal:
                raise TaskCreationRejectedError(
                    f"Parent task {parent_id} is already {parent.status.value}",
                    task_id=parent_id,
                )
            root_id = parent.root_id or parent.task_id
            if root_id not in self._tasks:
                raise TaskNotFoundError(f"Root task not found: {root_id}", task_id=parent_id)

            self.safety.validate_task_creation(parent, request.mode, self._tasks)
            child = self._allocate(
                mode=request.mode,
                instruction=request.instruction,
                depth=parent.depth + 1,
                parent=parent,
                tools=request.tools,
                max_turns=request.max_turns,
                session_name=None,
            )
            self._register(child)
            parent.children.append(child.task_id)
            self.progress.update_progress(
                child.task_id,
                name=f"{request.mode}-subtask",
                status=ProgressStatus.PENDING,
                progress=0,
            )
            logger.info(
                "Created %s subtask %s under %s (depth %d)",
                request.mode,
                child.task_id,
                parent_id,
                child.depth,
            )
            self.pause_task(parent_id)
            self.start_task(child)
            return child.task_id

    # Lifecycle transitions

    def complete_task(self, task_id: str, request: CompleteTaskRequest) -> None:
        """Mark ``task_id`` completed and hand its result back to the parent."""

        with self._lock:
            task = self._require_task(task_id)
            if task.status.is_terminal:
                logger.warning(
                    "Ignoring completion of task %s: already %s",
                    task_id,
                    task.status.value,
                )
                return
            self._mark_completed(task, request.result, summary=request.summary)
            if task.parent_id is not None:
                self._resume_after_child(task, request.result)

    def pause_task(self, task_id: str) -> None:
        """Bookkeeping-only pause; the worker process keeps running."""

        with self._lock:
            task = self._require_task(task_id)
            if task.status.is_terminal:
                logger.warning("Cannot pause task %s: already %s", task_id, task.status.value)
                return
            self._set_status(task, TaskStatus.PAUSED)
            handle = self._workers.get(task_id)
            if handle is not None:
                handle.status = WorkerStatus.PAUSED
            self.progress.update_progress(task_id, status=ProgressStatus.PAUSED)
            logger.debug("Paused task %s", task_id)

    def resume_parent_task(self, parent_id: str, completion_message: str) -> None:
        """Resume ``parent_id`` and write the rendered completion notice to it."""

        with self._lock:
            parent = self._require_task(parent_id)
            if parent.status.is_terminal:
                logger.warning(
                    "Cannot resume task %s: already %s",
                    parent_id,
                    parent.status.value,
                )
                return
            self._set_status(parent, TaskStatus.RUNNING)
            handle = self._workers.get(parent_id)
            if handle is not None:
                handle.status = WorkerStatus.RUNNING
            self.progress.update_progress(parent_id, status=ProgressStatus.RUNNING)
            self._send(parent_id, self.prompts.completion_message(completion_message))
            logger.info("Resumed task %s", parent_id)

    def start_task(self, task: Task) -> None:
        """Spawn the worker for ``task`` and send its initial instruction."""

        request = WorkerSpawnRequest(
            task_id=task.task_id,
            parent_id=task.parent_id,
            mode=task.mode,
            command_template=self.command_template,
            timeout_seconds=self.worker_timeout_seconds,
            tools=task.tools,
            max_turns=task.max_turns or self.default_max_turns,
            workdir=self.workdir,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        task_id = task.task_id
        try:
            handle = self.backend.spawn(
                request,
                on_output=lambda text, stream: self._inbox.put(
                    WorkerOutput(task_id=task_id, text=text, stream=stream),
                ),
                on_exit=lambda exit_code, timed_out: self._inbox.put(
                    WorkerExited(task_id=task_id, exit_code=exit_code, timed_out=timed_out),
                ),
            )
        except ProcessStartError as error:
            logger.error("Failed to start worker for task %s: %s", task_id, error)
            self._mark_failed(task, f"Subtask failed to start: {error}")
            raise

        with self._lock:
            self._workers[task_id] = handle
            self._set_status(task, TaskStatus.RUNNING)
            self.progress.update_progress(
                task_id,
                status=ProgressStatus.RUNNING,
                progress=INITIAL_PROGRESS,
            )

        try:
            handle.send(self.prompts.build_task_instruction(task.mode, task.instruction))
        except ProcessCommunicationError as error:
            logger.error("Failed to send instruction to task %s: %s", task_id, error)
            self._mark_failed(task, f"Subtask failed to receive its instruction: {error}")
            raise
        logger.info("Started task %s (%s, pid %s)", task_id, task.mode, handle.pid)

    def stop_task(self, task_id: str, *, reason: str = "stopped") -> bool:
        """Force ``task_id`` to failed and stop its worker; the parent is left as is."""

        with self._lock:
            task = self._require_task(task_id)
            if task.status.is_terminal:
                return False
            self._set_status(task, TaskStatus.FAILED, details={"reason": reason})
            self._stop_worker(task_id)
            self.stack.remove_task(task_id)
            self.progress.update_progress(
                task_id,
                status=ProgressStatus.FAILED,
                progress=FAILED_PROGRESS,
            )
            logger.info("Stopped task %s (%s)", task_id, reason)
            return True

    def stop_all_tasks(self, *, reason: str = "stopped") -> int:
        """Stop every live task and clear the stack; returns the number stopped."""

        with self._lock:
            stopped = sum(
                1
                for task in list(self._tasks.values())
                if not task.status.is_terminal and self.stop_task(task.task_id, reason=reason)
            )
            self.stack.clear()
            if stopped:
                logger.info("Stopped %d live tasks", stopped)
            return stopped

    # Controller flow

    def request_subtask(self, parent_id: str, request: CreateSubtaskRequest) -> None:
        self._submit(DelegationRequested(parent_id=parent_id, request=request))

    def request_completion(self, task_id: str, request: CompleteTaskRequest) -> None:
        self._submit(CompletionRequested(task_id=task_id, request=request))

    def process_events(self, timeout: float = 0.0) -> int:
        """Apply queued controller messages; returns how many were handled.

        Blocks up to ``timeout`` seconds for the first message, then drains
        whatever else is already queued.
        """

        try:
            if timeout > 0:
                message = self._inbox.get(timeout=timeout)
            else:
                message = self._inbox.get_nowait()
        except queue.Empty:
            return 0

        processed = 0
        while True:
            self._apply(message)
            processed += 1
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return processed

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        """Run the controller flow until no task is live; False on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.process_events()
            if not self.has_active_tasks():
                return True
            wait_seconds = self.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait_seconds = min(wait_seconds, remaining)
            self.process_events(timeout=wait_seconds)

    def close(self) -> None:
        """Stop every live worker and drop queued messages."""

        self.stop_all_tasks(reason="orchestrator_closed")
        while True:
            try:
                self._inbox.get_nowait()
            except queue.Empty:
                break
        self._pending_directives.clear()

    # Queries

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_all_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def get_current_task(self) -> Task | None:
        return self.stack.get_current_task()

    def get_worker(self, task_id: str) -> WorkerHandle | None:
        return self._workers.get(task_id)

    def has_active_tasks(self) -> bool:
        return any(task.status in ACTIVE_TASK_STATUSES for task in self._tasks.values())

    def get_task_hierarchy(self) -> list[TaskHierarchyNode]:
        """Forest of tasks rebuilt from ``parent_id``/``children`` links."""

        return [
            self._hierarchy_node(task)
            for task in self._tasks.values()
            if task.parent_id is None
        ]

    # Message handling

    def _apply(self, message: ControllerMessage) -> None:
        if isinstance(message, WorkerOutput):
            self._on_worker_output(message)
        elif isinstance(message, WorkerExited):
            self._on_worker_exited(message)
        elif isinstance(message, DelegationRequested):
            self._on_delegation_requested(message)
        elif isinstance(message, CompletionRequested):
            self._on_completion_requested(message)

    def _on_worker_output(self, message: WorkerOutput) -> None:
        task = self._tasks.get(message.task_id)
        if task is None:
            return
        if message.stream == "stderr":
            logger.debug("[%s stderr] %s", task.task_id, message.text)
            return
        logger.debug("[%s] %s", task.task_id, message.text)
        if task.status.is_terminal:
            return

        self._update_progress_from_output(task, message.text)
        text = self._collect_directive_text(task.task_id, message.text)
        if text is None:
            return
        requests: list[ControllerMessage] = []
        self._flow.directive_requests = requests
        try:
            calls = self.handler.parse_output(text)
            responses = self.handler.process_tool_calls(task.task_id, calls)
        finally:
            self._flow.directive_requests = None
        for response in responses:
            self._send(task.task_id, self.prompts.tool_response(response))
        # Applied before the next inbox message, so a directive printed right
        # before exiting lands ahead of the exit notification.
        for request in requests:
            self._apply(request)

    def _on_worker_exited(self, message: WorkerExited) -> None:
        self._workers.pop(message.task_id, None)
        self._pending_directives.pop(message.task_id, None)
        task = self._tasks.get(message.task_id)
        if task is None or task.status.is_terminal:
            return

        with self._lock:
            if message.exit_code == 0:
                logger.info("Task %s worker exited cleanly", task.task_id)
                self._mark_completed(task, None)
                if task.parent_id is not None:
                    self._resume_after_child(task, CLEAN_EXIT_MESSAGE)
                return

            if message.timed_out:
                logger.warning("Task %s worker timed out", task.task_id)
            reason = f"Subtask failed with exit code: {message.exit_code}"
            logger.warning("Task %s failed: %s", task.task_id, reason)
            self._mark_failed(task, reason, exit_code=message.exit_code)

    def _on_delegation_requested(self, message: DelegationRequested) -> None:
        try:
            child_id = self.create_subtask(message.parent_id, message.request)
        except TaskCreationRejectedError as error:
            logger.warning(
                "Rejected %s subtask for task %s: %s",
                message.request.mode,
                message.parent_id,
                error,
            )
            self._send(message.parent_id, self.prompts.tool_response(f"Error: {error}"))
        except TaskNotFoundError as error:
            logger.warning("Dropping delegation request: %s", error)
        except (ProcessStartError, ProcessCommunicationError) as error:
            logger.error(
                "Subtask for task %s could not be started: %s",
                message.parent_id,
                error,
            )
        else:
            logger.debug("Delegation from %s started %s", message.parent_id, child_id)

    def _on_completion_requested(self, message: CompletionRequested) -> None:
        task = self._tasks.get(message.task_id)
        if task is None or task.status.is_terminal:
            logger.debug("Ignoring completion request for task %s", message.task_id)
            return
        self.complete_task(message.task_id, message.request)

    def _collect_directive_text(self, task_id: str, line: str) -> str | None:
        """Return the text whose directives are complete; hold back an open tag block.

        Only the text from the earliest unclosed directive tag onward is kept
        pending. Inline directives arriving meanwhile are returned at once.
        """

        pending = self._pending_directives.pop(task_id, None)
        if pending is not None and not _mentions_directive_tag(line):
            self._pending_directives[task_id] = pending
            if self.handler.has_orchestration_tools(line):
                return line
            pending.append(line)
            if len(pending) > _MAX_PENDING_DIRECTIVE_LINES:
                logger.warning(
                    "Discarding unterminated directive tag from task %s: %s",
                    task_id,
                    pending[0][:200],
                )
                del self._pending_directives[task_id]
            return None

        text = "\n".join([*pending, line]) if pending else line
        if not self.handler.has_orchestration_tools(text):
            return None
        complete, unterminated = _split_unterminated_tag(text)
        if unterminated:
            self._pending_directives[task_id] = unterminated.split("\n")
        return complete or None

    def _update_progress_from_output(self, task: Task, text: str) -> None:
        progress: int | None = None
        activity: str | None = None
        for keywords, level, label in _PROGRESS_MARKERS:
            if any(keyword in text for keyword in keywords):
                progress, activity = level, label
                break

        match = _CURRENT_ACTIVITY.search(text)
        if match is not None:
            activity = match.group(1).strip()

        if progress is None and activity is None:
            return
        self.progress.update_progress(task.task_id, progress=progress, current_task=activity)

    # Internals

    def _allocate(  # noqa: PLR0913
        self,
        *,
        mode: str,
        instruction: str,
        depth: int,
        parent: Task | None,
        tools: tuple[str, ...],
        max_turns: int | None,
        session_name: str | None,
    ) -> Task:
        task_id = f"task-{int(time.time() * 1000)}-{next(self._counter)}"
        if max_turns is None:
            max_turns = (
                self.orchestrator_max_turns
                if mode == ORCHESTRATOR_MODE
                else self.default_max_turns
            )
        return Task(
            task_id=task_id,
            mode=mode,
            instruction=instruction,
            depth=depth,
            parent_id=parent.task_id if parent is not None else None,
            root_id=(parent.root_id or parent.task_id) if parent is not None else task_id,
            tools=tuple(tools),
            max_turns=max_turns,
            session_name=session_name,
        )

    def _register(self, task: Task) -> None:
        self.stack.push(task)
        self._tasks[task.task_id] = task
        self.safety.observe_task_count(len(self._tasks))

    def _require_task(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}", task_id=task_id)
        return task

    def _set_status(
        self,
        task: Task,
        status: TaskStatus,
        *,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        is_paused = status is TaskStatus.PAUSED
        payload = dict(details or {})
        if self.stack.update_task(
            task.task_id,
            status=status,
            is_paused=is_paused,
            details=payload,
        ):
            return

        previous = task.status
        task.status = status
        task.is_paused = is_paused
        task.touch()
        event_type = status_event(previous, status)
        if event_type is not None:
            self.channel.publish(
                OrchestrationEvent(
                    event_type=event_type,
                    task_id=task.task_id,
                    parent_id=task.parent_id,
                    details=payload,
                ),
            )

    def _mark_completed(
        self,
        task: Task,
        result: str | None,
        *,
        summary: str | None = None,
    ) -> None:
        task.result = result
        details: dict[str, Any] = {}
        if result is not None:
            details["result"] = result
        if summary is not None:
            details["summary"] = summary
        self._set_status(task, TaskStatus.COMPLETED, details=details)
        self._stop_worker(task.task_id)
        self.stack.remove_task(task.task_id)
        self.progress.update_progress(
            task.task_id,
            status=ProgressStatus.COMPLETED,
            progress=COMPLETED_PROGRESS,
        )
        logger.info("Task %s completed", task.task_id)

    def _mark_failed(self, task: Task, reason: str, *, exit_code: int | None = None) -> None:
        """Fail ``task``, report to its parent, and end the session for a root."""

        with self._lock:
            if task.status.is_terminal:
                return
            details: dict[str, Any] = {"reason": reason}
            if exit_code is not None:
                details["exit_code"] = exit_code
            self._set_status(task, TaskStatus.FAILED, details=details)
            self._stop_worker(task.task_id)
            self.stack.remove_task(task.task_id)
            self.progress.update_progress(
                task.task_id,
                status=ProgressStatus.FAILED,
                progress=FAILED_PROGRESS,
            )

            if task.parent_id is not None:
                self._resume_after_child(task, reason)
                return

            for other in list(self._tasks.values()):
                if other.root_id == task.task_id and not other.status.is_terminal:
                    self.stop_task(other.task_id, reason="root_failed")

    def _resume_after_child(self, child: Task, message: str) -> None:
        """Deliver a child outcome; the parent resumes once no sibling is live."""

        parent = self._tasks.get(child.parent_id or "")
        if parent is None or parent.status.is_terminal:
            return
        siblings_live = any(
            (sibling := self._tasks.get(sibling_id)) is not None
            and sibling.status in ACTIVE_TASK_STATUSES
            for sibling_id in parent.children
            if sibling_id != child.task_id
        )
        if parent.status is TaskStatus.PAUSED and not siblings_live:
            self.resume_parent_task(parent.task_id, message)
            return
        self._send(parent.task_id, self.prompts.completion_message(message))

    def _submit(self, message: ControllerMessage) -> None:
        requests = getattr(self._flow, "directive_requests", None)
        if requests is not None:
            requests.append(message)
            return
        self._inbox.put(message)

    def _send(self, task_id: str, message: str) -> bool:
        handle = self._workers.get(task_id)
        if handle is None:
            logger.warning("No live worker for task %s; message dropped", task_id)
            return False
        try:
            handle.send(message)
        except ProcessCommunicationError as error:
            logger.warning("Failed to write to task %s: %s", task_id, error)
            return False
        return True

    def _stop_worker(self, task_id: str) -> None:
        handle = self._workers.pop(task_id, None)
        self._pending_directives.pop(task_id, None)
        if handle is None:
            return
        try:
            handle.terminate()
        except ProcessCommunicationError as error:
            logger.warning("Failed to stop worker for task %s: %s", task_id, error)

    def _hierarchy_node(self, task: Task) -> TaskHierarchyNode:
        return TaskHierarchyNode(
            task_id=task.task_id,
            mode=task.mode,
            status=task.status,
            depth=task.depth,
            start_time=task.created_at,
            end_time=task.updated_at if task.status.is_terminal else None,
            result=task.result,
            children=[
                self._hierarchy_node(self._tasks[child_id])
                for child_id in task.children
                if child_id in self._tasks
            ],
        )


def _mentions_directive_tag(line: str) -> bool:
    lowered = line.lower()
    return any(f"<{name}>" in lowered or f"</{name}>" in lowered for name in _TAG_DIRECTIVES)


def _split_unterminated_tag(text: str) -> tuple[str, str]:
    """Split ``text`` before the earliest directive tag opened after its last closing tag."""

    lowered = text.lower()
    cut = len(text)
    for name in _TAG_DIRECTIVES:
        opened = lowered.find(f"<{name}>", lowered.rfind(f"</{name}>") + 1)
        if opened >= 0:
            cut = min(cut, opened)
    return text[:cut], text[cut:]
