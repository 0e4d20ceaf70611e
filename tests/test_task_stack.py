from __future__ import annotations

import allure
import pytest

from boomerang_flow.orchestrator.errors import StackDepthExceededError, TaskCreationRejectedError
from boomerang_flow.orchestrator.events import EventChannel, EventRecorder
from boomerang_flow.orchestrator.models import EventType, Task, TaskStatus
from boomerang_flow.orchestrator.task_stack import TaskStack

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Task Stack"),
]


def _task(task_id: str, *, parent_id: str | None = None, mode: str = "coder") -> Task:
    return Task(task_id=task_id, mode=mode, instruction=f"do {task_id}", parent_id=parent_id)


def _stack_with_recorder(max_depth: int = 10) -> tuple[TaskStack, EventRecorder]:
    channel = EventChannel()
    recorder = EventRecorder()
    channel.subscribe(recorder)
    return TaskStack(max_depth=max_depth, channel=channel), recorder


def test_push_pop_follow_lifo_order_and_emit_created() -> None:
    stack, recorder = _stack_with_recorder()
    stack.push(_task("a"))
    stack.push(_task("b", parent_id="a"))

    assert stack.size() == 2
    assert stack.peek().task_id == "b"
    assert stack.get_current_task().task_id == "b"
    assert stack.get_root_task().task_id == "a"
    assert stack.get_hierarchy() == ["a", "b"]
    assert [event.event_type for event in recorder.events] == [
        EventType.TASK_CREATED,
        EventType.TASK_CREATED,
    ]

    assert stack.pop().task_id == "b"
    assert stack.pop().task_id == "a"
    assert stack.pop() is None
    assert stack.peek() is None
    assert stack.is_empty()


def test_push_beyond_max_depth_raises_and_leaves_stack_unchanged() -> None:
    stack, recorder = _stack_with_recorder(max_depth=2)
    stack.push(_task("a"))
    stack.push(_task("b"))

    with pytest.raises(StackDepthExceededError, match="Maximum task stack depth exceeded: 2"):
        stack.push(_task("c"))

    assert stack.get_hierarchy() == ["a", "b"]
    assert len(recorder.events) == 2


def test_stack_depth_error_is_a_creation_rejection() -> None:
    assert issubclass(StackDepthExceededError, TaskCreationRejectedError)


def test_find_helpers_use_stack_position() -> None:
    stack = TaskStack()
    stack.push(_task("a"))
    stack.push(_task("b", parent_id="a"))
    stack.push(_task("c", parent_id="a"))

    assert stack.find_task("b").task_id == "b"
    assert stack.find_task("missing") is None
    # Adjacency, not the logical parent: "c" sits above "b".
    assert stack.find_parent_task("c").task_id == "b"
    assert stack.find_parent_task("a") is None
    assert stack.get_task_depth("a") == 0
    assert stack.get_task_depth("c") == 2
    assert stack.get_task_depth("missing") == -1


def test_update_task_emits_event_per_status() -> None:
    stack, recorder = _stack_with_recorder()
    task = _task("a")
    stack.push(task)

    assert stack.update_task("a", status=TaskStatus.RUNNING)
    assert stack.update_task("a", status=TaskStatus.PAUSED, is_paused=True)
    assert stack.update_task("a", status=TaskStatus.RUNNING, is_paused=False)
    assert stack.update_task("a", status=TaskStatus.COMPLETED, result="ok")

    assert recorder.types_for("a") == [
        EventType.TASK_CREATED,
        EventType.TASK_PAUSED,
        EventType.TASK_RESUMED,
        EventType.TASK_COMPLETED,
    ]
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "ok"
    assert not task.is_paused


def test_repeated_status_update_emits_no_second_event() -> None:
    stack, recorder = _stack_with_recorder()
    stack.push(_task("a"))

    assert stack.update_task("a", status=TaskStatus.PAUSED, is_paused=True)
    assert stack.update_task("a", status=TaskStatus.PAUSED, is_paused=True)

    assert recorder.types_for("a") == [EventType.TASK_CREATED, EventType.TASK_PAUSED]


def test_update_task_reports_failed_and_passes_details() -> None:
    stack, recorder = _stack_with_recorder()
    stack.push(_task("a"))

    stack.update_task("a", status=TaskStatus.FAILED, details={"reason": "boom"})

    last = recorder.events[-1]
    assert last.event_type is EventType.TASK_FAILED
    assert last.details == {"reason": "boom"}


def test_update_task_returns_false_for_unknown_task() -> None:
    stack = TaskStack()
    assert stack.update_task("missing", status=TaskStatus.RUNNING) is False


def test_update_task_rejects_unknown_fields() -> None:
    stack = TaskStack()
    stack.push(_task("a"))

    with pytest.raises(ValueError, match="depth"):
        stack.update_task("a", depth=3)


def test_remove_task_from_middle_keeps_order() -> None:
    stack = TaskStack()
    for task_id in ("a", "b", "c"):
        stack.push(_task(task_id))

    removed = stack.remove_task("b")

    assert removed is not None
    assert removed.task_id == "b"
    assert stack.get_hierarchy() == ["a", "c"]
    assert stack.remove_task("b") is None


def test_clear_reports_each_entry_as_completed() -> None:
    stack, recorder = _stack_with_recorder()
    stack.push(_task("a"))
    stack.push(_task("b"))

    stack.clear()

    assert stack.is_empty()
    cleared = [event for event in recorder.events if event.event_type is EventType.TASK_COMPLETED]
    assert [event.task_id for event in cleared] == ["a", "b"]
    assert all(event.details == {"reason": "stack_cleared"} for event in cleared)


def test_stack_info_snapshot() -> None:
    stack = TaskStack(max_depth=3)
    stack.push(_task("a"))
    stack.push(_task("b"))

    info = stack.get_stack_info()

    assert info.size == 2
    assert info.max_depth == 3
    assert info.current_task_id == "b"
    assert info.hierarchy == ["a", "b"]


def test_failing_listener_does_not_block_other_listeners() -> None:
    channel = EventChannel()
    recorder = EventRecorder()

    def _broken(event) -> None:
        raise RuntimeError("listener failure")

    channel.subscribe(_broken)
    channel.subscribe(recorder)
    stack = TaskStack(channel=channel)

    stack.push(_task("a"))

    assert recorder.types_for("a") == [EventType.TASK_CREATED]


def test_filtered_subscription_and_unsubscribe() -> None:
    channel = EventChannel()
    recorder = EventRecorder()
    unsubscribe = channel.subscribe(recorder, event_types=(EventType.TASK_FAILED,))
    stack = TaskStack(channel=channel)

    stack.push(_task("a"))
    stack.update_task("a", status=TaskStatus.FAILED)
    unsubscribe()
    stack.push(_task("b"))
    stack.update_task("b", status=TaskStatus.FAILED)

    assert [(event.task_id, event.event_type) for event in recorder.events] == [
        ("a", EventType.TASK_FAILED),
    ]
