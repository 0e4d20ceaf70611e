from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from boomerang_flow.orchestrator.backend import CliWorkerBackend, CliWorkerHandle
from boomerang_flow.orchestrator.backend.base import WorkerSpawnRequest
from boomerang_flow.orchestrator.backend.cli_backend import (
    TIMEOUT_EXIT_CODE,
    _build_run_args,
    builtin_tools,
)
from boomerang_flow.orchestrator.errors import ProcessCommunicationError, ProcessStartError
from boomerang_flow.orchestrator.models import TaskStatus
from boomerang_flow.orchestrator.orchestrator import TaskOrchestrator
from boomerang_flow.orchestrator.progress import ProgressTracker

from .fakes import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("CLI Agent Backend"),
]


class _Capture:
    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []
        self.exits: list[tuple[int, bool]] = []
        self.exited = threading.Event()

    def on_output(self, text: str, stream: str) -> None:
        self.lines.append((text, stream))

    def on_exit(self, exit_code: int, timed_out: bool) -> None:
        self.exits.append((exit_code, timed_out))
        self.exited.set()

    def stdout(self) -> list[str]:
        return [text for text, stream in self.lines if stream == "stdout"]


def _spawn(
    tmp_path: Path,
    capture: _Capture,
    *,
    timeout_seconds: int = 30,
    command_template: str = ECHO_AGENT_COMMAND_TEMPLATE,
) -> CliWorkerHandle:
    return CliWorkerBackend().spawn(
        WorkerSpawnRequest(
            task_id="task-1",
            mode="tester",
            command_template=command_template,
            timeout_seconds=timeout_seconds,
            workdir=tmp_path / "workspace",
            graceful_shutdown_seconds=5,
        ),
        on_output=capture.on_output,
        on_exit=capture.on_exit,
    )


def _instruction(task: str) -> str:
    return f"You are in tester mode. THE TASK: {task} - Execute this task immediately."


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = _build_run_args(
        command_template="agent --mode {mode} --max-turns {max_turns} --id {task_id} --tools {tools}",
        task_id="task-1",
        mode="code reviewer",
        max_turns=7,
        tools=("read", "new_task", "shell", "attempt_completion"),
    )

    assert argv == [
        "agent",
        "--mode",
        "code reviewer",
        "--max-turns",
        "7",
        "--id",
        "task-1",
        "--tools",
        "read,shell",
    ]


def test_builtin_tools_drop_orchestration_directives() -> None:
    assert builtin_tools(("new_task", "attempt_completion")) == ()
    assert builtin_tools(("developer", "new_task")) == ("developer",)


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "template is empty"),
        ("agent {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_unusable_templates(template: str, message: str) -> None:
    with pytest.raises(ProcessStartError, match=message) as error:
        _build_run_args(
            command_template=template,
            task_id="task-1",
            mode="coder",
            max_turns=10,
            tools=(),
        )
    assert error.value.retryable is False


def test_missing_command_raises_non_retryable_start_error(tmp_path: Path) -> None:
    capture = _Capture()

    with pytest.raises(ProcessStartError, match="Worker command not found") as error:
        _spawn(tmp_path, capture, command_template="boomerang-no-such-agent-binary {max_turns}")

    assert error.value.retryable is False
    assert error.value.task_id == "task-1"


def test_echo_agent_completes_and_exits_when_stdin_closes(tmp_path: Path) -> None:
    capture = _Capture()
    handle = _spawn(tmp_path, capture)

    handle.send(_instruction("reply all green"))
    handle.terminate()

    assert handle.wait(timeout=30)
    assert capture.exits == [(0, False)]
    assert "attempt_completion {result: all green}" in capture.stdout()
    assert "Task: reply all green" in capture.stdout()
    assert not handle.is_alive()
    with pytest.raises(ProcessCommunicationError):
        handle.send("too late")


def test_echo_agent_failure_exit_code_is_reported(tmp_path: Path) -> None:
    capture = _Capture()
    handle = _spawn(tmp_path, capture)

    handle.send(_instruction("fail with exit code 3"))

    assert capture.exited.wait(timeout=30)
    assert capture.exits == [(3, False)]
    assert "Processing failed" in capture.stdout()


def test_timeout_terminates_worker_with_exit_124(tmp_path: Path) -> None:
    capture = _Capture()
    handle = _spawn(tmp_path, capture, timeout_seconds=1)

    handle.send(_instruction("stay silent"))

    assert handle.wait(timeout=30)
    assert capture.exits == [(TIMEOUT_EXIT_CODE, True)]


def test_worker_environment_identifies_task(tmp_path: Path) -> None:
    capture = _Capture()
    handle = _spawn(tmp_path, capture)

    handle.send(_instruction("reply env"))
    handle.terminate()

    assert handle.wait(timeout=30)
    assert "Starting tester turn budget 10" in capture.stdout()
    assert (tmp_path / "workspace").is_dir()


def test_end_to_end_delegation_through_echo_agents(
    tmp_path: Path,
    progress_tracker: ProgressTracker,
) -> None:
    orchestrator = TaskOrchestrator(
        backend=CliWorkerBackend(),
        progress=progress_tracker,
        command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        worker_timeout_seconds=60,
        graceful_shutdown_seconds=1,
        poll_interval_seconds=0.05,
        workdir=tmp_path / "workspace",
    )
    try:
        root_id = orchestrator.create_root_task("coder", "delegate to tester: reply ok")
        assert orchestrator.wait_for_completion(timeout=60)

        root = orchestrator.get_task(root_id)
        [child_id] = root.children
        child = orchestrator.get_task(child_id)
        assert child.mode == "tester"
        assert child.status is TaskStatus.COMPLETED
        assert child.result == "ok"
        assert root.status is TaskStatus.COMPLETED
        assert root.result == "ok"
        assert progress_tracker.is_all_completed()
        assert not progress_tracker.has_failures()
    finally:
        orchestrator.close()


def test_child_exiting_right_after_completion_reports_its_result(
    tmp_path: Path,
    progress_tracker: ProgressTracker,
) -> None:
    orchestrator = TaskOrchestrator(
        backend=CliWorkerBackend(),
        progress=progress_tracker,
        command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        worker_timeout_seconds=60,
        graceful_shutdown_seconds=1,
        poll_interval_seconds=0.05,
        workdir=tmp_path / "workspace",
    )
    try:
        root_id = orchestrator.create_root_task(
            "coder",
            "delegate to tester: reply green and exit",
        )
        assert orchestrator.wait_for_completion(timeout=60)

        root = orchestrator.get_task(root_id)
        [child_id] = root.children
        child = orchestrator.get_task(child_id)
        assert child.status is TaskStatus.COMPLETED
        assert child.result == "green"
        assert root.status is TaskStatus.COMPLETED
        assert root.result == "green"
    finally:
        orchestrator.close()
