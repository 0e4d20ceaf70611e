"""Controllers for orchestration CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from boomerang_flow.config import Settings
from boomerang_flow.orchestrator.backend import CliWorkerBackend, WorkerBackend
from boomerang_flow.orchestrator.errors import OrchestrationError
from boomerang_flow.orchestrator.models import TaskHierarchyNode, TaskStatus
from boomerang_flow.orchestrator.orchestrator import TaskOrchestrator
from boomerang_flow.orchestrator.progress import ProgressRepository, ProgressTracker
from boomerang_flow.orchestrator.safety import SafetyManager
from boomerang_flow.orchestrator.task_stack import TaskStack


@dataclass(slots=True)
class RunCommand:
    """CLI input for one orchestration session."""

    db_path: Path | None
    mode: str
    instruction: str
    tools: tuple[str, ...] = ()
    max_turns: int | None = None
    session_name: str | None = None
    timeout_seconds: float | None = None
    command_template: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class StatusCommand:
    """CLI input for progress ledger inspection."""

    db_path: Path | None
    prune_stale_hours: int | None = None
    clear: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class RunResult:
    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates session execution and progress inspection CLI operations."""

    def __init__(self, backend: WorkerBackend | None = None) -> None:
        self.backend = backend

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.command_template is not None:
            settings.worker.command_template = command.command_template
        try:
            settings.validate()
        except ValueError as error:
            return RunResult(lines=["Orchestration run:", str(error)], success=False)

        with _progress_tracker(settings) as tracker:
            orchestrator = build_orchestrator(
                settings,
                tracker,
                backend=self.backend or CliWorkerBackend(),
            )
            try:
                root_id = orchestrator.create_root_task(
                    command.mode,
                    command.instruction,
                    tools=command.tools,
                    max_turns=command.max_turns,
                    session_name=command.session_name,
                )
                finished = orchestrator.wait_for_completion(timeout=command.timeout_seconds)
                if not finished:
                    orchestrator.stop_all_tasks(reason="session_timeout")
                hierarchy = orchestrator.get_task_hierarchy()
                root = orchestrator.get_task(root_id)
                overall = tracker.get_overall_progress()
                failed = len(tracker.get_failed_agents())
            except OrchestrationError as error:
                return RunResult(lines=["Orchestration run:", f"Error: {error}"], success=False)
            finally:
                orchestrator.close()

        success = finished and root is not None and root.status is TaskStatus.COMPLETED
        if command.output_format == "json":
            return RunResult(
                lines=[json.dumps([node.to_dict() for node in hierarchy], indent=2)],
                success=success,
            )

        lines = ["Orchestration run:"]
        if not finished:
            lines.append(
                f"Timed out after {command.timeout_seconds:g}s; remaining tasks were stopped.",
            )
        if root is not None:
            lines.append(
                f"Root task: task_id={root.task_id} mode={root.mode} status={root.status.value}",
            )
            if root.result is not None:
                lines.append(f"Result: {root.result}")
        lines.append("Task hierarchy:")
        lines.extend(render_hierarchy_lines(hierarchy))
        lines.append(f"Overall progress: {overall:.1f}% failed_tasks={failed}")
        return RunResult(lines=lines, success=success)

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _progress_tracker(settings) as tracker:
            lines: list[str] = []
            if command.clear:
                tracker.clear()
                lines.append("Progress ledger cleared.")
            if command.prune_stale_hours is not None:
                removed = tracker.remove_stale_entries(
                    max_age=timedelta(hours=command.prune_stale_hours),
                )
                lines.append(f"Removed stale entries: {removed}")
            entries = tracker.get_all_progress()
            overall = tracker.get_overall_progress()
            all_completed = tracker.is_all_completed()
            has_failures = tracker.has_failures()

        if command.output_format == "json":
            payload = {
                "overall_progress": overall,
                "all_completed": all_completed,
                "has_failures": has_failures,
                "tasks": [
                    {
                        "task_id": entry.agent_id,
                        "name": entry.name,
                        "status": entry.status,
                        "progress": entry.progress,
                        "current_task": entry.current_task,
                        "last_update": entry.last_update.isoformat(),
                    }
                    for entry in entries
                ],
            }
            return [*lines, json.dumps(payload, indent=2)]

        if not entries:
            return [*lines, "No task progress recorded."]

        lines.append(
            f"Progress: tasks={len(entries)} overall={overall:.1f}% "
            f"all_completed={all_completed} has_failures={has_failures}",
        )
        for entry in entries:
            activity = f" - {entry.current_task}" if entry.current_task else ""
            lines.append(
                f"- {entry.agent_id} {entry.name} status={entry.status} "
                f"progress={entry.progress}%{activity}",
            )
        return lines


def build_orchestrator(
    settings: Settings,
    tracker: ProgressTracker,
    *,
    backend: WorkerBackend,
) -> TaskOrchestrator:
    """Wire a `TaskOrchestrator` from settings."""

    return TaskOrchestrator(
        backend=backend,
        progress=tracker,
        safety=SafetyManager(settings.orchestrator.safety_limits()),
        stack=TaskStack(max_depth=settings.orchestrator.stack_max_depth),
        command_template=settings.worker.command_template,
        worker_timeout_seconds=settings.worker.timeout_seconds,
        graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
        default_max_turns=settings.orchestrator.default_max_turns,
        orchestrator_max_turns=settings.orchestrator.orchestrator_max_turns,
        poll_interval_seconds=settings.orchestrator.poll_interval_seconds,
        workdir=settings.worker.workspace_dir,
    )


def render_hierarchy_lines(nodes: list[TaskHierarchyNode], *, indent: int = 0) -> list[str]:
    lines: list[str] = []
    for node in nodes:
        result = f" result={node.result}" if node.result is not None else ""
        lines.append(
            f"{'  ' * indent}- {node.task_id} [{node.mode}] {node.status.value}"
            f" depth={node.depth}{result}",
        )
        lines.extend(render_hierarchy_lines(node.children, indent=indent + 1))
    return lines


@contextmanager
def _progress_tracker(settings: Settings) -> Iterator[ProgressTracker]:
    repository = ProgressRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield ProgressTracker(repository)
    finally:
        repository.close()
