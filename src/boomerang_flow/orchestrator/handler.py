"""Dispatch of parsed worker directives to the controller."""

from __future__ import annotations

import logging
from typing import Protocol

from boomerang_flow.orchestrator.directives import DirectiveParser, RegexDirectiveParser
from boomerang_flow.orchestrator.errors import OrchestrationToolError
from boomerang_flow.orchestrator.models import (
    AttemptCompletionParameters,
    CompleteTaskRequest,
    CreateSubtaskRequest,
    DirectiveType,
    NewTaskParameters,
    ToolCall,
)

logger = logging.getLogger(__name__)


class DirectiveSink(Protocol):
    """Controller side receiving delegation and completion requests."""

    def request_subtask(self, parent_id: str, request: CreateSubtaskRequest) -> None:
        """Queue creation of a child task under ``parent_id``."""

    def request_completion(self, task_id: str, request: CompleteTaskRequest) -> None:
        """Queue completion of ``task_id``."""


class OrchestrationHandler:
    """Parse worker output and forward directives to a bound controller.

    Handlers acknowledge immediately; the controller applies the request
    later on its own flow, so the real outcome is asynchronous.
    """

    def __init__(
        self,
        parser: DirectiveParser | None = None,
        *,
        sink: DirectiveSink | None = None,
    ) -> None:
        self.parser = parser or RegexDirectiveParser()
        self._sink = sink

    def bind(self, sink: DirectiveSink) -> None:
        self._sink = sink

    def has_orchestration_tools(self, text: str) -> bool:
        return self.parser.has_directives(text)

    def parse_output(self, text: str) -> list[ToolCall]:
        return self.parser.parse(text)

    def process_tool_calls(self, task_id: str, calls: list[ToolCall]) -> list[str]:
        """Execute calls in order; each yields one response line."""

        responses: list[str] = []
        for call in calls:
            try:
                responses.append(self._dispatch(task_id, call))
            except Exception as error:  # noqa: BLE001
                tool_error = OrchestrationToolError(str(error), task_id=task_id)
                logger.error(
                    "Directive %s from task %s failed: %s",
                    call.type.value,
                    task_id,
                    tool_error,
                )
                responses.append(f"Error executing {call.type.value}: {tool_error}")
        return responses

    def handle_new_task(self, task_id: str, params: NewTaskParameters) -> str:
        logger.info(
            "Task %s requests %s subtask: %s",
            task_id,
            params.mode,
            params.instruction,
        )
        self._require_sink().request_subtask(
            task_id,
            CreateSubtaskRequest(
                mode=params.mode,
                instruction=params.instruction,
                tools=params.tools,
                max_turns=params.max_turns,
            ),
        )
        return (
            f'Task delegation request sent. Creating {params.mode} subtask: "{params.instruction}"'
        )

    def handle_attempt_completion(self, task_id: str, params: AttemptCompletionParameters) -> str:
        logger.info("Task %s reports completion: %s", task_id, params.result)
        self._require_sink().request_completion(
            task_id,
            CompleteTaskRequest(result=params.result, summary=params.summary),
        )
        return f"Task completed successfully. Result: {params.result}"

    def _dispatch(self, task_id: str, call: ToolCall) -> str:
        if call.type is DirectiveType.NEW_TASK and isinstance(call.parameters, NewTaskParameters):
            return self.handle_new_task(task_id, call.parameters)
        if call.type is DirectiveType.ATTEMPT_COMPLETION and isinstance(
            call.parameters,
            AttemptCompletionParameters,
        ):
            return self.handle_attempt_completion(task_id, call.parameters)
        return f"Invalid tool call: {call.type.value} with invalid parameters"

    def _require_sink(self) -> DirectiveSink:
        if self._sink is None:
            raise OrchestrationToolError("No controller bound to orchestration handler")
        return self._sink
