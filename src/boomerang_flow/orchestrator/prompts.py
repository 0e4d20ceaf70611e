"""Prompt templates written to worker processes."""

from __future__ import annotations

from dataclasses import dataclass

ORCHESTRATOR_MODE = "orchestrator"

ORCHESTRATOR_PROMPT = (
    "ONLY respond with EXACTLY this format: "
    'new_task {mode: "coder", instruction: "task description"} '
    "- NO other text, NO explanations, NO tools. Just the exact format."
)


@dataclass(slots=True, frozen=True)
class ModeDefinition:
    """Role description for one worker mode."""

    name: str
    role_definition: str
    custom_instructions: str = ""


DEFAULT_MODES: dict[str, ModeDefinition] = {
    mode.name: mode
    for mode in (
        ModeDefinition(
            name=ORCHESTRATOR_MODE,
            role_definition="You break complex objectives into subtasks and delegate them.",
        ),
        ModeDefinition(
            name="coder",
            role_definition="You write and modify code to implement the requested change.",
            custom_instructions="Keep changes minimal and consistent with the codebase.",
        ),
        ModeDefinition(
            name="researcher",
            role_definition="You investigate the codebase and gather facts for other modes.",
        ),
        ModeDefinition(
            name="tester",
            role_definition="You write and run tests and report failures precisely.",
        ),
        ModeDefinition(
            name="reviewer",
            role_definition="You review changes for defects, risks, and style problems.",
        ),
        ModeDefinition(
            name="debugger",
            role_definition="You reproduce failures and locate their root cause.",
        ),
        ModeDefinition(
            name="architect",
            role_definition="You design module boundaries and data flow before coding starts.",
        ),
        ModeDefinition(
            name="documenter",
            role_definition="You write user and developer documentation.",
        ),
        ModeDefinition(
            name="analyzer",
            role_definition="You analyze code and data and summarize findings.",
        ),
    )
}


class PromptManager:
    """Render instructions, completion notices, and tool acknowledgements."""

    def __init__(self, modes: dict[str, ModeDefinition] | None = None) -> None:
        self.modes = dict(DEFAULT_MODES if modes is None else modes)

    def mode_prompt(self, mode: str) -> str:
        if mode == ORCHESTRATOR_MODE:
            return ORCHESTRATOR_PROMPT
        definition = self.modes.get(mode)
        if definition is None:
            return f'You are operating in "{mode}" mode. Use attempt_completion when your task is complete.'
        parts = [f'You are in "{mode}" mode.', definition.role_definition]
        if definition.custom_instructions:
            parts.append(definition.custom_instructions)
        parts.append("When the task is complete, use the attempt_completion tool.")
        return " ".join(parts)

    def build_task_instruction(self, mode: str, instruction: str) -> str:
        """Full first message sent to a freshly started worker."""

        return (
            f"{self.mode_prompt(mode)} THE TASK: {instruction} - Execute this task immediately "
            "using new_task to delegate to appropriate specialized modes or attempt_completion "
            "if you can do it yourself."
        )

    def completion_message(self, result: str) -> str:
        return f"[Subtask completed] Result: {result}"

    def tool_response(self, response: str) -> str:
        return f"[TOOL_RESPONSE] {response}"
