"""Extraction of delegation/completion directives from free-form worker text.

Two equivalent surfaces are recognized::

    new_task {mode: coder, instruction: "write tests", maxTurns: 5}
    attempt_completion {result: done, summary: all green}

    <new_task><mode>coder</mode><instruction>write tests</instruction>
      <tools>read,write</tools><maxTurns>5</maxTurns></new_task>
    <attempt_completion><result>done</result><summary>..</summary></attempt_completion>

The inline form splits parameters on commas, so free text containing a comma
is truncated there. The tag form has no such limitation and is the only way
to pass a multi-item ``tools`` list.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from boomerang_flow.orchestrator.errors import DirectiveParseError
from boomerang_flow.orchestrator.models import (
    AttemptCompletionParameters,
    DirectiveType,
    NewTaskParameters,
    ToolCall,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 10

_INLINE_NEW_TASK = re.compile(r"new_task\s*\{([^}]+)\}", re.IGNORECASE)
_INLINE_COMPLETION = re.compile(r"attempt_completion\s*\{([^}]+)\}", re.IGNORECASE)
_TAG_NEW_TASK = re.compile(
    r"<new_task>\s*<mode>([^<]+)</mode>\s*<instruction>([^<]+)</instruction>"
    r"(?:\s*<tools>([^<]+)</tools>)?(?:\s*<maxTurns>([^<]+)</maxTurns>)?\s*</new_task>",
    re.IGNORECASE,
)
_TAG_COMPLETION = re.compile(
    r"<attempt_completion>\s*<result>([^<]+)</result>"
    r"(?:\s*<summary>([^<]+)</summary>)?\s*</attempt_completion>",
    re.IGNORECASE,
)
_INLINE_CHECK = re.compile(r"(?:new_task|attempt_completion)\s*\{")
_TAG_CHECK = re.compile(r"<(?:new_task|attempt_completion)>")
_SURROUNDING_QUOTES = re.compile(r"^[\"']|[\"']$")


class DirectiveParser(Protocol):
    """Turns worker text into ordered tool calls."""

    def has_directives(self, text: str) -> bool:
        """Cheap check run on every output chunk before a full parse."""

    def parse(self, text: str) -> list[ToolCall]:
        """Return every well-formed directive in ``text``; never raises."""


class RegexDirectiveParser:
    """Parser for the fixed inline and tag directive grammar."""

    def __init__(self, *, default_max_turns: int = DEFAULT_MAX_TURNS) -> None:
        self.default_max_turns = default_max_turns

    def has_directives(self, text: str) -> bool:
        return bool(_INLINE_CHECK.search(text) or _TAG_CHECK.search(text))

    def parse(self, text: str) -> list[ToolCall]:
        return self._parse_inline(text) + self._parse_tags(text)

    def _parse_inline(self, text: str) -> list[ToolCall]:
        matches = [(DirectiveType.NEW_TASK, match) for match in _INLINE_NEW_TASK.finditer(text)]
        matches.extend(
            (DirectiveType.ATTEMPT_COMPLETION, match)
            for match in _INLINE_COMPLETION.finditer(text)
        )
        matches.sort(key=lambda item: item[1].start())

        calls: list[ToolCall] = []
        for directive_type, match in matches:
            try:
                params = parse_inline_parameters(match.group(1))
                if directive_type is DirectiveType.NEW_TASK:
                    calls.append(self._new_task_call(params))
                else:
                    calls.append(_completion_call(params))
            except DirectiveParseError as error:
                logger.debug(
                    "Skipping malformed %s directive %r: %s",
                    directive_type.value,
                    match.group(0)[:200],
                    error,
                )
        return calls

    def _parse_tags(self, text: str) -> list[ToolCall]:
        matches = [(DirectiveType.NEW_TASK, match) for match in _TAG_NEW_TASK.finditer(text)]
        matches.extend(
            (DirectiveType.ATTEMPT_COMPLETION, match) for match in _TAG_COMPLETION.finditer(text)
        )
        matches.sort(key=lambda item: item[1].start())

        calls: list[ToolCall] = []
        for directive_type, match in matches:
            try:
                if directive_type is DirectiveType.NEW_TASK:
                    mode, instruction, tools, max_turns = match.groups()
                    params = {"mode": mode.strip(), "instruction": instruction.strip()}
                    if tools is not None:
                        params["tools"] = tools.strip()
                    if max_turns is not None:
                        params["maxTurns"] = max_turns.strip()
                    calls.append(self._new_task_call(params))
                else:
                    result, summary = match.groups()
                    params = {"result": result.strip()}
                    if summary is not None:
                        params["summary"] = summary.strip()
                    calls.append(_completion_call(params))
            except DirectiveParseError as error:
                logger.debug(
                    "Skipping malformed <%s> directive: %s",
                    directive_type.value,
                    error,
                )
        return calls

    def _new_task_call(self, params: dict[str, str]) -> ToolCall:
        mode = params.get("mode", "")
        instruction = params.get("instruction", "")
        if not mode or not instruction:
            raise DirectiveParseError("new_task requires both mode and instruction")

        raw_max_turns = params.get("maxTurns", "")
        if raw_max_turns:
            try:
                max_turns = int(raw_max_turns)
            except ValueError as error:
                raise DirectiveParseError(
                    f"maxTurns must be an integer, got {raw_max_turns!r}",
                ) from error
        else:
            max_turns = self.default_max_turns

        return ToolCall(
            type=DirectiveType.NEW_TASK,
            parameters=NewTaskParameters(
                mode=mode,
                instruction=instruction,
                tools=_split_tools(params.get("tools", "")),
                max_turns=max_turns,
            ),
        )


def parse_inline_parameters(raw: str) -> dict[str, str]:
    """Parse ``key: value, key: value`` into a dict, unquoting values."""

    params: dict[str, str] = {}
    for part in raw.split(","):
        colon = part.find(":")
        if colon <= 0:
            continue
        key = part[:colon].strip()
        if not key:
            continue
        value = _SURROUNDING_QUOTES.sub("", part[colon + 1 :].strip())
        params[key] = value
    return params


def _completion_call(params: dict[str, str]) -> ToolCall:
    result = params.get("result", "")
    if not result:
        raise DirectiveParseError("attempt_completion requires a result")
    return ToolCall(
        type=DirectiveType.ATTEMPT_COMPLETION,
        parameters=AttemptCompletionParameters(
            result=result,
            summary=params.get("summary") or None,
        ),
    )


def _split_tools(raw: str) -> tuple[str, ...]:
    return tuple(tool.strip() for tool in raw.split(",") if tool.strip())
