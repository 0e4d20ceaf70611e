"""Local scripted agent for CLI backend integration tests.

Reads the task instruction from the first stdin line and reacts to a few
phrases inside the task text:

- ``delegate to <mode>: <instruction>`` emits a ``new_task`` directive and
  completes with the child's result once it arrives on stdin;
- ``reply <text>`` completes with ``<text>``;
- ``reply <text> and exit`` completes with ``<text>`` and exits 0 at once,
  without waiting for stdin to close;
- ``fail with exit code <n>`` exits with ``<n>`` without completing;
- ``stay silent`` prints nothing and waits for stdin to close.

Anything else completes with ``<task> done``. After completing, the agent
keeps reading stdin until it is closed, then exits 0.
"""

from __future__ import annotations

import argparse
import os
import re
import sys
from typing import TextIO

_TASK_TEXT = re.compile(r"THE TASK:\s*(.+?)\s+-\s+Execute this task", re.DOTALL)
_DELEGATE = re.compile(r"delegate to (\w+):\s*(.+)", re.IGNORECASE)
_REPLY_AND_EXIT = re.compile(r"reply\s+(.+?)\s+and exit$", re.IGNORECASE)
_REPLY = re.compile(r"reply\s+(.+)", re.IGNORECASE)
_FAIL = re.compile(r"fail with exit code (\d+)", re.IGNORECASE)
_SUBTASK_RESULT = re.compile(r"^\[Subtask completed\] Result:\s*(.*)$")


def main(argv: list[str] | None = None) -> int:
    """Run the scripted conversation over stdin/stdout."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--max-turns", type=int, default=10)
    parser.add_argument("--tools", default="")
    args, _ = parser.parse_known_args(argv)

    first_line = sys.stdin.readline()
    if not first_line:
        return 0
    match = _TASK_TEXT.search(first_line)
    task = match.group(1).strip() if match else first_line.strip()
    mode = os.getenv("BOOMERANG_MODE", "agent")

    if "stay silent" in task.lower():
        _drain(sys.stdin)
        return 0

    _say(f"Starting {mode} turn budget {args.max_turns}")
    _say(f"Task: {task}")

    if (fail := _FAIL.search(task)) is not None:
        _say("Processing failed")
        return int(fail.group(1))

    if (delegate := _DELEGATE.search(task)) is not None:
        child_mode, child_instruction = delegate.group(1), delegate.group(2).strip()
        _say(f"new_task {{mode: {child_mode}, instruction: {child_instruction}}}")
        result = _await_subtask_result(sys.stdin)
        if result is None:
            return 0
        _say("Completed delegated work")
        _say(f"attempt_completion {{result: {result}}}")
        _drain(sys.stdin)
        return 0

    if (reply_and_exit := _REPLY_AND_EXIT.search(task)) is not None:
        _say(f"attempt_completion {{result: {reply_and_exit.group(1).strip()}}}")
        return 0

    reply = _REPLY.search(task)
    result = reply.group(1).strip() if reply else f"{task} done"
    _say("Working")
    _say(f"attempt_completion {{result: {result}}}")
    _drain(sys.stdin)
    return 0


def _await_subtask_result(stream: TextIO) -> str | None:
    for line in stream:
        match = _SUBTASK_RESULT.match(line.strip())
        if match is not None:
            return match.group(1)
    return None


def _drain(stream: TextIO) -> None:
    for _ in stream:
        pass


def _say(text: str) -> None:
    print(text, flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
