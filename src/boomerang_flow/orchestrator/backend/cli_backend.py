"""Subprocess-based backend running one CLI agent per task."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from typing import IO

from boomerang_flow.orchestrator.backend.base import (
    ExitCallback,
    OutputCallback,
    WorkerSpawnRequest,
    WorkerStatus,
)
from boomerang_flow.orchestrator.errors import ProcessCommunicationError, ProcessStartError

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

# Directives are parsed from worker output, so agents must not get them as
# real builtin tools.
_ORCHESTRATION_TOOL_NAMES = frozenset({"new_task", "attempt_completion"})
_WATCH_INTERVAL_SECONDS = 0.1


class CliWorkerHandle:
    """Handle over a `subprocess.Popen` worker with line-oriented pipes."""

    def __init__(
        self,
        *,
        task_id: str,
        process: subprocess.Popen[str],
        timeout_seconds: int,
        graceful_shutdown_seconds: int | None,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> None:
        self.task_id = task_id
        self.status = WorkerStatus.STARTING
        self._process = process
        self._timeout_seconds = timeout_seconds
        self._graceful_seconds = max(0, graceful_shutdown_seconds or 0)
        self._on_output = on_output
        self._on_exit = on_exit
        self._stdin_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._exited = threading.Event()
        self._readers = [
            threading.Thread(
                target=self._read_stream,
                args=(process.stdout, "stdout"),
                name=f"{task_id}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._read_stream,
                args=(process.stderr, "stderr"),
                name=f"{task_id}-stderr",
                daemon=True,
            ),
        ]
        self._watcher = threading.Thread(
            target=self._watch,
            name=f"{task_id}-watch",
            daemon=True,
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid

    def start(self) -> None:
        for reader in self._readers:
            reader.start()
        self._watcher.start()
        self.status = WorkerStatus.RUNNING

    def send(self, message: str) -> None:
        stdin = self._process.stdin
        if stdin is None or self._exited.is_set():
            raise ProcessCommunicationError(
                "Worker stdin is not available",
                task_id=self.task_id,
            )
        try:
            with self._stdin_lock:
                stdin.write(message + "\n")
                stdin.flush()
        except (OSError, ValueError) as error:
            raise ProcessCommunicationError(
                f"Failed to write to worker: {error}",
                task_id=self.task_id,
            ) from error

    def terminate(self) -> None:
        if self._exited.is_set() or self._stop_requested.is_set():
            return
        self._stop_requested.set()
        self._close_stdin()

    def is_alive(self) -> bool:
        return not self._exited.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the exit callback has run; returns False on timeout."""

        return self._exited.wait(timeout)

    def _read_stream(self, stream: IO[str] | None, name: str) -> None:
        if stream is None:
            return
        try:
            for line in stream:
                self._on_output(line.rstrip("\r\n"), name)
        except (OSError, ValueError):
            logger.debug("Worker %s %s stream closed while reading", self.task_id, name)
        finally:
            stream.close()

    def _watch(self) -> None:
        start_monotonic = time.monotonic()
        shutdown_deadline: float | None = None
        timed_out = False

        while True:
            returncode = self._process.poll()
            if returncode is not None:
                break

            now = time.monotonic()
            if now - start_monotonic >= self._timeout_seconds:
                logger.warning(
                    "Worker %s exceeded %ss timeout; terminating",
                    self.task_id,
                    self._timeout_seconds,
                )
                _terminate_process(self._process)
                timed_out = True
                break

            if self._stop_requested.is_set():
                if shutdown_deadline is None:
                    shutdown_deadline = now + self._graceful_seconds
                if now >= shutdown_deadline:
                    _terminate_process(self._process)
                    break

            time.sleep(_WATCH_INTERVAL_SECONDS)

        for reader in self._readers:
            reader.join()
        self._close_stdin()
        exit_code = TIMEOUT_EXIT_CODE if timed_out else self._process.wait()
        self.status = WorkerStatus.EXITED
        self._exited.set()
        logger.debug("Worker %s exited with code %s", self.task_id, exit_code)
        self._on_exit(exit_code, timed_out)

    def _close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None:
            return
        with self._stdin_lock:
            try:
                stdin.close()
            except OSError:
                logger.debug("Worker %s stdin already closed", self.task_id)


class CliWorkerBackend:
    """Execute the configured agent command template once per task."""

    def spawn(
        self,
        request: WorkerSpawnRequest,
        *,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ) -> CliWorkerHandle:
        run_args = _build_run_args(
            command_template=request.command_template,
            task_id=request.task_id,
            mode=request.mode,
            max_turns=request.max_turns,
            tools=request.tools,
        )

        env = os.environ.copy()
        env["BOOMERANG_TASK_ID"] = request.task_id
        env["BOOMERANG_PARENT_ID"] = request.parent_id or ""
        env["BOOMERANG_MODE"] = request.mode

        if request.workdir is not None:
            request.workdir.mkdir(parents=True, exist_ok=True)

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                cwd=request.workdir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise ProcessStartError(
                f"Worker command not found: {run_args[0]}",
                task_id=request.task_id,
                retryable=False,
            ) from error
        except OSError as error:
            raise ProcessStartError(
                f"Worker failed to start: {error}",
                task_id=request.task_id,
                retryable=True,
            ) from error

        handle = CliWorkerHandle(
            task_id=request.task_id,
            process=process,
            timeout_seconds=request.timeout_seconds,
            graceful_shutdown_seconds=request.graceful_shutdown_seconds,
            on_output=on_output,
            on_exit=on_exit,
        )
        handle.start()
        logger.info(
            "Started %s worker for task %s (pid %s)",
            request.mode,
            request.task_id,
            process.pid,
        )
        return handle


def builtin_tools(tools: tuple[str, ...]) -> tuple[str, ...]:
    """Tools handed to the agent itself, minus orchestration directives."""

    return tuple(tool for tool in tools if tool not in _ORCHESTRATION_TOOL_NAMES)


def _build_run_args(
    *,
    command_template: str,
    task_id: str,
    mode: str,
    max_turns: int,
    tools: tuple[str, ...],
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ProcessStartError(
            "Worker command template is empty.",
            task_id=task_id,
            retryable=False,
        )

    try:
        rendered = stripped.format(
            task_id=shlex.quote(task_id),
            mode=shlex.quote(mode),
            max_turns=shlex.quote(str(max_turns)),
            tools=shlex.quote(",".join(builtin_tools(tools))),
        )
    except (KeyError, IndexError) as error:
        raise ProcessStartError(
            f"Unsupported command template placeholder: {error}",
            task_id=task_id,
            retryable=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessStartError(
            "Worker command template rendered empty command.",
            task_id=task_id,
            retryable=False,
        )
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
