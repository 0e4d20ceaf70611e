"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from boomerang_flow.orchestrator.orchestrator import TaskOrchestrator
from boomerang_flow.orchestrator.progress import ProgressRepository, ProgressTracker

from .fakes import ECHO_AGENT_COMMAND_TEMPLATE, FakeWorkerBackend


@pytest.fixture()
def progress_repository(tmp_path: Path) -> Iterator[ProgressRepository]:
    repository = ProgressRepository(tmp_path / "progress.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def progress_tracker(progress_repository: ProgressRepository) -> ProgressTracker:
    return ProgressTracker(progress_repository)


@pytest.fixture()
def fake_backend() -> FakeWorkerBackend:
    return FakeWorkerBackend()


@pytest.fixture()
def orchestrator(
    fake_backend: FakeWorkerBackend,
    progress_tracker: ProgressTracker,
) -> Iterator[TaskOrchestrator]:
    instance = TaskOrchestrator(
        backend=fake_backend,
        progress=progress_tracker,
        poll_interval_seconds=0.05,
    )
    yield instance
    instance.close()


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> str:
    """Point BOOMERANG_WORKER_COMMAND at the scripted echo agent."""

    monkeypatch.setenv("BOOMERANG_WORKER_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("BOOMERANG_WORKSPACE_DIR", str(tmp_path / "workspace"))
    monkeypatch.setenv("BOOMERANG_WORKER_TIMEOUT_SECONDS", "60")
    monkeypatch.setenv("BOOMERANG_POLL_INTERVAL_SECONDS", "0.05")
    return ECHO_AGENT_COMMAND_TEMPLATE
