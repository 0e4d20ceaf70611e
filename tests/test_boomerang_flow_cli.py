from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from boomerang_flow import __version__
from boomerang_flow.main import boomerang_flow
from boomerang_flow.orchestrator.models import ProgressStatus
from boomerang_flow.orchestrator.progress import ProgressRepository, ProgressTracker

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Run and Status Commands"),
]


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(boomerang_flow, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_status_reports_empty_ledger(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(boomerang_flow, ["status", "--db-path", str(tmp_path / "cli.db")])

    assert result.exit_code == 0
    assert "No task progress recorded." in result.output


def test_status_lists_records_and_prunes(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    repository = ProgressRepository(db_path)
    repository.init_schema()
    tracker = ProgressTracker(repository)
    tracker.update_progress(
        "task-1",
        name="coder-root",
        status=ProgressStatus.COMPLETED,
        progress=100,
        current_task="Finalizing",
    )
    tracker.update_progress("task-2", name="tester-subtask", status=ProgressStatus.FAILED)
    repository.close()

    runner = CliRunner()
    table = runner.invoke(boomerang_flow, ["status", "--db-path", str(db_path)])
    assert table.exit_code == 0
    assert "tasks=2 overall=50.0% all_completed=True has_failures=True" in table.output
    assert "- task-1 coder-root status=completed progress=100% - Finalizing" in table.output

    as_json = runner.invoke(
        boomerang_flow,
        ["status", "--db-path", str(db_path), "--format", "json"],
    )
    assert as_json.exit_code == 0
    payload = json.loads(as_json.output[as_json.output.index("{") :])
    assert {task["task_id"] for task in payload["tasks"]} == {"task-1", "task-2"}

    cleared = runner.invoke(boomerang_flow, ["status", "--db-path", str(db_path), "--clear"])
    assert cleared.exit_code == 0
    assert "Progress ledger cleared." in cleared.output
    assert "No task progress recorded." in cleared.output


def test_run_delegates_and_reports_hierarchy(tmp_path: Path, echo_agent: str) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    result = runner.invoke(
        boomerang_flow,
        [
            "run",
            "delegate to tester: reply ok",
            "--mode",
            "coder",
            "--db-path",
            str(db_path),
            "--timeout",
            "60",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "status=completed" in result.output
    assert "Result: ok" in result.output
    assert "[coder] completed depth=0 result=ok" in result.output
    assert "[tester] completed depth=1 result=ok" in result.output

    status = runner.invoke(boomerang_flow, ["status", "--db-path", str(db_path)])
    assert "coder-root status=completed progress=100%" in status.output
    assert "tester-subtask status=completed progress=100%" in status.output


def test_run_reports_failed_root_with_nonzero_exit(tmp_path: Path, echo_agent: str) -> None:
    runner = CliRunner()

    result = runner.invoke(
        boomerang_flow,
        [
            "run",
            "fail with exit code 2",
            "--mode",
            "coder",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--format",
            "json",
        ],
    )

    assert result.exit_code == 1
    assert "did not complete successfully" in result.output
    assert '"status": "failed"' in result.output
    assert '"mode": "coder"' in result.output


def test_run_rejects_invalid_configuration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BOOMERANG_MAX_DEPTH", "0")
    runner = CliRunner()

    result = runner.invoke(
        boomerang_flow,
        ["run", "anything", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 1
    assert "BOOMERANG_MAX_DEPTH must be > 0." in result.output
