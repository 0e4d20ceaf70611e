from __future__ import annotations

from pathlib import Path

import allure
import pytest

from boomerang_flow.config import OrchestratorSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_match_documented_limits(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BOOMERANG_DB_PATH",
        "BOOMERANG_MAX_DEPTH",
        "BOOMERANG_MAX_CHILDREN",
        "BOOMERANG_MAX_TOTAL_TASKS",
        "BOOMERANG_MAX_DURATION_SECONDS",
        "BOOMERANG_WORKER_COMMAND",
        "BOOMERANG_LOG_FILE",
        "BOOMERANG_VERBOSE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".boomerang_flow.db")
    assert settings.log_file is None
    assert settings.verbose is False
    limits = settings.orchestrator.safety_limits()
    assert limits.max_depth == 5
    assert limits.max_children == 10
    assert limits.max_total_tasks == 50
    assert limits.max_duration_seconds == 1800.0
    assert settings.orchestrator.stack_max_depth == 10
    assert settings.orchestrator.orchestrator_max_turns == 50
    assert settings.worker.command_template == "goose session --max-turns {max_turns}"
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BOOMERANG_MAX_DEPTH", "2")
    monkeypatch.setenv("BOOMERANG_MAX_TOTAL_TASKS", "7")
    monkeypatch.setenv("BOOMERANG_POLL_INTERVAL_SECONDS", "0.25")
    monkeypatch.setenv("BOOMERANG_WORKER_COMMAND", "agent --turns {max_turns}")
    monkeypatch.setenv("BOOMERANG_WORKSPACE_DIR", str(tmp_path / "ws"))
    monkeypatch.setenv("BOOMERANG_LOG_FILE", str(tmp_path / "run.log"))
    monkeypatch.setenv("BOOMERANG_VERBOSE", "yes")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.orchestrator.max_depth == 2
    assert settings.orchestrator.max_total_tasks == 7
    assert settings.orchestrator.poll_interval_seconds == 0.25
    assert settings.worker.command_template == "agent --turns {max_turns}"
    assert settings.worker.workspace_dir == tmp_path / "ws"
    assert settings.log_file == tmp_path / "run.log"
    assert settings.verbose is True


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BOOMERANG_VERBOSE", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for BOOMERANG_VERBOSE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(orchestrator=OrchestratorSettings(max_depth=0)), "BOOMERANG_MAX_DEPTH"),
        (
            Settings(orchestrator=OrchestratorSettings(max_total_tasks=-1)),
            "BOOMERANG_MAX_TOTAL_TASKS",
        ),
        (
            Settings(orchestrator=OrchestratorSettings(poll_interval_seconds=0)),
            "BOOMERANG_POLL_INTERVAL_SECONDS",
        ),
        (
            Settings(worker=WorkerSettings(graceful_shutdown_seconds=-1)),
            "BOOMERANG_WORKER_GRACEFUL_SHUTDOWN_SECONDS",
        ),
        (Settings(worker=WorkerSettings(command_template="  ")), "BOOMERANG_WORKER_COMMAND"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
