"""Runtime configuration for the orchestration session and its workers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from boomerang_flow.orchestrator.orchestrator import DEFAULT_WORKER_COMMAND
from boomerang_flow.orchestrator.safety import SafetyLimits


@dataclass(slots=True)
class OrchestratorSettings:
    """Task hierarchy limits and controller pacing."""

    max_depth: int = 5
    max_children: int = 10
    max_total_tasks: int = 50
    max_duration_seconds: int = 1_800
    stack_max_depth: int = 10
    default_max_turns: int = 10
    orchestrator_max_turns: int = 50
    poll_interval_seconds: float = 1.0

    def safety_limits(self) -> SafetyLimits:
        return SafetyLimits(
            max_depth=self.max_depth,
            max_children=self.max_children,
            max_total_tasks=self.max_total_tasks,
            max_duration_seconds=float(self.max_duration_seconds),
        )


@dataclass(slots=True)
class WorkerSettings:
    """Worker process launch settings."""

    command_template: str = DEFAULT_WORKER_COMMAND
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 2
    workspace_dir: Path = Path(".boomerang-flow/workspace")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".boomerang_flow.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_file: Path | None = None
    verbose: bool = False
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_file = os.getenv("BOOMERANG_LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("BOOMERANG_DB_PATH", ".boomerang_flow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BOOMERANG_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_file=Path(log_file) if log_file else None,
            verbose=_env_bool("BOOMERANG_VERBOSE", default=False),
            orchestrator=OrchestratorSettings(
                max_depth=int(os.getenv("BOOMERANG_MAX_DEPTH", "5")),
                max_children=int(os.getenv("BOOMERANG_MAX_CHILDREN", "10")),
                max_total_tasks=int(os.getenv("BOOMERANG_MAX_TOTAL_TASKS", "50")),
                max_duration_seconds=int(os.getenv("BOOMERANG_MAX_DURATION_SECONDS", "1800")),
                stack_max_depth=int(os.getenv("BOOMERANG_STACK_MAX_DEPTH", "10")),
                default_max_turns=int(os.getenv("BOOMERANG_DEFAULT_MAX_TURNS", "10")),
                orchestrator_max_turns=int(os.getenv("BOOMERANG_ORCHESTRATOR_MAX_TURNS", "50")),
                poll_interval_seconds=float(
                    os.getenv("BOOMERANG_POLL_INTERVAL_SECONDS", "1.0"),
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv("BOOMERANG_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                timeout_seconds=int(os.getenv("BOOMERANG_WORKER_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("BOOMERANG_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "2"),
                ),
                workspace_dir=Path(
                    os.getenv("BOOMERANG_WORKSPACE_DIR", ".boomerang-flow/workspace"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or worker settings are unusable."""

        orchestrator = self.orchestrator
        for name, value in (
            ("BOOMERANG_MAX_DEPTH", orchestrator.max_depth),
            ("BOOMERANG_MAX_CHILDREN", orchestrator.max_children),
            ("BOOMERANG_MAX_TOTAL_TASKS", orchestrator.max_total_tasks),
            ("BOOMERANG_MAX_DURATION_SECONDS", orchestrator.max_duration_seconds),
            ("BOOMERANG_STACK_MAX_DEPTH", orchestrator.stack_max_depth),
            ("BOOMERANG_DEFAULT_MAX_TURNS", orchestrator.default_max_turns),
            ("BOOMERANG_ORCHESTRATOR_MAX_TURNS", orchestrator.orchestrator_max_turns),
            ("BOOMERANG_WORKER_TIMEOUT_SECONDS", self.worker.timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if orchestrator.poll_interval_seconds <= 0:
            raise ValueError("BOOMERANG_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("BOOMERANG_WORKER_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if not self.worker.command_template.strip():
            raise ValueError("BOOMERANG_WORKER_COMMAND must not be empty.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
