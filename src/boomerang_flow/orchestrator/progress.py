"""Durable progress ledger keyed by task id."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, SQLModel, col, select

from boomerang_flow.orchestrator.models import ProgressEntry, ProgressStatus
from boomerang_flow.storage.common import build_sqlite_engine, ensure_utc, utc_now
from boomerang_flow.storage.sqlmodel_models import TaskProgress

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = frozenset({ProgressStatus.RUNNING.value, ProgressStatus.WAITING.value})
_FINISHED_STATUSES = frozenset({ProgressStatus.COMPLETED.value, ProgressStatus.FAILED.value})


class ProgressRepository:
    """Progress persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine, tables=[TaskProgress.__table__])  # type: ignore[list-item]

    def close(self) -> None:
        self.engine.dispose()

    def get(self, agent_id: str) -> ProgressEntry | None:
        with Session(self.engine) as session:
            row = session.get(TaskProgress, agent_id)
            return _to_entry(row) if row is not None else None

    def list_all(self) -> list[ProgressEntry]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskProgress).order_by(col(TaskProgress.last_update).asc()),
            ).all()
            return [_to_entry(row) for row in rows]

    def upsert(self, entry: ProgressEntry) -> None:
        with Session(self.engine) as session:
            row = session.get(TaskProgress, entry.agent_id)
            if row is None:
                row = TaskProgress(agent_id=entry.agent_id, last_update=entry.last_update)
            row.name = entry.name
            row.status = entry.status
            row.progress = entry.progress
            row.current_task = entry.current_task
            row.last_update = entry.last_update
            session.add(row)
            session.commit()

    def delete(self, agent_ids: list[str]) -> int:
        if not agent_ids:
            return 0
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(TaskProgress).where(col(TaskProgress.agent_id).in_(agent_ids)),
            )
            session.commit()
            return result.rowcount or 0

    def clear(self) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(TaskProgress))
            session.commit()


class ProgressTracker:
    """Upsert and query per-task progress records.

    Writes are last-writer-wins; the single controller flow is the only
    writer during a session.
    """

    def __init__(
        self,
        repository: ProgressRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self._clock = clock

    def update_progress(
        self,
        agent_id: str,
        *,
        name: str | None = None,
        status: ProgressStatus | str | None = None,
        progress: int | None = None,
        current_task: str | None = None,
    ) -> ProgressEntry:
        """Merge the given fields into the record; ``None`` keeps the stored value."""

        existing = self.repository.get(agent_id)
        status_value = status.value if isinstance(status, ProgressStatus) else status
        entry = ProgressEntry(
            agent_id=agent_id,
            name=_pick(name, existing.name if existing else None, "unknown"),
            status=_pick(
                status_value,
                existing.status if existing else None,
                ProgressStatus.UNKNOWN.value,
            ),
            progress=_clamp(
                progress if progress is not None else (existing.progress if existing else 0),
            ),
            current_task=(
                current_task
                if current_task is not None
                else (existing.current_task if existing else None)
            ),
            last_update=self._clock(),
        )
        self.repository.upsert(entry)
        return entry

    def remove_agent(self, agent_id: str) -> None:
        self.repository.delete([agent_id])

    def get_progress(self, agent_id: str) -> ProgressEntry | None:
        return self.repository.get(agent_id)

    def get_all_progress(self) -> list[ProgressEntry]:
        return self.repository.list_all()

    def get_active_agents(self) -> list[ProgressEntry]:
        return [entry for entry in self.get_all_progress() if entry.status in _ACTIVE_STATUSES]

    def get_completed_agents(self) -> list[ProgressEntry]:
        return [
            entry
            for entry in self.get_all_progress()
            if entry.status == ProgressStatus.COMPLETED.value
        ]

    def get_failed_agents(self) -> list[ProgressEntry]:
        return [
            entry for entry in self.get_all_progress() if entry.status == ProgressStatus.FAILED.value
        ]

    def get_overall_progress(self) -> float:
        entries = self.get_all_progress()
        if not entries:
            return 0.0
        return sum(entry.progress for entry in entries) / len(entries)

    def is_all_completed(self) -> bool:
        entries = self.get_all_progress()
        return bool(entries) and all(entry.status in _FINISHED_STATUSES for entry in entries)

    def has_failures(self) -> bool:
        return any(entry.status == ProgressStatus.FAILED.value for entry in self.get_all_progress())

    def remove_stale_entries(self, max_age: timedelta = timedelta(hours=1)) -> int:
        """Delete records not updated within ``max_age``; returns the number removed."""

        now = self._clock()
        stale = [
            entry.agent_id
            for entry in self.get_all_progress()
            if now - entry.last_update > max_age
        ]
        removed = self.repository.delete(stale)
        if removed:
            logger.info("Removed %d stale progress entries", removed)
        return removed

    def clear(self) -> None:
        self.repository.clear()


def _to_entry(row: TaskProgress) -> ProgressEntry:
    return ProgressEntry(
        agent_id=row.agent_id,
        name=row.name,
        status=row.status,
        progress=row.progress,
        current_task=row.current_task,
        last_update=ensure_utc(row.last_update),
    )


def _pick(value: str | None, existing: str | None, default: str) -> str:
    if value is not None:
        return value
    if existing is not None:
        return existing
    return default


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))
