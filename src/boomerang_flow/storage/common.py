"""SQLite engine policy and timestamp helpers for the progress ledger."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# Applied to every new connection, before busy_timeout.
LEDGER_PRAGMAS: tuple[tuple[str, str], ...] = (
    ("journal_mode", "WAL"),
    ("synchronous", "NORMAL"),
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo; stored values are always UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = 5000) -> Engine:
    """Engine for a ledger file, creating its directory on first use.

    Connections are not pooled: the CLI process and worker reader threads
    open short sessions, and each new connection gets the ledger pragmas.
    """

    db_path.parent.mkdir(parents=True, exist_ok=True)
    busy_timeout_ms = max(1, busy_timeout_ms)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _apply_ledger_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def _apply_ledger_pragmas(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = connection.cursor()
    try:
        for name, value in LEDGER_PRAGMAS:
            cursor.execute(f"PRAGMA {name} = {value}")
        cursor.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    finally:
        cursor.close()
