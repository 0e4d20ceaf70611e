"""SQLModel ORM tables for the progress ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class TaskProgress(SQLModel, table=True):
    __tablename__ = "task_progress"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_progress_status", "status"),)

    agent_id: str = Field(primary_key=True)
    name: str = Field(default="unknown")
    status: str = Field(default="unknown")
    progress: int = Field(default=0)
    current_task: str | None = Field(default=None, sa_column=Column(Text))
    last_update: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
