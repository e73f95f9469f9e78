"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel

OPEN_TASK_STATUSES_SQL = "status IN ('pending', 'processing')"


class TaskQueueRow(SQLModel, table=True):
    __tablename__ = "task_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_queue_claim", "status", "priority", "scheduled_for", "created_at"),
        Index("idx_task_queue_user_status", "user_id", "status"),
        Index(
            "uq_task_queue_open_dedupe_key",
            "dedupe_key",
            unique=True,
            sqlite_where=text(OPEN_TASK_STATUSES_SQL),
        ),
    )

    task_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    task_type: str = Field(index=True)
    payload_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    status: str = Field(index=True)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_kind: str | None = Field(default=None)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=2)
    dedupe_key: str
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("task_queue.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(index=True)
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskHistoryRow(SQLModel, table=True):
    __tablename__ = "task_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_history_user_completed", "user_id", "completed_at"),
        Index("idx_task_history_type_status", "task_type", "status", "completed_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    original_task_id: str = Field(index=True)
    user_id: str
    task_type: str
    priority: int
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    failure_kind: str | None = None
    retry_count: int
    max_retries: int
    dedupe_key: str
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    duration_ms: int | None = None
    archived_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class UserSettingsRow(SQLModel, table=True):
    __tablename__ = "user_settings"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    focus_calculation_enabled: bool = Field(default=True)
    focus_calculation_interval_ms: int = Field(default=30_000)
    attention_summarization_enabled: bool = Field(default=False)
    attention_summarization_interval_ms: int = Field(default=60_000)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
