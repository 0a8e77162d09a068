"""SQLModel ORM tables for task state and the event log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "status", "updated_at"),
        Index("idx_tasks_session", "session_id", "user_id", "created_at"),
    )

    id: str = Field(primary_key=True)
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id", ondelete="SET NULL"), index=True),
    )
    user_id: str = Field(index=True)
    session_id: str = Field(index=True)
    task_type: str = Field(index=True)
    input_json: str = Field(sa_column=Column(Text, nullable=False))
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    retry_count: int = Field(default=0)
    attempt: int = Field(default=0)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "task_id",
            "attempt",
            "event_key",
            name="uq_task_events_task_attempt_key",
        ),
        Index("idx_task_events_session_time", "session_id", "user_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    session_id: str = Field(index=True)
    user_id: str = Field(index=True)
    attempt: int = Field(default=0)
    event_type: str = Field(index=True)
    node_key: str | None = None
    event_key: str
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
