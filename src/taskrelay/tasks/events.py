"""Append-only event log of node and job lifecycle transitions."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskrelay.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from taskrelay.storage.models import TaskEventRow
from taskrelay.tasks.models import TaskEventType, TaskEventView, TaskView, build_event_key

logger = logging.getLogger(__name__)


class EventLog:
    """Event persistence sharing the task store's engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        session_id: str,
        user_id: str,
        attempt: int,
        event_type: TaskEventType,
        node_key: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> TaskEventView | None:
        """Insert one event; a replay of the same attempt is a no-op returning None."""

        event_key = build_event_key(event_type, node_key)
        with Session(self.engine) as session:
            row = TaskEventRow(
                task_id=task_id,
                session_id=session_id,
                user_id=user_id,
                attempt=attempt,
                event_type=event_type.value,
                node_key=node_key,
                event_key=event_key,
                payload_json=(
                    json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
                    if payload
                    else None
                ),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.debug(
                    "Duplicate event suppressed: task=%s attempt=%d key=%s",
                    task_id,
                    attempt,
                    event_key,
                )
                return None
            session.refresh(row)
            return _to_event_view(row)

    def record_task_event(
        self,
        task: TaskView,
        *,
        job_id: str,
        event_type: TaskEventType,
        node_key: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TaskEventView | None:
        """Record an event for `task` at its current attempt with the standard payload."""

        payload: dict[str, Any] = {
            "job_id": job_id,
            "task_id": task.id,
            "session_id": task.session_id,
            "task_type": task.task_type,
            "attempt": task.attempt,
        }
        if extra:
            payload.update(extra)
        return self.record(
            task_id=task.id,
            session_id=task.session_id,
            user_id=task.user_id,
            attempt=task.attempt,
            event_type=event_type,
            node_key=node_key,
            payload=payload,
        )

    def fetch_by_session(self, *, session_id: str, user_id: str) -> list[TaskEventView]:
        """Canonical progress timeline, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.session_id == session_id, TaskEventRow.user_id == user_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            return [_to_event_view(row) for row in rows]

    def fetch_by_task(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            return [_to_event_view(row) for row in rows]


def _to_event_view(row: TaskEventRow) -> TaskEventView:
    payload: dict[str, Any] = {}
    if row.payload_json:
        parsed = json.loads(row.payload_json)
        if isinstance(parsed, dict):
            payload = parsed
    return TaskEventView(
        id=row.id or 0,
        task_id=row.task_id,
        session_id=row.session_id,
        user_id=row.user_id,
        attempt=row.attempt,
        event_type=TaskEventType(row.event_type),
        node_key=row.node_key,
        event_key=row.event_key,
        created_at=to_utc_aware_datetime(row.created_at),
        payload=payload,
    )
