"""Persistent task store: CRUD plus the atomic claim."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import Session, col, select

from taskrelay.errors import TaskNotFoundError, TaskStateError
from taskrelay.storage.alembic_runner import upgrade_head
from taskrelay.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskrelay.storage.models import TaskRow
from taskrelay.tasks.models import CANCELLED_ERROR, TaskCreate, TaskStatus, TaskView

MAX_CHAIN_DEPTH = 10_000


@dataclass(slots=True)
class TaskCompletion:
    """Completed task together with the successors inserted in the same transaction."""

    task: TaskView
    next_tasks: list[TaskView]


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Every mutation of a task row is either the atomic claim or an UPDATE guarded
    by the expected current status (and, for the processor, the claimed attempt),
    so a worker that lost its lease can never overwrite a newer owner's result.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Insert one task, `pending` with zero retries unless overridden."""

        return self.enqueue_many([payload])[0]

    def enqueue_many(self, payloads: Sequence[TaskCreate]) -> list[TaskView]:
        """Insert several tasks in one transaction."""

        if not payloads:
            return []
        now = utc_now()
        with Session(self.engine) as session:
            rows = [_new_row(payload, now=now) for payload in payloads]
            session.add_all(rows)
            session.flush()
            views = [_to_task_view(row) for row in rows]
            session.commit()
        return views

    def claim(self, *, max_tasks: int, stale_after_seconds: int) -> list[TaskView]:
        """Atomically claim up to `max_tasks` pending or stale in-progress tasks.

        Single UPDATE ... WHERE id IN (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING.
        SQLite serializes writers, so the statement is indivisible there; the
        SKIP LOCKED subquery keeps the same guarantee on PostgreSQL.
        """

        if max_tasks <= 0:
            return []
        now = utc_now()
        claimable = _claimable(now=now, stale_after_seconds=stale_after_seconds)
        candidates = (
            sa_select(TaskRow.id)
            .where(claimable)
            .order_by(col(TaskRow.created_at).asc(), col(TaskRow.id).asc())
            .limit(max_tasks)
            .with_for_update(skip_locked=True)
        )
        return self._claim_where(and_(col(TaskRow.id).in_(candidates), claimable), now=now)

    def claim_by_id(self, task_id: str, *, stale_after_seconds: int) -> TaskView | None:
        """Atomically claim one task if it is pending or its lease expired."""

        now = utc_now()
        claimed = self._claim_where(
            and_(
                col(TaskRow.id) == task_id,
                _claimable(now=now, stale_after_seconds=stale_after_seconds),
            ),
            now=now,
        )
        return claimed[0] if claimed else None

    def mark_success(
        self,
        *,
        task_id: str,
        attempt: int,
        output: dict[str, Any],
    ) -> TaskView | None:
        """Mark a held task completed. Returns None when the lease was lost."""

        completion = self.complete_and_enqueue(task_id=task_id, attempt=attempt, output=output)
        return completion.task if completion is not None else None

    def complete_and_enqueue(
        self,
        *,
        task_id: str,
        attempt: int,
        output: dict[str, Any],
        next_tasks: Sequence[TaskCreate] = (),
    ) -> TaskCompletion | None:
        """Complete a held task and insert its successors atomically.

        Successors are skipped when cancellation was requested while the task ran.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(_held(task_id=task_id, attempt=attempt))
                .values(
                    status=TaskStatus.COMPLETED.value,
                    output_json=_dump_json(output),
                    last_error=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one()
            children: list[TaskRow] = []
            if row.cancel_requested_at is None:
                children = [_new_row(payload, now=now) for payload in next_tasks]
                session.add_all(children)
            session.flush()
            completion = TaskCompletion(
                task=_to_task_view(row),
                next_tasks=[_to_task_view(child) for child in children],
            )
            session.commit()
        return completion

    def mark_failure(
        self,
        *,
        task_id: str,
        attempt: int,
        status: TaskStatus,
        retry_count: int,
        last_error: str,
    ) -> TaskView | None:
        """Re-queue (`pending`) or terminate (`failed`) a held task."""

        if status not in {TaskStatus.PENDING, TaskStatus.FAILED}:
            raise ValueError(f"Unsupported failure status: {status}")

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(_held(task_id=task_id, attempt=attempt))
                .values(
                    status=status.value,
                    retry_count=retry_count,
                    last_error=last_error,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one()
            view = _to_task_view(row)
            session.commit()
        return view

    def fetch_by_id(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def fetch_by_session(self, *, session_id: str, user_id: str) -> list[TaskView]:
        """All tasks of a session owned by the user, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.session_id == session_id, TaskRow.user_id == user_id)
                .order_by(col(TaskRow.created_at).asc(), col(TaskRow.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def resolve_root_task_id(self, task_id: str) -> str:
        """Walk parent links to the chain root; the root id is the job id."""

        with Session(self.engine) as session:
            current_id = task_id
            for _ in range(MAX_CHAIN_DEPTH):
                parent_id = session.exec(
                    select(TaskRow.parent_task_id).where(TaskRow.id == current_id),
                ).one_or_none()
                if parent_id is None:
                    return current_id
                current_id = parent_id
        raise TaskStateError(f"Task chain deeper than {MAX_CHAIN_DEPTH} links: {task_id}")

    def retry_task(self, task_id: str) -> TaskView:
        """Manual retry: re-arm a failed task as pending.

        Bumps `attempt` so the events recorded for this transition never
        collide with those of the attempt that failed.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = _get_row(session=session, task_id=task_id)
            if row.status != TaskStatus.FAILED.value:
                raise TaskStateError(f"Only failed tasks can be retried, got {row.status}.")

            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    attempt=TaskRow.attempt + 1,
                    last_error=None,
                    cancel_requested_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    f"Task state changed concurrently while retrying (task_id={task_id}).",
                )
            session.commit()
        return self._require(task_id)

    def cancel_task(self, task_id: str) -> TaskView:
        """Record cancellation intent.

        A pending task fails immediately under a fresh `attempt`. A running task
        keeps its lease; the processor declines to continue the chain once it
        finishes.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = _get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS}:
                raise TaskStateError(f"Task cannot be canceled from status={row.status}")

            values: dict[str, Any] = {"cancel_requested_at": to_db_datetime(now)}
            if previous is TaskStatus.PENDING:
                values.update(
                    status=TaskStatus.FAILED.value,
                    attempt=TaskRow.attempt + 1,
                    last_error=CANCELLED_ERROR,
                    updated_at=to_db_datetime(now),
                )
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id, col(TaskRow.status) == previous.value)
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateError(
                    f"Task state changed concurrently while canceling (task_id={task_id}).",
                )
            session.commit()
        return self._require(task_id)

    def force_status(self, task_id: str, *, status: TaskStatus, updated_at: datetime) -> None:
        """Operator hook to simulate an orphaned lease. Not used by the processor."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id)
                .values(status=status.value, updated_at=to_db_datetime(updated_at)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

    def _claim_where(self, condition: ColumnElement[bool], *, now: datetime) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                sa_update(TaskRow)
                .where(condition)
                .values(
                    status=TaskStatus.IN_PROGRESS.value,
                    attempt=TaskRow.attempt + 1,
                    updated_at=to_db_datetime(now),
                )
                .returning(TaskRow)
                .execution_options(synchronize_session=False),
            ).scalars().all()
            claimed = [_to_task_view(row) for row in rows]
            session.commit()
        return sorted(claimed, key=lambda task: (task.created_at, task.id))

    def _require(self, task_id: str) -> TaskView:
        task = self.fetch_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task


def _claimable(*, now: datetime, stale_after_seconds: int) -> ColumnElement[bool]:
    stale_cutoff = now - timedelta(seconds=stale_after_seconds)
    return or_(
        col(TaskRow.status) == TaskStatus.PENDING.value,
        and_(
            col(TaskRow.status) == TaskStatus.IN_PROGRESS.value,
            col(TaskRow.updated_at) < to_db_datetime(stale_cutoff),
        ),
    )


def _held(*, task_id: str, attempt: int) -> ColumnElement[bool]:
    return and_(
        col(TaskRow.id) == task_id,
        col(TaskRow.status) == TaskStatus.IN_PROGRESS.value,
        col(TaskRow.attempt) == attempt,
    )


def _get_row(*, session: Session, task_id: str) -> TaskRow:
    row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one_or_none()
    if row is None:
        raise TaskNotFoundError(task_id)
    return row


def _new_row(payload: TaskCreate, *, now: datetime) -> TaskRow:
    return TaskRow(
        id=payload.task_id or str(uuid4()),
        parent_task_id=payload.parent_task_id,
        user_id=payload.user_id,
        session_id=payload.session_id,
        task_type=payload.task_type,
        input_json=_dump_json(payload.input),
        output_json=None,
        status=payload.status.value,
        retry_count=payload.retry_count,
        attempt=0,
        last_error=payload.last_error,
        cancel_requested_at=None,
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
    )


def _dump_json(value: dict[str, Any]) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        id=row.id,
        parent_task_id=row.parent_task_id,
        user_id=row.user_id,
        session_id=row.session_id,
        task_type=row.task_type,
        input=_load_json(row.input_json) or {},
        output=_load_json(row.output_json),
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        attempt=row.attempt,
        last_error=row.last_error,
        cancel_requested_at=(
            to_utc_aware_datetime(row.cancel_requested_at)
            if row.cancel_requested_at is not None
            else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
