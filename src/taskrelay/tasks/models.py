"""Domain models for the task queue and its event log."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskEventType(str, Enum):
    """Lifecycle transitions recorded in the event log."""

    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"


JOB_EVENT_TYPES = frozenset(
    {TaskEventType.JOB_STARTED, TaskEventType.JOB_COMPLETED, TaskEventType.JOB_FAILED},
)
JOB_TERMINAL_EVENT_TYPES = frozenset({TaskEventType.JOB_COMPLETED, TaskEventType.JOB_FAILED})

CANCELLED_ERROR = "Cancelled by user"


def build_event_key(event_type: TaskEventType | str, node_key: str | None) -> str:
    """Derive the dedup key `event_type:node_key`, `job` for job-level events."""

    value = event_type.value if isinstance(event_type, TaskEventType) else event_type
    return f"{value}:{node_key or 'job'}"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    user_id: str
    session_id: str
    task_type: str
    input: dict[str, Any] = field(default_factory=dict)
    parent_task_id: str | None = None
    task_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task record for the processor, API and CLI."""

    id: str
    parent_task_id: str | None
    user_id: str
    session_id: str
    task_type: str
    input: dict[str, Any]
    output: dict[str, Any] | None
    status: TaskStatus
    retry_count: int
    attempt: int
    last_error: str | None
    cancel_requested_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def state(self) -> dict[str, Any]:
        """Baton carried in `input.state`."""

        state = self.input.get("state")
        return dict(state) if isinstance(state, dict) else {}

    @property
    def is_root(self) -> bool:
        return self.parent_task_id is None

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready representation exposed over HTTP and the push channel."""

        return {
            "id": self.id,
            "parent_task_id": self.parent_task_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "task_type": self.task_type,
            "input": self.input,
            "output": self.output,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "attempt": self.attempt,
            "last_error": self.last_error,
            "cancel_requested_at": (
                self.cancel_requested_at.isoformat()
                if self.cancel_requested_at is not None
                else None
            ),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class TaskEventView:
    """Immutable observation of one lifecycle transition."""

    id: int
    task_id: str
    session_id: str
    user_id: str
    attempt: int
    event_type: TaskEventType
    node_key: str | None
    event_key: str
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "attempt": self.attempt,
            "event_type": self.event_type.value,
            "node_key": self.node_key,
            "event_key": self.event_key,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }
