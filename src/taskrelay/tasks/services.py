"""Use-case services shared by the HTTP surface and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from taskrelay.errors import TaskAccessError, TaskNotFoundError, TaskStateError
from taskrelay.graph.routing import WorkflowRegistry
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.models import (
    CANCELLED_ERROR,
    TaskCreate,
    TaskEventType,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from taskrelay.tasks.repository import TaskRepository
from taskrelay.tasks.trigger import Kicker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StartJob:
    """High-level command to start a workflow run."""

    workflow: str
    session_id: str
    user_id: str
    state: dict[str, Any] = field(default_factory=dict)


class TaskService:
    """Coordinates queue inserts, manual controls and kicks."""

    def __init__(
        self,
        *,
        repository: TaskRepository,
        events: EventLog,
        registry: WorkflowRegistry,
        kicker: Kicker | None = None,
    ) -> None:
        self.repository = repository
        self.events = events
        self.registry = registry
        self.kicker = kicker

    def start_job(self, command: StartJob) -> TaskView:
        """Enqueue the workflow's entry node as a chain root and kick it."""

        task_type = self.registry.entry_task_type(command.workflow)
        task = self.repository.enqueue(
            TaskCreate(
                user_id=command.user_id,
                session_id=command.session_id,
                task_type=task_type,
                input={"state": dict(command.state)},
            ),
        )
        logger.info(
            "Job %s started: workflow=%s session=%s user=%s",
            task.id,
            command.workflow,
            command.session_id,
            command.user_id,
        )
        self._kick(task.id)
        return task

    def get_task(self, task_id: str, *, user_id: str | None = None) -> TaskView:
        """Fetch a task; with `user_id`, also enforce ownership."""

        task = self.repository.fetch_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if user_id is not None and task.user_id != user_id:
            raise TaskAccessError(task_id)
        return task

    def list_tasks(self, *, session_id: str, user_id: str) -> list[TaskView]:
        return self.repository.fetch_by_session(session_id=session_id, user_id=user_id)

    def list_events(self, *, session_id: str, user_id: str) -> list[TaskEventView]:
        return self.events.fetch_by_session(session_id=session_id, user_id=user_id)

    def retry(self, task_id: str, *, user_id: str | None = None) -> TaskView:
        """Re-arm a failed task and reopen its job for anyone tracking the session."""

        self.get_task(task_id, user_id=user_id)
        task = self.repository.retry_task(task_id)
        self._record_job_event(task, TaskEventType.JOB_STARTED, {"retried": True})
        logger.info("Task %s re-armed for retry (attempt %d).", task_id, task.attempt)
        self._kick(task.id)
        return task

    def cancel(self, task_id: str, *, user_id: str | None = None) -> TaskView:
        """Cancel a task; a pending one ends its job right away."""

        self.get_task(task_id, user_id=user_id)
        task = self.repository.cancel_task(task_id)
        if task.status is TaskStatus.FAILED:
            self._record_job_event(
                task,
                TaskEventType.JOB_FAILED,
                {"error": CANCELLED_ERROR, "canceled": True},
            )
        logger.info("Cancellation requested for task %s (status=%s).", task_id, task.status.value)
        return task

    def resume(self, task_id: str, *, user_id: str | None = None) -> TaskView:
        """Kick a pending task now instead of waiting for the sweep."""

        task = self.get_task(task_id, user_id=user_id)
        if task.status is not TaskStatus.PENDING:
            raise TaskStateError(f"Only pending tasks can be resumed, got {task.status.value}.")
        self._kick(task.id)
        return task

    def _kick(self, task_id: str) -> None:
        if self.kicker is None:
            return
        self.kicker.kick(task_id)

    def _record_job_event(
        self,
        task: TaskView,
        event_type: TaskEventType,
        extra: dict[str, Any],
    ) -> None:
        self.events.record_task_event(
            task,
            job_id=self.repository.resolve_root_task_id(task.id),
            event_type=event_type,
            extra=extra,
        )
