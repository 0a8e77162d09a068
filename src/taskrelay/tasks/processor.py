"""Executes one claimed task: run its node, persist, route, enqueue the successor."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskrelay.errors import UnknownTaskTypeError
from taskrelay.graph.routing import ResolvedNode, WorkflowRegistry
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.models import CANCELLED_ERROR, TaskCreate, TaskEventType, TaskStatus, TaskView
from taskrelay.tasks.repository import TaskRepository

if TYPE_CHECKING:
    from taskrelay.tasks.trigger import Kicker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessOutcome:
    """Result of one processing pass."""

    ok: bool
    task_id: str
    error: str | None = None
    next_task_ids: list[str] = field(default_factory=list)
    claimed: bool = True


class TaskProcessor:
    """Runs node handlers against held tasks.

    Handler errors never escape `process`: they become a re-queued (`pending`)
    or terminal (`failed`) task record. Storage errors do propagate.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        events: EventLog,
        registry: WorkflowRegistry,
        max_retries: int,
        stale_after_seconds: int,
        kicker: Kicker | None = None,
    ) -> None:
        self.repository = repository
        self.events = events
        self.registry = registry
        self.max_retries = max_retries
        self.stale_after_seconds = stale_after_seconds
        self.kicker = kicker

    def process_by_id(self, task_id: str) -> ProcessOutcome:
        """Claim one task by id and process it; no-op when someone else holds it."""

        task = self.repository.claim_by_id(task_id, stale_after_seconds=self.stale_after_seconds)
        if task is None:
            logger.debug("Task %s is not claimable, skipping.", task_id)
            return ProcessOutcome(
                ok=False,
                task_id=task_id,
                error="Task is not claimable",
                claimed=False,
            )
        return self.process(task)

    def process(self, task: TaskView) -> ProcessOutcome:
        """Process a task the caller has already claimed."""

        job_id = self.repository.resolve_root_task_id(task.id)
        try:
            resolved = self.registry.resolve(task.task_type)
        except UnknownTaskTypeError as error:
            return self._fail_terminally(task, job_id=job_id, message=str(error))

        if task.is_root:
            self._emit(task, job_id=job_id, event_type=TaskEventType.JOB_STARTED)

        if task.cancel_requested_at is not None:
            return self._fail_terminally(
                task,
                job_id=job_id,
                message=CANCELLED_ERROR,
                canceled=True,
            )

        self._emit(
            task,
            job_id=job_id,
            event_type=TaskEventType.NODE_STARTED,
            node_key=resolved.node,
        )
        try:
            merged, next_task_type = _run_node(resolved, task.state)
        except UnknownTaskTypeError as error:
            self._emit_node_failed(task, job_id=job_id, node=resolved.node, message=str(error))
            return self._fail_terminally(task, job_id=job_id, message=str(error))
        except Exception as error:  # noqa: BLE001
            message = str(error) or type(error).__name__
            logger.warning(
                "Node %s failed: task=%s session=%s attempt=%d error=%s",
                task.task_type,
                task.id,
                task.session_id,
                task.attempt,
                message,
            )
            self._emit_node_failed(task, job_id=job_id, node=resolved.node, message=message)
            return self._fail(task, job_id=job_id, message=message)

        return self._complete(
            task,
            job_id=job_id,
            node=resolved.node,
            merged=merged,
            next_task_type=next_task_type,
        )

    def _complete(
        self,
        task: TaskView,
        *,
        job_id: str,
        node: str,
        merged: dict[str, Any],
        next_task_type: str | None,
    ) -> ProcessOutcome:
        next_tasks = []
        if next_task_type is not None:
            next_tasks.append(
                TaskCreate(
                    user_id=task.user_id,
                    session_id=task.session_id,
                    task_type=next_task_type,
                    input={"state": merged},
                    parent_task_id=task.id,
                ),
            )
        completion = self.repository.complete_and_enqueue(
            task_id=task.id,
            attempt=task.attempt,
            output={"state": merged},
            next_tasks=next_tasks,
        )
        if completion is None:
            return self._lease_lost(task)
        self._emit(
            task,
            job_id=job_id,
            event_type=TaskEventType.NODE_COMPLETED,
            node_key=node,
        )

        if completion.task.cancel_requested_at is not None:
            logger.info("Job %s canceled after task %s completed.", job_id, task.id)
            self._emit(
                task,
                job_id=job_id,
                event_type=TaskEventType.JOB_FAILED,
                extra={"error": CANCELLED_ERROR, "canceled": True},
            )
            return ProcessOutcome(ok=True, task_id=task.id)

        if not completion.next_tasks:
            self._emit(task, job_id=job_id, event_type=TaskEventType.JOB_COMPLETED)
            logger.info("Job %s completed at task %s (%s).", job_id, task.id, task.task_type)
            return ProcessOutcome(ok=True, task_id=task.id)

        next_task_ids = [child.id for child in completion.next_tasks]
        if self.kicker is not None:
            for child_id in next_task_ids:
                self.kicker.kick(child_id)
        return ProcessOutcome(ok=True, task_id=task.id, next_task_ids=next_task_ids)

    def _fail(self, task: TaskView, *, job_id: str, message: str) -> ProcessOutcome:
        next_retry_count = task.retry_count + 1
        if next_retry_count <= self.max_retries:
            updated = self.repository.mark_failure(
                task_id=task.id,
                attempt=task.attempt,
                status=TaskStatus.PENDING,
                retry_count=next_retry_count,
                last_error=message,
            )
            if updated is None:
                return self._lease_lost(task)
            logger.info(
                "Task %s re-queued: retry %d/%d.",
                task.id,
                next_retry_count,
                self.max_retries,
            )
            return ProcessOutcome(ok=False, task_id=task.id, error=message)

        updated = self.repository.mark_failure(
            task_id=task.id,
            attempt=task.attempt,
            status=TaskStatus.FAILED,
            retry_count=next_retry_count,
            last_error=message,
        )
        if updated is None:
            return self._lease_lost(task)
        self._emit(
            task,
            job_id=job_id,
            event_type=TaskEventType.JOB_FAILED,
            extra={"error": message},
        )
        logger.warning("Task %s failed after %d attempts: %s", task.id, next_retry_count, message)
        return ProcessOutcome(ok=False, task_id=task.id, error=message)

    def _fail_terminally(
        self,
        task: TaskView,
        *,
        job_id: str,
        message: str,
        canceled: bool = False,
    ) -> ProcessOutcome:
        updated = self.repository.mark_failure(
            task_id=task.id,
            attempt=task.attempt,
            status=TaskStatus.FAILED,
            retry_count=task.retry_count,
            last_error=message,
        )
        if updated is None:
            return self._lease_lost(task)
        extra: dict[str, Any] = {"error": message}
        if canceled:
            extra["canceled"] = True
        self._emit(task, job_id=job_id, event_type=TaskEventType.JOB_FAILED, extra=extra)
        logger.warning("Task %s failed terminally: %s", task.id, message)
        return ProcessOutcome(ok=False, task_id=task.id, error=message)

    def _lease_lost(self, task: TaskView) -> ProcessOutcome:
        logger.warning(
            "Lease lost for task %s (attempt %d); result discarded.",
            task.id,
            task.attempt,
        )
        return ProcessOutcome(ok=False, task_id=task.id, error="Lease lost")

    def _emit_node_failed(self, task: TaskView, *, job_id: str, node: str, message: str) -> None:
        self._emit(
            task,
            job_id=job_id,
            event_type=TaskEventType.NODE_FAILED,
            node_key=node,
            extra={"error": message},
        )

    def _emit(
        self,
        task: TaskView,
        *,
        job_id: str,
        event_type: TaskEventType,
        node_key: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.events.record_task_event(
            task,
            job_id=job_id,
            event_type=event_type,
            node_key=node_key,
            extra=extra,
        )


def _run_node(resolved: ResolvedNode, state: dict[str, Any]) -> tuple[dict[str, Any], str | None]:
    patch = resolved.handler(dict(state))
    merged = {**state, **(patch or {})}
    return merged, resolved.next_task_type(merged)

