"""Controllers for CLI commands."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import uvicorn

from taskrelay.api.app import create_app
from taskrelay.client.progress import ProgressView
from taskrelay.client.tracker import SessionTracker
from taskrelay.config import Settings
from taskrelay.graph.echo import build_registry
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.models import TaskView
from taskrelay.tasks.processor import ProcessOutcome, TaskProcessor
from taskrelay.tasks.repository import TaskRepository
from taskrelay.tasks.services import StartJob, TaskService
from taskrelay.tasks.trigger import sweep

STATUS_ICONS = {"running": "…", "completed": "✓", "error": "✗"}


@dataclass(slots=True)
class JobStartCommand:
    """CLI input for starting a workflow run."""

    db_path: Path | None
    workflow: str
    session_id: str
    user_id: str
    state: dict[str, Any] = field(default_factory=dict)
    drain: bool = True


@dataclass(slots=True)
class WorkerSweepCommand:
    """CLI input for one sweep batch."""

    db_path: Path | None
    max_tasks: int | None = None
    stale_after_seconds: int | None = None


@dataclass(slots=True)
class WorkerProcessCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SessionQueryCommand:
    """CLI input for listing a session's tasks or events."""

    db_path: Path | None
    session_id: str
    user_id: str


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ServeCommand:
    db_path: Path | None
    host: str
    port: int


@dataclass(slots=True)
class WatchCommand:
    """CLI input for following a session over HTTP."""

    base_url: str
    token: str
    session_id: str
    job_id: str | None = None
    workflow: str | None = None


class TaskRelayCliController:
    """Coordinates job, worker, inspection and server CLI operations."""

    def start_job(self, command: JobStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _processor(settings) as processor:
            service = _service(processor)
            task = service.start_job(
                StartJob(
                    workflow=command.workflow,
                    session_id=command.session_id,
                    user_id=command.user_id,
                    state=command.state,
                ),
            )
            lines = [
                f"Job started: job_id={task.id} type={task.task_type} "
                f"session={task.session_id}",
            ]
            if command.drain:
                for outcome in drain_chain(processor, task.id):
                    lines.append(_format_outcome(outcome))
        return lines

    def sweep(self, command: WorkerSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _processor(settings) as processor:
            summary = sweep(
                processor,
                max_tasks=command.max_tasks or settings.engine.max_claim,
                stale_after_seconds=command.stale_after_seconds,
            )
        return [
            "Sweep summary: "
            f"processed={summary.processed} completed={summary.completed} failed={summary.failed}",
        ]

    def process(self, command: WorkerProcessCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _processor(settings) as processor:
            outcome = processor.process_by_id(command.task_id)
        return [_format_outcome(outcome)]

    def list_tasks(self, command: SessionQueryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.fetch_by_session(
                session_id=command.session_id,
                user_id=command.user_id,
            )

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(_format_task(task) for task in tasks)
        return lines

    def list_events(self, command: SessionQueryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            events = EventLog(repository.engine).fetch_by_session(
                session_id=command.session_id,
                user_id=command.user_id,
            )

        lines = [f"Events: {len(events)}"]
        for event in events:
            error = event.payload.get("error")
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type.value} "
                f"node={event.node_key or '-'} task={event.task_id} attempt={event.attempt}"
                + (f" error={error}" if error else ""),
            )
        return lines

    def retry_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _processor(settings) as processor:
            task = _service(processor).retry(command.task_id)
        return [f"Task re-queued: {task.id} retry_count={task.retry_count}"]

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _processor(settings) as processor:
            task = _service(processor).cancel(command.task_id)
        return [f"Task cancel requested: {task.id} status={task.status.value}"]

    def serve(self, command: ServeCommand) -> None:
        settings = Settings.from_env(db_path=command.db_path)
        app = create_app(settings_override=settings)
        uvicorn.run(
            app,
            host=command.host,
            port=command.port,
            log_level=settings.log_level.lower(),
        )

    def watch(self, command: WatchCommand, emit: Callable[[str], None]) -> ProgressView:
        settings = Settings.from_env()
        step_labels = (
            dict(build_registry().workflow(command.workflow).step_labels)
            if command.workflow
            else None
        )

        def on_progress(view: ProgressView) -> None:
            emit(f"Job {view.job_id or '-'} active={view.is_active}")
            for step in view.steps:
                emit(f"  {STATUS_ICONS.get(step.status, '?')} {step.label}")

        def on_finished(view: ProgressView) -> None:
            suffix = f" with error: {view.error}" if view.error else ""
            emit(f"Job {view.job_id} finished{suffix}")

        with httpx.Client(
            base_url=command.base_url,
            headers={"Authorization": f"Bearer {command.token}"},
            timeout=httpx.Timeout(30.0, connect=10.0, read=None),
        ) as client:
            tracker = SessionTracker(
                client=client,
                session_id=command.session_id,
                job_id=command.job_id,
                settings=settings.client,
                step_labels=step_labels,
                on_progress=on_progress,
                on_finished=on_finished,
            )
            return tracker.run()


def drain_chain(processor: TaskProcessor, task_id: str) -> Iterator[ProcessOutcome]:
    """Process a chain inline until it ends, fails or leaves a retry for the sweep."""

    outcome = processor.process_by_id(task_id)
    yield outcome
    while outcome.ok and outcome.next_task_ids:
        outcome = processor.process_by_id(outcome.next_task_ids[0])
        yield outcome


def parse_state(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid --state JSON: {error}") from error
    if not isinstance(value, dict):
        raise ValueError("--state must be a JSON object.")
    return value


def _format_task(task: TaskView) -> str:
    return (
        f"  {task.id} type={task.task_type} status={task.status.value} "
        f"retries={task.retry_count} attempt={task.attempt} "
        f"parent={task.parent_task_id or '-'} error={task.last_error or '-'}"
    )


def _format_outcome(outcome: ProcessOutcome) -> str:
    if outcome.ok:
        next_ids = ",".join(outcome.next_task_ids) or "-"
        return f"Processed: task_id={outcome.task_id} next={next_ids}"
    return f"Not completed: task_id={outcome.task_id} error={outcome.error}"


def _service(processor: TaskProcessor) -> TaskService:
    return TaskService(
        repository=processor.repository,
        events=processor.events,
        registry=processor.registry,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _processor(settings: Settings) -> Iterator[TaskProcessor]:
    with _repository(settings) as repository:
        yield TaskProcessor(
            repository=repository,
            events=EventLog(repository.engine),
            registry=build_registry(),
            max_retries=settings.engine.max_retries,
            stale_after_seconds=settings.engine.stale_after_seconds,
        )
