"""FastAPI app: job control, task inspection, push channel and triggers."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from taskrelay import __version__
from taskrelay.api.auth import has_cron_secret, is_cron_authorized, resolve_user
from taskrelay.api.stream import stream_response, stream_snapshots
from taskrelay.config import Settings
from taskrelay.errors import (
    TaskAccessError,
    TaskNotFoundError,
    TaskStateError,
    UnknownTaskTypeError,
)
from taskrelay.graph.echo import build_registry
from taskrelay.graph.routing import WorkflowRegistry
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.processor import TaskProcessor
from taskrelay.tasks.repository import TaskRepository
from taskrelay.tasks.services import StartJob, TaskService
from taskrelay.tasks.trigger import Kicker, build_kicker, sweep

logger = logging.getLogger(__name__)

CRON_PATH = "/cron/process-tasks"


def current_user(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    return resolve_user(request.app.state.runtime.settings, authorization)


User = Annotated[str, Depends(current_user)]
SessionId = Annotated[str, Query(min_length=1)]


class StartJobRequest(BaseModel):
    workflow: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    state: dict[str, Any] = Field(default_factory=dict)


@dataclass(slots=True)
class AppRuntime:
    """Handles shared by every request of one app instance."""

    settings: Settings
    repository: TaskRepository
    events: EventLog
    processor: TaskProcessor
    service: TaskService


def build_runtime(
    settings: Settings,
    *,
    repository: TaskRepository | None = None,
    registry: WorkflowRegistry | None = None,
    kicker: Kicker | None = None,
) -> AppRuntime:
    """Wire repository, event log, processor and service together."""

    if repository is None:
        repository = TaskRepository(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
        repository.init_schema()
    events = EventLog(repository.engine)
    registry = registry or build_registry()
    processor = TaskProcessor(
        repository=repository,
        events=events,
        registry=registry,
        max_retries=settings.engine.max_retries,
        stale_after_seconds=settings.engine.stale_after_seconds,
    )
    processor.kicker = kicker or build_kicker(settings, processor)
    service = TaskService(
        repository=repository,
        events=events,
        registry=registry,
        kicker=processor.kicker,
    )
    return AppRuntime(
        settings=settings,
        repository=repository,
        events=events,
        processor=processor,
        service=service,
    )


def create_app(  # noqa: C901, PLR0915
    *,
    settings_override: Settings | None = None,
    repository: TaskRepository | None = None,
    registry: WorkflowRegistry | None = None,
    kicker: Kicker | None = None,
) -> FastAPI:
    settings = settings_override or Settings.from_env()
    settings.validate()
    owns_repository = repository is None
    runtime = build_runtime(settings, repository=repository, registry=registry, kicker=kicker)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_repository:
            runtime.repository.close()

    app = FastAPI(title="taskrelay", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(TaskNotFoundError)
    async def _not_found(_: Request, exc: TaskNotFoundError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)

    @app.exception_handler(TaskAccessError)
    async def _forbidden(_: Request, exc: TaskAccessError) -> JSONResponse:
        return JSONResponse({"detail": "Forbidden"}, status_code=status.HTTP_403_FORBIDDEN)

    @app.exception_handler(TaskStateError)
    async def _conflict(_: Request, exc: TaskStateError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_409_CONFLICT)

    @app.exception_handler(UnknownTaskTypeError)
    async def _bad_request(_: Request, exc: UnknownTaskTypeError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": "taskrelay", "version": __version__}

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    def start_job(payload: StartJobRequest, user_id: User) -> dict[str, Any]:
        task = runtime.service.start_job(
            StartJob(
                workflow=payload.workflow,
                session_id=payload.session_id,
                user_id=user_id,
                state=payload.state,
            ),
        )
        return {"job_id": task.id, "task": task.to_dict()}

    @app.get("/tasks")
    def list_tasks(session_id: SessionId, user_id: User) -> dict[str, Any]:
        tasks = runtime.service.list_tasks(session_id=session_id, user_id=user_id)
        return {"tasks": [task.to_dict() for task in tasks]}

    @app.get("/tasks/events")
    def list_events(session_id: SessionId, user_id: User) -> dict[str, Any]:
        events = runtime.service.list_events(session_id=session_id, user_id=user_id)
        return {"events": [event.to_dict() for event in events]}

    @app.get("/tasks/stream")
    async def stream(
        request: Request,
        session_id: SessionId,
        user_id: User,
        resource: Literal["events", "tasks"] = "events",
    ):
        def fetch() -> list[dict[str, Any]]:
            if resource == "tasks":
                return [
                    task.to_dict()
                    for task in runtime.service.list_tasks(session_id=session_id, user_id=user_id)
                ]
            return [
                event.to_dict()
                for event in runtime.service.list_events(session_id=session_id, user_id=user_id)
            ]

        return stream_response(
            stream_snapshots(
                fetch,
                poll_interval_seconds=settings.stream.poll_interval_seconds,
                keepalive_interval_seconds=settings.stream.keepalive_interval_seconds,
                is_disconnected=request.is_disconnected,
            ),
        )

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str, user_id: User) -> dict[str, Any]:
        return runtime.service.get_task(task_id, user_id=user_id).to_dict()

    @app.post("/tasks/{task_id}/retry")
    def retry_task(task_id: str, user_id: User) -> dict[str, Any]:
        return runtime.service.retry(task_id, user_id=user_id).to_dict()

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str, user_id: User) -> dict[str, Any]:
        return runtime.service.cancel(task_id, user_id=user_id).to_dict()

    @app.post("/tasks/{task_id}/resume")
    def resume_task(task_id: str, user_id: User) -> dict[str, Any]:
        return runtime.service.resume(task_id, user_id=user_id).to_dict()

    @app.post("/tasks/{task_id}/process")
    def process_task(
        task_id: str,
        authorization: Annotated[str | None, Header()] = None,
    ) -> JSONResponse:
        if not has_cron_secret(settings, authorization):
            return JSONResponse(
                {"error": "Unauthorized"},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )
        outcome = runtime.processor.process_by_id(task_id)
        if outcome.ok:
            return JSONResponse({"ok": True, "next_task_ids": outcome.next_task_ids})
        code = (
            status.HTTP_409_CONFLICT
            if not outcome.claimed
            else status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        return JSONResponse({"ok": False, "error": outcome.error}, status_code=code)

    def run_sweep(triggered_by: str) -> JSONResponse:
        try:
            summary = sweep(runtime.processor, max_tasks=settings.engine.max_claim)
        except Exception as error:
            logger.exception("Sweep failed (%s).", triggered_by)
            return JSONResponse(
                {"success": False, "error": str(error), "triggered_by": triggered_by},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        body: dict[str, Any] = {"success": True, **summary.to_dict(), "triggered_by": triggered_by}
        if summary.processed == 0:
            body["message"] = "No pending tasks"
        return JSONResponse(body)

    @app.get(CRON_PATH)
    def cron_get(request: Request) -> JSONResponse:
        if not is_cron_authorized(settings, request.headers):
            return JSONResponse(
                {
                    "status": "ok",
                    "endpoint": CRON_PATH,
                    "description": (
                        "Processes one batch of pending and stale tasks. "
                        "Use POST with Authorization: Bearer <cron secret> to run manually."
                    ),
                },
            )
        return run_sweep("scheduler GET")

    @app.post(CRON_PATH)
    def cron_post(request: Request) -> JSONResponse:
        if not is_cron_authorized(settings, request.headers):
            return JSONResponse(
                {"error": "Unauthorized"},
                status_code=status.HTTP_401_UNAUTHORIZED,
            )
        return run_sweep("manual POST")

    return app
