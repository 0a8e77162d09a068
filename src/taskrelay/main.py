"""CLI entrypoint for taskrelay."""

import logging
import os
from pathlib import Path

import rich_click as click

from taskrelay import __version__
from taskrelay.client.tracker import SessionAccessError
from taskrelay.controllers import (
    JobStartCommand,
    ServeCommand,
    SessionQueryCommand,
    TaskMutateCommand,
    TaskRelayCliController,
    WatchCommand,
    WorkerProcessCommand,
    WorkerSweepCommand,
    parse_state,
)
from taskrelay.errors import ConfigurationError, TaskNotFoundError, TaskStateError
from taskrelay.graph.workflows import WORKFLOWS

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskRelayCliController()
WORKFLOW_NAMES = [workflow.name for workflow in WORKFLOWS]


@click.group()
@click.version_option(version=__version__, prog_name="taskrelay")
def taskrelay() -> None:
    """Durable task graph engine CLI."""

    logging.basicConfig(
        level=os.getenv("TASKRELAY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskrelay.group()
def job() -> None:
    """Workflow run commands."""


@job.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workflow",
    type=click.Choice(WORKFLOW_NAMES, case_sensitive=False),
    required=True,
    help="Workflow family to run.",
)
@click.option("--session-id", required=True, help="Session grouping the run's tasks.")
@click.option("--user-id", required=True, help="Owner of the run.")
@click.option("--state", "raw_state", default=None, help="Initial baton as a JSON object.")
@click.option(
    "--drain/--no-drain",
    default=True,
    show_default=True,
    help="Process the chain inline, or leave it for the sweep.",
)
def job_start(  # noqa: PLR0913
    db_path: Path | None,
    workflow: str,
    session_id: str,
    user_id: str,
    raw_state: str | None,
    drain: bool,
) -> None:
    """Enqueue the root task of a workflow."""

    try:
        state = parse_state(raw_state)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--state") from error
    _emit_lines(
        CONTROLLER.start_job(
            JobStartCommand(
                db_path=db_path,
                workflow=workflow.lower(),
                session_id=session_id,
                user_id=user_id,
                state=state,
                drain=drain,
            ),
        ),
    )


@taskrelay.group()
def worker() -> None:
    """Sweep and single-task processing."""


@worker.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Batch size. Defaults to TASKRELAY_MAX_CLAIM.",
)
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Lease window. Defaults to TASKRELAY_STALE_AFTER_SECONDS.",
)
def worker_sweep(
    db_path: Path | None,
    max_tasks: int | None,
    stale_after_seconds: int | None,
) -> None:
    """Claim and process one batch of pending or stale tasks."""

    _emit_lines(
        CONTROLLER.sweep(
            WorkerSweepCommand(
                db_path=db_path,
                max_tasks=max_tasks,
                stale_after_seconds=stale_after_seconds,
            ),
        ),
    )


@worker.command("process")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def worker_process(db_path: Path | None, task_id: str) -> None:
    """Claim one task by id and process it."""

    _emit_lines(CONTROLLER.process(WorkerProcessCommand(db_path=db_path, task_id=task_id)))


@taskrelay.group()
def tasks() -> None:
    """Task inspection and manual control."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
@click.option("--user-id", required=True, help="Owner user id.")
def tasks_list(db_path: Path | None, session_id: str, user_id: str) -> None:
    """List a session's tasks, oldest first."""

    _emit_lines(
        CONTROLLER.list_tasks(
            SessionQueryCommand(db_path=db_path, session_id=session_id, user_id=user_id),
        ),
    )


@tasks.command("events")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", required=True, help="Session id.")
@click.option("--user-id", required=True, help="Owner user id.")
def tasks_events(db_path: Path | None, session_id: str, user_id: str) -> None:
    """Show a session's event timeline."""

    _emit_lines(
        CONTROLLER.list_events(
            SessionQueryCommand(db_path=db_path, session_id=session_id, user_id=user_id),
        ),
    )


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Re-arm a failed task as pending."""

    try:
        lines = CONTROLLER.retry_task(TaskMutateCommand(db_path=db_path, task_id=task_id))
    except (TaskNotFoundError, TaskStateError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Request cancellation of a pending or running task."""

    try:
        lines = CONTROLLER.cancel_task(TaskMutateCommand(db_path=db_path, task_id=task_id))
    except (TaskNotFoundError, TaskStateError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@taskrelay.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8000, show_default=True)
def serve(db_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""

    try:
        CONTROLLER.serve(ServeCommand(db_path=db_path, host=host, port=port))
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error


@taskrelay.command("watch")
@click.option(
    "--base-url",
    default="http://127.0.0.1:8000",
    show_default=True,
    help="API base URL.",
)
@click.option("--token", envvar="TASKRELAY_TOKEN", required=True, help="Bearer token.")
@click.option("--session-id", required=True, help="Session to follow.")
@click.option("--job-id", default=None, help="Follow this job instead of the latest one.")
@click.option(
    "--workflow",
    type=click.Choice(WORKFLOW_NAMES, case_sensitive=False),
    default=None,
    help="Workflow whose step labels to show.",
)
def watch(
    base_url: str,
    token: str,
    session_id: str,
    job_id: str | None,
    workflow: str | None,
) -> None:
    """Follow a session's job progress until it finishes."""

    try:
        view = CONTROLLER.watch(
            WatchCommand(
                base_url=base_url,
                token=token,
                session_id=session_id,
                job_id=job_id,
                workflow=workflow.lower() if workflow is not None else None,
            ),
            emit=click.echo,
        )
    except SessionAccessError as error:
        raise click.ClickException(str(error)) from error
    if view.error:
        raise click.ClickException(view.error)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskrelay()
