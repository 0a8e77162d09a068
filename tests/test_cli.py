from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskrelay.controllers import parse_state
from taskrelay.main import taskrelay
from taskrelay.tasks.models import TaskCreate, TaskStatus
from taskrelay.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TASKRELAY_APP_URL", "TASKRELAY_MAX_RETRIES", "TASKRELAY_MAX_CLAIM"):
        monkeypatch.delenv(name, raising=False)


def _invoke(*args: str):
    return CliRunner().invoke(taskrelay, list(args))


def _seed(db_path: Path, status: TaskStatus = TaskStatus.PENDING) -> str:
    repository = TaskRepository(db_path)
    repository.init_schema()
    task = repository.enqueue(
        TaskCreate(
            user_id="user-1",
            session_id="session-1",
            task_type="root.save_user_message",
            input={"state": {"message": "hi"}},
            status=status,
        ),
    )
    repository.close()
    return task.id


def test_job_start_drains_the_chain_inline(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    result = _invoke(
        "job",
        "start",
        "--db-path",
        str(db_path),
        "--workflow",
        "daily",
        "--session-id",
        "session-1",
        "--user-id",
        "user-1",
        "--state",
        '{"message": "Is it raining?"}',
    )

    assert result.exit_code == 0, result.output
    assert "Job started:" in result.output
    assert result.output.count("Processed:") == 4
    assert "Not completed" not in result.output

    listed = _invoke(
        "tasks",
        "list",
        "--db-path",
        str(db_path),
        "--session-id",
        "session-1",
        "--user-id",
        "user-1",
    )
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 4" in listed.output
    assert "daily.save_events" in listed.output

    events = _invoke(
        "tasks",
        "events",
        "--db-path",
        str(db_path),
        "--session-id",
        "session-1",
        "--user-id",
        "user-1",
    )
    assert events.exit_code == 0, events.output
    assert "job_completed" in events.output


def test_job_start_without_drain_leaves_work_for_the_sweep(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    started = _invoke(
        "job",
        "start",
        "--db-path",
        str(db_path),
        "--workflow",
        "root",
        "--session-id",
        "session-1",
        "--user-id",
        "user-1",
        "--no-drain",
    )
    assert started.exit_code == 0, started.output
    assert "Processed:" not in started.output

    swept = _invoke("worker", "sweep", "--db-path", str(db_path), "--max-tasks", "5")
    assert swept.exit_code == 0, swept.output
    assert "processed=1 completed=1 failed=0" in swept.output


def test_job_start_rejects_invalid_state(tmp_path: Path) -> None:
    result = _invoke(
        "job",
        "start",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--workflow",
        "root",
        "--session-id",
        "s",
        "--user-id",
        "u",
        "--state",
        "[1, 2]",
    )

    assert result.exit_code == 2
    assert "JSON object" in result.output


def test_worker_process_reports_successor(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    task_id = _seed(db_path)

    first = _invoke("worker", "process", "--db-path", str(db_path), task_id)
    second = _invoke("worker", "process", "--db-path", str(db_path), task_id)

    assert first.exit_code == 0, first.output
    assert re.search(rf"Processed: task_id={task_id} next=\S+", first.output)
    assert "Task is not claimable" in second.output


def test_retry_and_cancel_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    failed_id = _seed(db_path, TaskStatus.FAILED)
    pending_id = _seed(db_path)

    retried = _invoke("tasks", "retry", "--db-path", str(db_path), failed_id)
    canceled = _invoke("tasks", "cancel", "--db-path", str(db_path), pending_id)
    rejected = _invoke("tasks", "retry", "--db-path", str(db_path), "missing")

    assert retried.exit_code == 0, retried.output
    assert f"Task re-queued: {failed_id}" in retried.output
    assert canceled.exit_code == 0, canceled.output
    assert "status=failed" in canceled.output
    assert rejected.exit_code == 1
    assert "Task not found" in rejected.output


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, {}), ("", {}), ('{"a": 1}', {"a": 1})],
)
def test_parse_state(raw: str | None, expected: dict) -> None:
    assert parse_state(raw) == expected


def test_parse_state_rejects_bad_json() -> None:
    with pytest.raises(ValueError, match="Invalid --state JSON"):
        parse_state("{nope")
