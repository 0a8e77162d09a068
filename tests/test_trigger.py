from __future__ import annotations

import logging
from collections.abc import Callable

import allure
import httpx
import pytest

from taskrelay.config import Settings, TriggerSettings
from taskrelay.tasks.models import TaskCreate, TaskStatus
from taskrelay.tasks.processor import TaskProcessor
from taskrelay.tasks.repository import TaskRepository
from taskrelay.tasks.trigger import HttpKicker, ThreadKicker, build_kicker, sweep

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Trigger Paths"),
]


def _enqueue(repository: TaskRepository, task_type: str = "root.save_user_message") -> str:
    return repository.enqueue(
        TaskCreate(
            user_id="user-1",
            session_id="session-1",
            task_type=task_type,
            input={"state": {"message": "hi"}},
        ),
    ).id


def test_sweep_reports_processed_completed_and_failed(
    repository: TaskRepository,
    make_processor: Callable[..., TaskProcessor],
) -> None:
    _enqueue(repository)
    _enqueue(repository, "unknown.node")

    summary = sweep(make_processor(), max_tasks=10)

    assert summary.to_dict() == {"processed": 2, "completed": 1, "failed": 1}


def test_sweep_on_empty_queue(make_processor: Callable[..., TaskProcessor]) -> None:
    assert sweep(make_processor(), max_tasks=10).processed == 0


def test_sweep_continues_after_unexpected_error(
    repository: TaskRepository,
    make_processor: Callable[..., TaskProcessor],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    broken = _enqueue(repository)
    healthy = _enqueue(repository)
    processor = make_processor()
    original = processor.process

    def _process(task):
        if task.id == broken:
            raise RuntimeError("database hiccup")
        return original(task)

    monkeypatch.setattr(processor, "process", _process)

    summary = sweep(processor, max_tasks=10)

    assert summary.to_dict() == {"processed": 2, "completed": 1, "failed": 1}
    assert repository.fetch_by_id(healthy).status is TaskStatus.COMPLETED
    assert repository.fetch_by_id(broken).status is TaskStatus.IN_PROGRESS


def test_sweep_respects_batch_size(
    repository: TaskRepository,
    make_processor: Callable[..., TaskProcessor],
) -> None:
    for _ in range(3):
        _enqueue(repository)

    assert sweep(make_processor(), max_tasks=2).processed == 2


def test_thread_kicker_logs_and_swallows_errors(caplog: pytest.LogCaptureFixture) -> None:
    def _explode(task_id: str) -> None:
        raise RuntimeError(f"cannot run {task_id}")

    kicker = ThreadKicker(_explode)

    with caplog.at_level(logging.ERROR, logger="taskrelay.tasks.trigger"):
        kicker._run("task-1")

    assert "Kick failed for task task-1" in caplog.text


def test_http_kicker_posts_with_shared_secret() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    kicker = HttpKicker(
        app_url="https://relay.example/",
        cron_secret="s3cret",
        transport=httpx.MockTransport(_handler),
    )

    kicker.post("task-42")

    assert len(seen) == 1
    assert seen[0].method == "POST"
    assert str(seen[0].url) == "https://relay.example/tasks/task-42/process"
    assert seen[0].headers["Authorization"] == "Bearer s3cret"


def _unauthorized(request: httpx.Request) -> httpx.Response:
    return httpx.Response(401)


def _refused(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


@pytest.mark.parametrize(
    ("handler", "message"),
    [(_unauthorized, "rejected: HTTP 401"), (_refused, "failed: refused")],
)
def test_http_kicker_never_raises(handler, message: str, caplog: pytest.LogCaptureFixture) -> None:
    kicker = HttpKicker(
        app_url="https://relay.example",
        cron_secret="s3cret",
        transport=httpx.MockTransport(handler),
    )

    with caplog.at_level(logging.WARNING, logger="taskrelay.tasks.trigger"):
        kicker.post("task-1")

    assert message in caplog.text


def test_http_kicker_does_not_wait_for_slow_processing(caplog: pytest.LogCaptureFixture) -> None:
    def _slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("still working", request=request)

    kicker = HttpKicker(
        app_url="https://relay.example",
        cron_secret="s3cret",
        transport=httpx.MockTransport(_slow),
    )

    with caplog.at_level(logging.WARNING, logger="taskrelay.tasks.trigger"):
        kicker.post("task-1")

    assert caplog.text == ""


def test_build_kicker_picks_transport_from_settings(
    make_processor: Callable[..., TaskProcessor],
) -> None:
    processor = make_processor()

    local = build_kicker(Settings(), processor)
    remote = build_kicker(
        Settings(trigger=TriggerSettings(cron_secret="s", app_url="https://relay.example")),
        processor,
    )

    assert isinstance(local, ThreadKicker)
    assert isinstance(remote, HttpKicker)
