"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from pathlib import Path

import pytest

from taskrelay.graph.echo import build_registry
from taskrelay.graph.routing import NodeHandler
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.processor import TaskProcessor
from taskrelay.tasks.repository import TaskRepository


class RecordingKicker:
    """Kicker that only remembers which tasks it was asked to run."""

    def __init__(self) -> None:
        self.kicked: list[str] = []

    def kick(self, task_id: str) -> None:
        self.kicked.append(task_id)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    repository = TaskRepository(tmp_path / "tasks.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def events(repository: TaskRepository) -> EventLog:
    return EventLog(repository.engine)


@pytest.fixture()
def kicker() -> RecordingKicker:
    return RecordingKicker()


@pytest.fixture()
def make_processor(
    repository: TaskRepository,
    events: EventLog,
    kicker: RecordingKicker,
) -> Callable[..., TaskProcessor]:
    def _make(
        handlers: Mapping[str, NodeHandler] | None = None,
        *,
        max_retries: int = 3,
        stale_after_seconds: int = 300,
    ) -> TaskProcessor:
        return TaskProcessor(
            repository=repository,
            events=events,
            registry=build_registry(handlers),
            max_retries=max_retries,
            stale_after_seconds=stale_after_seconds,
            kicker=kicker,
        )

    return _make
