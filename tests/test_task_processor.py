from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import allure
import pytest

from taskrelay.graph.workflows import MAX_REWRITES
from taskrelay.storage.common import utc_now
from taskrelay.tasks.events import EventLog
from taskrelay.tasks.models import CANCELLED_ERROR, TaskCreate, TaskEventType, TaskStatus
from taskrelay.tasks.processor import TaskProcessor
from taskrelay.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Task Processor"),
]

MakeProcessor = Callable[..., TaskProcessor]


def _enqueue(repository: TaskRepository, task_type: str, state: dict | None = None) -> str:
    return repository.enqueue(
        TaskCreate(
            user_id="user-1",
            session_id="session-1",
            task_type=task_type,
            input={"state": state or {}},
        ),
    ).id


def _drain(processor: TaskProcessor, task_id: str, *, limit: int = 50) -> list[str]:
    """Follow a chain by processing each successor until none is returned."""

    visited: list[str] = []
    pending = [task_id]
    while pending:
        current = pending.pop(0)
        visited.append(current)
        assert len(visited) <= limit
        outcome = processor.process_by_id(current)
        pending.extend(outcome.next_task_ids)
    return visited


def _event_types(events: EventLog, task_id: str) -> list[TaskEventType]:
    return [event.event_type for event in events.fetch_by_task(task_id)]


def test_successful_node_persists_output_and_enqueues_successor(
    repository: TaskRepository,
    events: EventLog,
    kicker,
    make_processor: MakeProcessor,
) -> None:
    root_id = _enqueue(repository, "root.save_user_message", {"foo": 1})

    outcome = make_processor().process_by_id(root_id)

    assert outcome.ok
    assert len(outcome.next_task_ids) == 1
    root = repository.fetch_by_id(root_id)
    child = repository.fetch_by_id(outcome.next_task_ids[0])
    assert root.status is TaskStatus.COMPLETED
    assert root.output["state"]["foo"] == 1
    assert "user_message_id" in root.output["state"]
    assert child.task_type == "root.memory_retriever"
    assert child.status is TaskStatus.PENDING
    assert child.parent_task_id == root_id
    assert child.input == {"state": root.output["state"]}
    assert kicker.kicked == [child.id]
    assert _event_types(events, root_id) == [
        TaskEventType.JOB_STARTED,
        TaskEventType.NODE_STARTED,
        TaskEventType.NODE_COMPLETED,
    ]


def test_failing_node_is_retried_then_failed_terminally(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
) -> None:
    calls: list[int] = []

    def _explode(state: dict) -> dict:
        calls.append(1)
        raise RuntimeError("model unavailable")

    processor = make_processor({"daily.classifier_agent": _explode}, max_retries=2)
    task_id = _enqueue(repository, "daily.classifier_agent", {"message": "hi"})

    outcomes = []
    for _ in range(5):
        outcome = processor.process_by_id(task_id)
        if not outcome.claimed:
            break
        outcomes.append(outcome)

    task = repository.fetch_by_id(task_id)
    assert len(calls) == 3
    assert [outcome.ok for outcome in outcomes] == [False, False, False]
    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 3
    assert task.last_error == "model unavailable"
    types = _event_types(events, task_id)
    assert types.count(TaskEventType.NODE_FAILED) == 3
    assert TaskEventType.NODE_COMPLETED not in types
    assert types[-1] is TaskEventType.JOB_FAILED
    assert repository.fetch_by_session(session_id="session-1", user_id="user-1") == [task]


def test_retry_requeues_pending_with_error(
    repository: TaskRepository,
    make_processor: MakeProcessor,
) -> None:
    def _explode(state: dict) -> dict:
        raise ValueError

    task_id = _enqueue(repository, "root.save_user_message")

    outcome = make_processor({"root.save_user_message": _explode}).process_by_id(task_id)

    task = repository.fetch_by_id(task_id)
    assert not outcome.ok
    assert outcome.error == "ValueError"
    assert task.status is TaskStatus.PENDING
    assert task.retry_count == 1


def test_unknown_task_type_fails_without_retry(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
) -> None:
    task_id = _enqueue(repository, "mystery.node")

    outcome = make_processor().process_by_id(task_id)

    task = repository.fetch_by_id(task_id)
    assert not outcome.ok
    assert task.status is TaskStatus.FAILED
    assert task.retry_count == 0
    assert "mystery.node" in task.last_error
    assert _event_types(events, task_id) == [TaskEventType.JOB_FAILED]


def test_cancel_before_run_skips_the_handler(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
) -> None:
    calls: list[int] = []

    def _tracked(state: dict) -> dict:
        calls.append(1)
        return {}

    task_id = _enqueue(repository, "root.save_user_message")
    held = repository.claim_by_id(task_id, stale_after_seconds=300)
    repository.cancel_task(task_id)
    canceled = repository.fetch_by_id(task_id)

    outcome = make_processor({"root.save_user_message": _tracked}).process(canceled)

    assert held is not None
    assert not outcome.ok
    assert calls == []
    assert repository.fetch_by_id(task_id).status is TaskStatus.FAILED
    job_failed = events.fetch_by_task(task_id)[-1]
    assert job_failed.event_type is TaskEventType.JOB_FAILED
    assert job_failed.payload["canceled"] is True
    assert job_failed.payload["error"] == CANCELLED_ERROR


def test_cancel_during_run_stops_the_chain(
    repository: TaskRepository,
    events: EventLog,
    kicker,
    make_processor: MakeProcessor,
) -> None:
    task_id = _enqueue(repository, "root.save_user_message")

    def _cancel_midway(state: dict) -> dict:
        repository.cancel_task(task_id)
        return {"saved": True}

    outcome = make_processor({"root.save_user_message": _cancel_midway}).process_by_id(task_id)

    assert outcome.ok
    assert outcome.next_task_ids == []
    assert kicker.kicked == []
    assert repository.fetch_by_id(task_id).status is TaskStatus.COMPLETED
    assert len(repository.fetch_by_session(session_id="session-1", user_id="user-1")) == 1
    assert _event_types(events, task_id)[-1] is TaskEventType.JOB_FAILED


def test_lost_lease_discards_the_result(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
) -> None:
    task_id = _enqueue(repository, "root.save_user_message")

    def _slow(state: dict) -> dict:
        repository.force_status(
            task_id,
            status=TaskStatus.IN_PROGRESS,
            updated_at=utc_now() - timedelta(seconds=600),
        )
        assert repository.claim_by_id(task_id, stale_after_seconds=300) is not None
        return {"late": True}

    outcome = make_processor({"root.save_user_message": _slow}).process_by_id(task_id)

    task = repository.fetch_by_id(task_id)
    assert not outcome.ok
    assert outcome.error == "Lease lost"
    assert task.status is TaskStatus.IN_PROGRESS
    assert task.attempt == 2
    assert task.output is None
    assert _event_types(events, task_id) == [
        TaskEventType.JOB_STARTED,
        TaskEventType.NODE_STARTED,
    ]


def test_process_by_id_skips_held_tasks(
    repository: TaskRepository,
    make_processor: MakeProcessor,
) -> None:
    task_id = _enqueue(repository, "root.save_user_message")
    repository.claim_by_id(task_id, stale_after_seconds=300)

    outcome = make_processor().process_by_id(task_id)

    assert not outcome.ok
    assert not outcome.claimed


@pytest.mark.parametrize(
    ("task_type", "state", "expected_last"),
    [
        ("root.save_user_message", {"message": "hello there"}, "root.save_assistant_message"),
        ("daily.classifier_agent", {"message": "Went running"}, "daily.save_events"),
        ("daily.classifier_agent", {"message": "How far did I run?"}, "daily.save_events"),
        ("orchestrator.router", {"message": "find my notes"}, "orchestrator.save_messages"),
    ],
)
def test_chains_reach_a_single_terminal_job_event(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
    task_type: str,
    state: dict,
    expected_last: str,
) -> None:
    root_id = _enqueue(repository, task_type, state)

    chain = _drain(make_processor(), root_id)

    tasks = [repository.fetch_by_id(task_id) for task_id in chain]
    assert all(task.status is TaskStatus.COMPLETED for task in tasks)
    assert tasks[-1].task_type == expected_last
    job_events = [
        event
        for event in events.fetch_by_session(session_id="session-1", user_id="user-1")
        if event.event_type in (TaskEventType.JOB_COMPLETED, TaskEventType.JOB_FAILED)
    ]
    assert len(job_events) == 1
    assert job_events[0].event_type is TaskEventType.JOB_COMPLETED
    assert job_events[0].payload["job_id"] == root_id
    assert job_events[0].task_id == chain[-1]


def test_orchestrator_rewrite_loop_terminates(
    repository: TaskRepository,
    make_processor: MakeProcessor,
) -> None:
    root_id = _enqueue(
        repository,
        "orchestrator.router",
        {"message": "obscure", "relevant_after_rewrites": 99},
    )

    chain = _drain(make_processor(), root_id)

    task_types = [repository.fetch_by_id(task_id).task_type for task_id in chain]
    assert task_types.count("orchestrator.rewrite_query") == MAX_REWRITES
    assert task_types[-1] == "orchestrator.save_messages"
    final_state = repository.fetch_by_id(chain[-1]).output["state"]
    assert final_state["rewrite_count"] == MAX_REWRITES


def test_skip_reply_ends_orchestrator_job_at_router(
    repository: TaskRepository,
    events: EventLog,
    make_processor: MakeProcessor,
) -> None:
    root_id = _enqueue(repository, "orchestrator.router", {"skip_reply": True})

    outcome = make_processor().process_by_id(root_id)

    assert outcome.ok
    assert outcome.next_task_ids == []
    assert _event_types(events, root_id)[-1] is TaskEventType.JOB_COMPLETED
