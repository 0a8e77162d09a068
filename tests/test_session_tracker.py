from __future__ import annotations

import json

import allure
import httpx
import pytest

from taskrelay.client.tracker import SessionAccessError, SessionTracker, iter_sse
from taskrelay.config import ClientSettings

pytestmark = [
    allure.epic("Client"),
    allure.feature("Session Tracker"),
]

RUNNING = [
    {"event_type": "job_started", "node_key": None, "payload": {"job_id": "job-1"}},
    {"event_type": "node_started", "node_key": "router", "payload": {"job_id": "job-1"}},
]
FINISHED = [
    *RUNNING,
    {"event_type": "node_completed", "node_key": "router", "payload": {"job_id": "job-1"}},
    {"event_type": "job_completed", "node_key": None, "payload": {"job_id": "job-1"}},
]


class FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _sse(*snapshots: list) -> bytes:
    return "".join(f"data: {json.dumps(snapshot)}\n\n" for snapshot in snapshots).encode()


def test_iter_sse_parses_events_and_skips_comments() -> None:
    lines = [
        ":",
        "",
        "data: [1]",
        "",
        "event: error",
        'data: {"error": "x"}',
        "",
        "data: tail",
    ]

    assert list(iter_sse(iter(lines))) == [
        ("message", "[1]"),
        ("error", '{"error": "x"}'),
        ("message", "tail"),
    ]


def test_tracker_follows_stream_until_job_finishes() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/tasks/stream"
        assert request.url.params["session_id"] == "session-1"
        return httpx.Response(200, content=_sse(RUNNING, FINISHED))

    views = []
    finished = []
    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            on_progress=views.append,
            on_finished=finished.append,
        )
        view = tracker.run()

    assert view.is_finished
    assert [item.is_active for item in views] == [True, False]
    assert finished == [view]
    assert tracker.reconnect_delays == []


def test_tracker_backs_off_and_polls_while_the_stream_is_down() -> None:
    failures = {"stream": 0}
    polls: list[float] = []
    fake_time = FakeTime()

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/tasks/events":
            polls.append(fake_time.now)
            return httpx.Response(200, json={"events": RUNNING})
        failures["stream"] += 1
        if failures["stream"] <= 5:
            return httpx.Response(503)
        return httpx.Response(200, content=_sse(FINISHED))

    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            settings=ClientSettings(poll_interval_seconds=1.5),
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )
        view = tracker.run()

    assert tracker.reconnect_delays == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert view.is_finished
    assert sum(fake_time.sleeps) == sum(tracker.reconnect_delays)
    assert max(fake_time.sleeps) <= 1.5
    assert len(polls) == len(fake_time.sleeps)


def test_tracker_finishes_from_polling_without_reconnecting() -> None:
    fake_time = FakeTime()

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/tasks/events":
            return httpx.Response(200, json={"events": FINISHED})
        return httpx.Response(200, content=_sse(RUNNING))

    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )
        view = tracker.run()

    assert view.is_finished
    assert tracker.reconnect_delays == [1.0]
    assert fake_time.sleeps == [1.0]


def test_connection_accepted_resets_backoff() -> None:
    fake_time = FakeTime()
    streams = {"count": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/tasks/events":
            return httpx.Response(200, json={"events": RUNNING})
        streams["count"] += 1
        if streams["count"] in (1, 2):
            return httpx.Response(502)
        if streams["count"] == 3:
            return httpx.Response(200, content=_sse(RUNNING))
        return httpx.Response(200, content=_sse(FINISHED))

    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )
        tracker.run()

    assert tracker.reconnect_delays == [1.0, 2.0, 1.0]


@pytest.mark.parametrize("status_code", [401, 403])
def test_rejected_credentials_stop_the_tracker(status_code: int) -> None:
    fake_time = FakeTime()
    requests: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        return httpx.Response(status_code)

    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )
        with pytest.raises(SessionAccessError, match=str(status_code)):
            tracker.run()

    assert requests == ["/tasks/stream"]
    assert tracker.reconnect_delays == []
    assert fake_time.sleeps == []


def test_rejected_credentials_while_polling_stop_the_tracker() -> None:
    fake_time = FakeTime()

    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/tasks/events":
            return httpx.Response(401)
        return httpx.Response(503)

    with httpx.Client(base_url="http://relay", transport=httpx.MockTransport(_handler)) as client:
        tracker = SessionTracker(
            client=client,
            session_id="session-1",
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )
        with pytest.raises(SessionAccessError):
            tracker.run()

    assert tracker.reconnect_delays == [1.0]
    assert len(fake_time.sleeps) == 1
