"""Follows a session's job over the push channel, with polling as a fallback."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from typing import Any

import httpx

from taskrelay.client.progress import ProgressView, ReconnectBackoff, StepLabeler, build_progress
from taskrelay.config import ClientSettings

logger = logging.getLogger(__name__)

STREAM_PATH = "/tasks/stream"
EVENTS_PATH = "/tasks/events"
AUTH_FAILURE_CODES = frozenset({401, 403})


class StreamClosedError(Exception):
    """Server ended the push channel before the job finished."""


class SessionAccessError(Exception):
    """Server rejected the credentials; reconnecting cannot help."""


def _raise_for_status(response: httpx.Response) -> None:
    if response.status_code in AUTH_FAILURE_CODES:
        raise SessionAccessError(
            f"Access to {response.request.url.path} denied: HTTP {response.status_code}",
        )
    response.raise_for_status()


def iter_sse(lines: Iterator[str]) -> Iterator[tuple[str, str]]:
    """Parse SSE lines into `(event, data)` pairs; comment lines are skipped."""

    event = "message"
    data: list[str] = []
    for line in lines:
        if not line:
            if data:
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value.removeprefix(" ")
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
    if data:
        yield event, "\n".join(data)


class SessionTracker:
    """Tracks the latest job of a session until it finishes.

    On a channel error or server close it polls the events endpoint every
    `poll_interval_seconds` while waiting out the reconnect delay, then
    reconnects. The backoff resets whenever a connection is accepted. A 401 or
    403 raises `SessionAccessError` instead.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        client: httpx.Client,
        session_id: str,
        job_id: str | None = None,
        settings: ClientSettings | None = None,
        step_labels: StepLabeler | None = None,
        on_progress: Callable[[ProgressView], Any] | None = None,
        on_finished: Callable[[ProgressView], Any] | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = settings or ClientSettings()
        self.client = client
        self.session_id = session_id
        self.job_id = job_id
        self.poll_interval_seconds = settings.poll_interval_seconds
        self.step_labels = step_labels
        self.on_progress = on_progress
        self.on_finished = on_finished
        self.backoff = ReconnectBackoff(
            base_seconds=settings.reconnect_base_seconds,
            max_seconds=settings.reconnect_max_seconds,
        )
        self.reconnect_delays: list[float] = []
        self.view = ProgressView()
        self._sleep = sleep
        self._clock = clock
        self._last_snapshot: str | None = None

    @property
    def finished(self) -> bool:
        return self.view.is_finished

    def run(self) -> ProgressView:
        """Block until the job is finished; returns the final view."""

        while not self.finished:
            try:
                self._consume_stream()
            except (httpx.HTTPError, StreamClosedError, ValueError) as error:
                logger.warning("Push channel for session %s lost: %s", self.session_id, error)
            if self.finished:
                break
            delay = self.backoff.next_delay()
            self.reconnect_delays.append(delay)
            logger.info("Reconnecting session %s in %.1fs.", self.session_id, delay)
            self._poll_for(delay)

        if self.on_finished is not None:
            self.on_finished(self.view)
        return self.view

    def _consume_stream(self) -> None:
        with self.client.stream(
            "GET",
            STREAM_PATH,
            params={"session_id": self.session_id, "resource": "events"},
        ) as response:
            _raise_for_status(response)
            self.backoff.reset()
            for event, data in iter_sse(response.iter_lines()):
                if event == "error":
                    logger.warning("Push channel error for session %s: %s", self.session_id, data)
                    continue
                self._apply(json.loads(data))
                if self.finished:
                    return
        raise StreamClosedError("Server closed the push channel")

    def _poll_for(self, seconds: float) -> None:
        deadline = self._clock() + seconds
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return
            self._sleep(min(self.poll_interval_seconds, remaining))
            try:
                self.poll_once()
            except (httpx.HTTPError, ValueError) as error:
                logger.warning("Polling session %s failed: %s", self.session_id, error)
                continue
            if self.finished:
                return

    def poll_once(self) -> ProgressView:
        response = self.client.get(EVENTS_PATH, params={"session_id": self.session_id})
        _raise_for_status(response)
        self._apply(response.json().get("events", []))
        return self.view

    def _apply(self, events: list[dict[str, Any]]) -> None:
        snapshot = json.dumps(events, sort_keys=True)
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        self.view = build_progress(events, self.step_labels, job_id=self.job_id)
        if self.on_progress is not None:
            self.on_progress(self.view)
