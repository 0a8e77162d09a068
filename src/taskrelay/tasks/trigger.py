"""Ways to get claimed work executed: the periodic sweep and the immediate kick.

The kick is best-effort. Anything it misses (dropped request, crashed thread)
is picked up by the next sweep, either as a pending task or, once the lease
expires, as a stale in-progress one.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from taskrelay.config import Settings
from taskrelay.tasks.processor import TaskProcessor

logger = logging.getLogger(__name__)

PROCESS_PATH = "/tasks/{task_id}/process"
KICK_CONNECT_TIMEOUT_SECONDS = 2.0
KICK_READ_TIMEOUT_SECONDS = 1.0


@dataclass(slots=True)
class SweepSummary:
    """Counters reported by the cron endpoint and the CLI."""

    processed: int = 0
    completed: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "completed": self.completed, "failed": self.failed}


def sweep(
    processor: TaskProcessor,
    *,
    max_tasks: int,
    stale_after_seconds: int | None = None,
) -> SweepSummary:
    """Claim one batch and process it; one broken task never stops the batch."""

    tasks = processor.repository.claim(
        max_tasks=max_tasks,
        stale_after_seconds=(
            stale_after_seconds
            if stale_after_seconds is not None
            else processor.stale_after_seconds
        ),
    )
    summary = SweepSummary()
    for task in tasks:
        summary.processed += 1
        try:
            outcome = processor.process(task)
        except Exception:
            logger.exception("Unexpected error processing task %s (%s).", task.id, task.task_type)
            summary.failed += 1
            continue
        if outcome.ok:
            summary.completed += 1
        else:
            summary.failed += 1

    logger.info(
        "Sweep finished: processed=%d completed=%d failed=%d",
        summary.processed,
        summary.completed,
        summary.failed,
    )
    return summary


class Kicker(Protocol):
    """Requests immediate processing of a task without waiting for it."""

    def kick(self, task_id: str) -> None: ...


class ThreadKicker:
    """Processes the task on a detached daemon thread (local runs)."""

    def __init__(self, process: Callable[[str], Any]) -> None:
        self._process = process

    def kick(self, task_id: str) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(task_id,),
            name=f"taskrelay-kick-{task_id[:8]}",
            daemon=True,
        )
        thread.start()

    def _run(self, task_id: str) -> None:
        try:
            self._process(task_id)
        except Exception:
            logger.exception("Kick failed for task %s; the sweep will pick it up.", task_id)


class HttpKicker:
    """POSTs to the internal process endpoint with the shared secret (serverless hosts).

    The request runs on a daemon thread and only waits briefly for the
    response: the receiving invocation keeps working after we stop listening.
    """

    def __init__(
        self,
        *,
        app_url: str,
        cron_secret: str,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._app_url = app_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {cron_secret}"}
        self._timeout = httpx.Timeout(
            KICK_READ_TIMEOUT_SECONDS,
            connect=KICK_CONNECT_TIMEOUT_SECONDS,
        )
        self._transport = transport

    def kick(self, task_id: str) -> None:
        thread = threading.Thread(
            target=self.post,
            args=(task_id,),
            name=f"taskrelay-kick-{task_id[:8]}",
            daemon=True,
        )
        thread.start()

    def post(self, task_id: str) -> None:
        """Send one kick request; errors are logged and swallowed."""

        url = self._app_url + PROCESS_PATH.format(task_id=task_id)
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(url, headers=self._headers)
        except httpx.ReadTimeout:
            logger.debug("Kick for task %s dispatched, not waiting for completion.", task_id)
            return
        except httpx.HTTPError as exc:
            logger.warning("Kick for task %s failed: %s", task_id, exc)
            return
        if not response.is_success:
            logger.warning("Kick for task %s rejected: HTTP %d", task_id, response.status_code)


def build_kicker(settings: Settings, processor: TaskProcessor) -> Kicker:
    """HTTP kicker when an app URL is configured, in-process thread otherwise."""

    if settings.trigger.app_url:
        return HttpKicker(
            app_url=settings.trigger.app_url,
            cron_secret=settings.trigger.cron_secret,
        )
    return ThreadKicker(processor.process_by_id)
