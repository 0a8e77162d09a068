"""Server-sent events over a polling loop.

Each tick re-reads the session snapshot and pushes it only when it changed.
Delivery is at-least-once: a reconnecting client receives the full current
snapshot again and must treat frames idempotently.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ":\n\n"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(data: Any, event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"{prefix}data: {payload}\n\n"


def _serialize(snapshot: Any) -> str:
    return json.dumps(snapshot, ensure_ascii=False, sort_keys=True, default=str)


async def stream_snapshots(  # noqa: PLR0913
    fetch: Callable[[], Any],
    *,
    poll_interval_seconds: float,
    keepalive_interval_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncIterator[str]:
    """Yield SSE frames until the client goes away.

    `fetch` is blocking (it hits the database) and runs in a worker thread.
    Fetch errors are reported as `event: error` frames; the channel stays open.
    """

    last_payload: str | None = None
    last_keepalive = clock()
    while True:
        if is_disconnected is not None and await is_disconnected():
            logger.debug("Stream client disconnected.")
            return

        try:
            snapshot = await asyncio.to_thread(fetch)
        except Exception as error:  # noqa: BLE001
            logger.warning("Stream fetch failed: %s", error)
            yield sse_event({"error": str(error) or type(error).__name__}, event="error")
        else:
            payload = _serialize(snapshot)
            if payload != last_payload:
                last_payload = payload
                yield sse_event(payload)

        now = clock()
        if now - last_keepalive >= keepalive_interval_seconds:
            last_keepalive = now
            yield KEEPALIVE_FRAME

        await sleep(poll_interval_seconds)


def stream_response(generator: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(generator, media_type="text/event-stream", headers=SSE_HEADERS)
