"""Progress view derived purely from a session's event timeline."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from taskrelay.tasks.models import JOB_EVENT_TYPES, JOB_TERMINAL_EVENT_TYPES, TaskEventType

StepLabeler = Callable[[str], str] | Mapping[str, str]

_NODE_STATUS = {
    TaskEventType.NODE_STARTED.value: "running",
    TaskEventType.NODE_COMPLETED.value: "completed",
    TaskEventType.NODE_FAILED.value: "error",
}
# Events arrive as JSON, so match on the wire values.
_JOB_EVENTS = frozenset(event_type.value for event_type in JOB_EVENT_TYPES)
_JOB_TERMINAL_EVENTS = frozenset(event_type.value for event_type in JOB_TERMINAL_EVENT_TYPES)


@dataclass(slots=True)
class ProgressStep:
    node_key: str
    label: str
    status: str


@dataclass(slots=True)
class ProgressView:
    """What a client renders while a job runs."""

    job_id: str | None = None
    steps: list[ProgressStep] = field(default_factory=list)
    is_active: bool = False
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.job_id is not None and not self.is_active


def _job_id(event: Mapping[str, Any]) -> str | None:
    payload = event.get("payload") or {}
    job_id = payload.get("job_id") if isinstance(payload, Mapping) else None
    return str(job_id) if job_id else None


def select_job_id(events: Sequence[Mapping[str, Any]]) -> str | None:
    """Latest `job_started` job id, else the job id most events share."""

    for event in reversed(events):
        if event.get("event_type") == TaskEventType.JOB_STARTED.value:
            job_id = _job_id(event)
            if job_id:
                return job_id
    counts = Counter(job_id for job_id in map(_job_id, events) if job_id)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _label(step_labels: StepLabeler | None, node_key: str) -> str:
    if step_labels is None:
        return node_key
    if callable(step_labels):
        return step_labels(node_key)
    return step_labels.get(node_key, node_key)


def build_progress(
    events: Sequence[Mapping[str, Any]],
    step_labels: StepLabeler | None = None,
    *,
    job_id: str | None = None,
) -> ProgressView:
    """Fold ordered events (oldest first) into one `ProgressView`.

    Steps appear in first-seen order, one per node. A completed step stays
    completed; a later attempt's `node_started` moves an errored step back to
    running. `job_id` pins the job instead of selecting the latest one.
    """

    pinned = job_id is not None
    job_id = job_id or select_job_id(events)
    if job_id is None:
        return ProgressView()

    steps: dict[str, ProgressStep] = {}
    last_job_event: Mapping[str, Any] | None = None
    has_events = False
    for event in events:
        if _job_id(event) != job_id:
            continue
        has_events = True
        event_type = event.get("event_type")
        if event_type in _JOB_EVENTS:
            last_job_event = event
            continue
        node_key = event.get("node_key")
        status = _NODE_STATUS.get(str(event_type))
        if not node_key or status is None:
            continue
        step = steps.get(node_key)
        if step is None:
            steps[node_key] = ProgressStep(
                node_key=node_key,
                label=_label(step_labels, node_key),
                status=status,
            )
        elif step.status != "completed":
            step.status = status

    is_active = has_events or pinned
    error = None
    if last_job_event is not None and last_job_event.get("event_type") in _JOB_TERMINAL_EVENTS:
        is_active = False
        if last_job_event.get("event_type") == TaskEventType.JOB_FAILED.value:
            payload = last_job_event.get("payload") or {}
            error = str(payload.get("error") or "Job failed")
    return ProgressView(
        job_id=job_id,
        steps=list(steps.values()),
        is_active=is_active,
        error=error,
    )


class ReconnectBackoff:
    """Exponential reconnect delay: `base * 2**n`, capped."""

    def __init__(self, *, base_seconds: float = 1.0, max_seconds: float = 10.0) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.attempts = 0

    def next_delay(self) -> float:
        delay = min(self.base_seconds * (2**self.attempts), self.max_seconds)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0
