"""Domain errors raised by the task engine."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid runtime configuration."""


class TaskNotFoundError(LookupError):
    """Task id does not exist (or is not visible to the caller)."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(RuntimeError):
    """Requested transition is not valid from the task's current status."""


class UnknownTaskTypeError(ValueError):
    """Task type does not map to a registered workflow node."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"Unknown task type: {task_type!r}")
        self.task_type = task_type


class TaskAccessError(PermissionError):
    """Caller does not own the task."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} belongs to another user")
        self.task_id = task_id
