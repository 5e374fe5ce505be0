"""Orchestrator error taxonomy with stable codes."""

from __future__ import annotations


class TryOnError(Exception):
    """Base error surfaced to API and CLI callers."""

    code = "TRYON_ERROR"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ValidationError(TryOnError):
    """Input assets are missing, invalid, or do not match the requested mode."""

    code = "VALIDATION_ERROR"


class TaskNotFoundError(TryOnError):
    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Try-on task not found: {task_id}")
        self.task_id = task_id


class InvalidStateTransition(TryOnError):
    """Requested operation is not allowed from the task's current state."""

    code = "INVALID_STATE_TRANSITION"


class RetryLimitExceeded(TryOnError):
    code = "RETRY_LIMIT_EXCEEDED"


class TaskStateConflict(TryOnError):
    """Task changed concurrently between read and compare-and-set write."""

    code = "TASK_STATE_CONFLICT"


class ResultNotAvailable(TryOnError):
    """Task has no readable result file."""

    code = "RESULT_NOT_AVAILABLE"


class MaterializationError(TryOnError):
    """Download, decode or persist of a provider result failed."""

    code = "RESULT_PROCESSING_FAILED"
