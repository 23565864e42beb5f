"""Business error taxonomy for the generation engine.

Every error carries a stable machine-readable ``code`` plus a ``details``
mapping so callers (CLI, HTTP routes, chat handlers) can render them without
parsing messages. Storage and adapter connectivity failures are deliberately
not part of this hierarchy and propagate as-is.
"""

from __future__ import annotations

from typing import Any


class GenerationEngineError(Exception):
    """Base class for user-facing business conditions."""

    code: str = "ENGINE_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class ValidationError(GenerationEngineError):
    """Malformed request, rejected before any persistence or charge."""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: list[str]) -> None:
        super().__init__(
            f"Invalid generation request: {', '.join(errors)}",
            details={"errors": list(errors)},
        )
        self.errors = tuple(errors)


class InsufficientCredits(GenerationEngineError):
    """Balance too low at debit time."""

    code = "INSUFFICIENT_CREDITS"

    def __init__(self, *, user_id: str, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits for user {user_id}: required={required} available={available}",
            details={"user_id": user_id, "required": required, "available": available},
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class SubmissionError(GenerationEngineError):
    """External job could not be started; the charge has been refunded."""

    code = "SUBMISSION_ERROR"


class ProcessingError(GenerationEngineError):
    """External job failed mid-flight; the charge has been refunded."""

    code = "PROCESSING_ERROR"


class PollingTimeout(GenerationEngineError):
    """Polling budget exhausted without a terminal job status."""

    code = "POLLING_TIMEOUT"

    def __init__(self, *, task_id: str, attempts: int, budget_seconds: float) -> None:
        super().__init__(
            f"Task {task_id} did not reach a terminal status after {attempts} polls "
            f"({budget_seconds:g}s budget)",
            details={"task_id": task_id, "attempts": attempts, "budget_seconds": budget_seconds},
        )
        self.task_id = task_id
        self.attempts = attempts


class PollingCancelled(GenerationEngineError):
    """Polling activity stopped by its cancellation token."""

    code = "POLLING_CANCELLED"

    def __init__(self, *, task_id: str, attempts: int) -> None:
        super().__init__(
            f"Polling for task {task_id} cancelled after {attempts} polls",
            details={"task_id": task_id, "attempts": attempts},
        )
        self.task_id = task_id
        self.attempts = attempts


class TaskNotFound(GenerationEngineError):
    """Unknown task identifier."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", details={"task_id": task_id})
        self.task_id = task_id


class InvalidState(GenerationEngineError):
    """Operation attempted against a task outside its required status."""

    code = "INVALID_STATE"

    def __init__(self, *, task_id: str, current: str, required: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} task {task_id}: status is {current}, expected {required}",
            details={
                "task_id": task_id,
                "current": current,
                "required": required,
                "operation": operation,
            },
        )
        self.task_id = task_id
        self.current = current
        self.required = required


class DuplicateTransaction(GenerationEngineError):
    """A ledger entry for the same task reference already exists."""

    code = "DUPLICATE_TRANSACTION"


class ConfigurationError(GenerationEngineError):
    """Engine wiring is inconsistent (for example a work type without an adapter)."""

    code = "CONFIGURATION_ERROR"
