"""External compute service contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from generation_engine.tasks.models import GenerationRequest


class JobState(str, Enum):
    """Job states reported by an external compute service."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}


@dataclass(slots=True)
class JobStatus:
    """One status observation."""

    state: JobState
    progress: float = 0.0
    error_detail: str | None = None


@dataclass(slots=True)
class JobResults:
    """Final results of a completed job."""

    success: bool
    outputs: list[Any] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    error_detail: str | None = None


class ComputeUnavailable(RuntimeError):
    """Adapter could not reach the compute service (infrastructure, not business)."""


@runtime_checkable
class ExternalComputeAdapter(Protocol):
    """Protocol implemented by compute service clients."""

    def submit(self, task_id: str, request: GenerationRequest) -> str:
        """Start a job and return its external identifier.

        Raises ``SubmissionError`` when the job could not be started.
        """

    def check_status(self, job_id: str) -> JobStatus:
        """Report the current job state."""

    def get_results(self, job_id: str) -> JobResults:
        """Fetch outputs of a completed job."""

    def cancel(self, job_id: str) -> bool:
        """Cancel a not-yet-completed job; return whether it was cancelled."""
