"""Deterministic in-process compute adapter for local runs and tests."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from uuid import uuid4

from generation_engine.compute.base import ComputeUnavailable, JobResults, JobState, JobStatus
from generation_engine.errors import SubmissionError
from generation_engine.tasks.models import GenerationRequest

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image": "png",
    "video": "mp4",
    "audio": "wav",
    "text": "txt",
    "training": "safetensors",
}


@dataclass(slots=True)
class _EchoJob:
    task_id: str
    request: GenerationRequest
    checks: int = 0
    state: JobState = JobState.QUEUED
    outputs: list[str] = field(default_factory=list)


class EchoComputeAdapter:
    """Completes every job after a fixed number of status checks.

    Knobs drive the failure paths: ``fail_submissions`` rejects ``submit``,
    ``final_state`` picks how jobs end, ``unavailable_checks`` makes the first
    N status checks raise :class:`ComputeUnavailable`, and
    ``results_success=False`` reports completed jobs with unusable results.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        checks_until_done: int = 1,
        final_state: JobState = JobState.COMPLETED,
        fail_submissions: bool = False,
        unavailable_checks: int = 0,
        results_success: bool = True,
        name: str = "echo",
    ) -> None:
        if checks_until_done < 1:
            raise ValueError("checks_until_done must be >= 1")
        self.checks_until_done = checks_until_done
        self.final_state = final_state
        self.fail_submissions = fail_submissions
        self.unavailable_checks = unavailable_checks
        self.results_success = results_success
        self.name = name
        self._lock = threading.Lock()
        self._jobs: dict[str, _EchoJob] = {}
        self._status_calls = 0

    def submit(self, task_id: str, request: GenerationRequest) -> str:
        if self.fail_submissions:
            raise SubmissionError(
                f"{self.name} rejected job for task {task_id}",
                details={"task_id": task_id},
            )
        job_id = f"{self.name}-{uuid4().hex[:12]}"
        with self._lock:
            self._jobs[job_id] = _EchoJob(task_id=task_id, request=request)
        logger.debug("Echo job %s submitted for task %s", job_id, task_id)
        return job_id

    def check_status(self, job_id: str) -> JobStatus:
        with self._lock:
            self._status_calls += 1
            if self._status_calls <= self.unavailable_checks:
                raise ComputeUnavailable(f"{self.name} is unreachable")
            job = self._jobs.get(job_id)
            if job is None:
                return JobStatus(state=JobState.FAILED, error_detail=f"Unknown job: {job_id}")
            if job.state.is_terminal:
                return self._status_of(job)
            job.checks += 1
            if job.checks >= self.checks_until_done:
                job.state = self.final_state
                if job.state == JobState.COMPLETED:
                    job.outputs = _outputs_for(job_id, job.request)
            else:
                job.state = JobState.RUNNING
            return self._status_of(job)

    def get_results(self, job_id: str) -> JobResults:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.COMPLETED:
                return JobResults(success=False, error_detail=f"Job {job_id} has no results")
            if not self.results_success:
                return JobResults(success=False, error_detail="No outputs produced")
            return JobResults(
                success=True,
                outputs=list(job.outputs),
                metadata={"adapter": self.name, "job_id": job_id},
            )

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state.is_terminal:
                return False
            job.state = JobState.CANCELLED
            return True

    def job_state(self, job_id: str) -> JobState:
        with self._lock:
            return self._job(job_id).state

    @property
    def submitted_jobs(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def _job(self, job_id: str) -> _EchoJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")
        return job

    def _status_of(self, job: _EchoJob) -> JobStatus:
        progress = min(1.0, job.checks / self.checks_until_done)
        error_detail = None
        if job.state == JobState.FAILED:
            error_detail = f"{self.name} job failed"
        elif job.state == JobState.CANCELLED:
            error_detail = f"{self.name} job cancelled"
        return JobStatus(state=job.state, progress=progress, error_detail=error_detail)


def _outputs_for(job_id: str, request: GenerationRequest) -> list[str]:
    extension = _EXTENSIONS.get(request.work_type, "bin")
    count = request.cost_parameters.batch or 1
    return [f"echo://{job_id}/output-{index}.{extension}" for index in range(count)]
