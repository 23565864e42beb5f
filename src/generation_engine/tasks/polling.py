"""Bounded polling of external jobs on a background thread pool."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import NoReturn

from generation_engine.compute.base import ComputeUnavailable, JobState, JobStatus
from generation_engine.compute.registry import AdapterRegistry
from generation_engine.config import PollingSettings
from generation_engine.errors import (
    InvalidState,
    PollingCancelled,
    PollingTimeout,
    ProcessingError,
)
from generation_engine.tasks.lifecycle import TaskLifecycleManager
from generation_engine.tasks.models import GenerationResponse, GenerationTaskView, TaskStatus

logger = logging.getLogger(__name__)


class TimeoutPolicy(str, Enum):
    """What happens to a task whose polling budget runs out."""

    LEAVE_PROCESSING = "leave_processing"
    FAIL_AND_REFUND = "fail_and_refund"


@dataclass(slots=True)
class PollOutcome:
    """Terminal result of one polling activity.

    ``final_state`` is ``None`` when the task left ``processing`` without this
    activity observing the job finish.
    """

    task: GenerationTaskView
    attempts: int
    final_state: JobState | None

    def raise_for_failure(self) -> None:
        """Raise ``ProcessingError`` when the task ended ``failed`` (already refunded)."""

        if self.task.status != TaskStatus.FAILED:
            return
        raise ProcessingError(
            self.task.error_detail or f"Task {self.task.task_id} failed",
            details={
                "task_id": self.task.task_id,
                "refunded": self.task.charged_amount or 0,
            },
        )


class PollHandle:
    """Handle to a scheduled polling activity."""

    def __init__(self, task_id: str, future: Future[PollOutcome], cancel_event: threading.Event):
        self.task_id = task_id
        self._future = future
        self._cancel_event = cancel_event

    def cancel(self) -> None:
        """Stop polling at the next check; the task status is not changed."""

        self._cancel_event.set()
        self._future.cancel()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> PollOutcome:
        """Wait for the outcome; re-raises ``PollingTimeout``/``PollingCancelled``."""

        if self._future.cancelled():
            raise PollingCancelled(task_id=self.task_id, attempts=0)
        return self._future.result(timeout=timeout)


class PollingSupervisor:
    """Drives ``processing`` tasks to a terminal state by polling their jobs."""

    def __init__(
        self,
        *,
        manager: TaskLifecycleManager,
        registry: AdapterRegistry,
        settings: PollingSettings | None = None,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.settings = settings or PollingSettings()
        self.timeout_policy = TimeoutPolicy(self.settings.timeout_policy)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_polls,
            thread_name_prefix="generation-poll",
        )
        self._lock = threading.Lock()
        self._handles: dict[str, PollHandle] = {}

    def supervise(self, task_id: str) -> PollHandle:
        """Schedule polling for ``task_id``; one activity per task at a time."""

        with self._lock:
            existing = self._handles.get(task_id)
            if existing is not None and not existing.done():
                return existing
            cancel_event = threading.Event()
            future = self._executor.submit(self.poll, task_id, cancel_event=cancel_event)
            handle = PollHandle(task_id, future, cancel_event)
            self._handles[task_id] = handle
        future.add_done_callback(lambda _: self._forget(task_id, handle))
        return handle

    def active_task_ids(self) -> list[str]:
        with self._lock:
            return [task_id for task_id, handle in self._handles.items() if not handle.done()]

    def shutdown(self, *, wait: bool = True) -> None:
        """Cancel every active activity and stop the pool."""

        with self._lock:
            handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def __enter__(self) -> PollingSupervisor:
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    def poll(self, task_id: str, *, cancel_event: threading.Event | None = None) -> PollOutcome:
        """Poll until the job is terminal, the budget runs out, or cancellation.

        Raises:
            PollingTimeout: ``max_attempts`` checks without a terminal status.
            PollingCancelled: ``cancel_event`` was set; the task is untouched.
        """

        cancel_event = cancel_event or threading.Event()
        attempts = 0
        while attempts < self.settings.max_attempts:
            if cancel_event.is_set():
                raise PollingCancelled(task_id=task_id, attempts=attempts)
            task = self.manager.get_task(task_id)
            if task.status != TaskStatus.PROCESSING:
                logger.info("Task %s is already %s; polling stopped", task_id, task.status.value)
                return PollOutcome(task=task, attempts=attempts, final_state=None)

            attempts += 1
            outcome = self._check_once(task, attempts)
            if outcome is not None:
                return outcome

            if attempts < self.settings.max_attempts and cancel_event.wait(
                self.settings.interval_seconds,
            ):
                raise PollingCancelled(task_id=task_id, attempts=attempts)
        self._on_timeout(task_id, attempts)

    def check_task(self, task_id: str) -> PollOutcome | None:
        """One status check without waiting; ``None`` while the job is in flight.

        The timeout policy does not apply here.
        """

        task = self.manager.get_task(task_id)
        if task.status != TaskStatus.PROCESSING:
            return PollOutcome(task=task, attempts=0, final_state=None)
        return self._check_once(task, 1)

    def _check_once(self, task: GenerationTaskView, attempts: int) -> PollOutcome | None:
        if task.external_job_id is None:
            logger.debug("Task %s has no external job yet (attempt %d)", task.task_id, attempts)
            return None
        adapter = self.registry.get(task.work_type)
        try:
            status = adapter.check_status(task.external_job_id)
        except ComputeUnavailable as error:
            logger.warning(
                "Status check for task %s failed (attempt %d/%d): %s",
                task.task_id,
                attempts,
                self.settings.max_attempts,
                error,
            )
            return None

        logger.debug(
            "Task %s job %s is %s (%.0f%%)",
            task.task_id,
            task.external_job_id,
            status.state.value,
            status.progress * 100,
        )
        if not status.state.is_terminal:
            return None
        if status.state == JobState.COMPLETED:
            return self._collect_results(task, attempts)
        return self._finish_failed(task, attempts, status)

    def _collect_results(self, task: GenerationTaskView, attempts: int) -> PollOutcome | None:
        adapter = self.registry.get(task.work_type)
        job_id = task.external_job_id or ""
        try:
            results = adapter.get_results(job_id)
        except ComputeUnavailable as error:
            logger.warning("Fetching results for task %s failed: %s", task.task_id, error)
            return None

        try:
            if not results.success:
                final = self.manager.fail_task(
                    task.task_id,
                    results.error_detail or "Job completed without usable results",
                )
                return PollOutcome(task=final, attempts=attempts, final_state=JobState.FAILED)
            final = self.manager.complete_task(
                task.task_id,
                GenerationResponse(outputs=list(results.outputs), metadata=dict(results.metadata)),
            )
        except InvalidState:
            return self._settled_elsewhere(task.task_id, attempts)
        return PollOutcome(task=final, attempts=attempts, final_state=JobState.COMPLETED)

    def _finish_failed(
        self,
        task: GenerationTaskView,
        attempts: int,
        status: JobStatus,
    ) -> PollOutcome:
        detail = status.error_detail or f"External job {status.state.value}"
        try:
            final = self.manager.fail_task(task.task_id, detail)
        except InvalidState:
            return self._settled_elsewhere(task.task_id, attempts)
        return PollOutcome(task=final, attempts=attempts, final_state=status.state)

    def _settled_elsewhere(self, task_id: str, attempts: int) -> PollOutcome:
        task = self.manager.get_task(task_id)
        logger.info("Task %s was settled concurrently as %s", task_id, task.status.value)
        return PollOutcome(task=task, attempts=attempts, final_state=None)

    def _on_timeout(self, task_id: str, attempts: int) -> NoReturn:
        budget = self.settings.budget_seconds
        logger.warning(
            "Polling for task %s exhausted after %d attempts (%gs); policy=%s",
            task_id,
            attempts,
            budget,
            self.timeout_policy.value,
        )
        if self.timeout_policy == TimeoutPolicy.FAIL_AND_REFUND:
            try:
                self.manager.cancel_external_job(task_id)
            except InvalidState:
                pass
            except Exception:  # noqa: BLE001
                logger.warning("Could not cancel external job of task %s", task_id, exc_info=True)
            try:
                self.manager.fail_task(task_id, f"Polling timed out after {budget:g}s")
            except InvalidState:
                logger.info("Task %s left processing before the timeout could fail it", task_id)
        raise PollingTimeout(task_id=task_id, attempts=attempts, budget_seconds=budget)

    def _forget(self, task_id: str, handle: PollHandle) -> None:
        with self._lock:
            if self._handles.get(task_id) is handle:
                del self._handles[task_id]
