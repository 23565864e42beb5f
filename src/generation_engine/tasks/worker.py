"""Worker that starts pending tasks and supervises their jobs."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from generation_engine.errors import (
    InsufficientCredits,
    InvalidState,
    PollingCancelled,
    PollingTimeout,
    SubmissionError,
)
from generation_engine.tasks.lifecycle import TaskLifecycleManager
from generation_engine.tasks.models import TaskStatus
from generation_engine.tasks.polling import PollHandle, PollingSupervisor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    timeouts: int = 0
    interrupted: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.deferred += other.deferred
        self.timeouts += other.timeouts
        self.interrupted += other.interrupted
        self.idle_polls += other.idle_polls


class TaskWorker:
    """Pulls the oldest pending task, starts it and waits for its job.

    Tasks whose owners cannot pay stay ``pending`` and are skipped for the
    rest of this worker's life so they do not block the queue.
    """

    def __init__(
        self,
        *,
        manager: TaskLifecycleManager,
        supervisor: PollingSupervisor,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.manager = manager
        self.supervisor = supervisor
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self._deferred: set[str] = set()
        self._stop_requested = False
        self._current_handle: PollHandle | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.manager.get_next_pending_task(exclude=self._deferred)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            started = self.manager.start_processing(task.task_id)
        except InvalidState:
            logger.info("Task %s was taken by another worker", task.task_id)
            summary.processed = 0
            return summary
        except InsufficientCredits as error:
            logger.warning("Task %s deferred: %s", task.task_id, error.message)
            self._deferred.add(task.task_id)
            self.manager.repository.add_event(
                task.task_id,
                "start_deferred",
                {"worker_id": self.worker_id, **error.details},
            )
            summary.deferred = 1
            return summary
        except SubmissionError as error:
            logger.warning("Task %s failed at submission: %s", task.task_id, error.message)
            summary.failed = 1
            return summary

        if started.status != TaskStatus.PROCESSING:
            self._count_terminal(started.status, summary)
            return summary

        handle = self.supervisor.supervise(started.task_id)
        self._current_handle = handle
        try:
            outcome = handle.result()
        except PollingTimeout as error:
            logger.warning("Task %s: %s", started.task_id, error.message)
            summary.timeouts = 1
        except PollingCancelled:
            logger.info("Polling for task %s interrupted by shutdown", started.task_id)
            summary.interrupted = 1
        else:
            self._count_terminal(outcome.task.status, summary)
        finally:
            self._current_handle = None
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle or max_tasks reached."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.idle_polls:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True
        handle = self._current_handle
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _count_terminal(status: TaskStatus, summary: WorkerRunSummary) -> None:
        if status == TaskStatus.COMPLETED:
            summary.succeeded = 1
        elif status == TaskStatus.FAILED:
            summary.failed = 1

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker %s received signal %s; stopping", self.worker_id, signum)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
