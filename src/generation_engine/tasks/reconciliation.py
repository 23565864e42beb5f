"""Sweep of ``processing`` tasks whose polling activity was lost."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from generation_engine.config import ReconciliationSettings
from generation_engine.errors import InvalidState
from generation_engine.storage.common import utc_now
from generation_engine.tasks.lifecycle import TaskLifecycleManager
from generation_engine.tasks.models import TaskStatus
from generation_engine.tasks.polling import PollingSupervisor

logger = logging.getLogger(__name__)

MISSING_JOB_ERROR = "Task never recorded an external job"


@dataclass(slots=True)
class ReconciliationSummary:
    """Counters from one sweep."""

    examined: int = 0
    completed: int = 0
    failed: int = 0
    still_processing: int = 0
    errors: list[str] = field(default_factory=list)


class ReconciliationSweep:
    """Re-polls stale ``processing`` tasks after a restart or a lost poller.

    Tasks started longer ago than the grace period get one status check.
    Tasks that never recorded an external job are failed and refunded, since
    no job can ever report back for them.
    """

    def __init__(
        self,
        *,
        manager: TaskLifecycleManager,
        supervisor: PollingSupervisor,
        settings: ReconciliationSettings | None = None,
    ) -> None:
        self.manager = manager
        self.supervisor = supervisor
        self.settings = settings or ReconciliationSettings()

    def run_once(self) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        cutoff = utc_now() - timedelta(seconds=self.settings.grace_seconds)
        stale = self.manager.repository.list_processing_tasks(
            started_before=cutoff,
            limit=self.settings.batch_size,
        )
        for task in stale:
            summary.examined += 1
            if task.external_job_id is None:
                self._fail_orphan(task.task_id, summary)
                continue
            outcome = self.supervisor.check_task(task.task_id)
            if outcome is None:
                summary.still_processing += 1
            elif outcome.task.status == TaskStatus.COMPLETED:
                summary.completed += 1
            elif outcome.task.status == TaskStatus.FAILED:
                summary.failed += 1
            else:
                summary.still_processing += 1

        if summary.examined:
            logger.info(
                "Reconciliation examined=%d completed=%d failed=%d still_processing=%d",
                summary.examined,
                summary.completed,
                summary.failed,
                summary.still_processing,
            )
        return summary

    def _fail_orphan(self, task_id: str, summary: ReconciliationSummary) -> None:
        try:
            self.manager.fail_task(task_id, MISSING_JOB_ERROR)
        except InvalidState as error:
            summary.errors.append(f"{task_id}: {error.message}")
            return
        summary.failed += 1
        logger.warning("Task %s had no external job; failed and refunded", task_id)
