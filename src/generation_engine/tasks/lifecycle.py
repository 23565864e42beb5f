"""Task lifecycle state machine coupled to the credit ledger."""

from __future__ import annotations

import logging
from collections.abc import Collection, Container
from datetime import timedelta
from typing import Any, NoReturn
from uuid import uuid4

from sqlmodel import Session

from generation_engine.compute.registry import AdapterRegistry
from generation_engine.errors import (
    InvalidState,
    SubmissionError,
    TaskNotFound,
)
from generation_engine.ledger.models import CreditReason
from generation_engine.ledger.repository import CreditLedger
from generation_engine.storage.common import utc_now
from generation_engine.storage.database import Database
from generation_engine.tasks.events import (
    EventPublisher,
    LifecycleEvent,
    LifecycleEventType,
    LoggingEventPublisher,
    publish_safely,
)
from generation_engine.tasks.models import (
    GenerationRequest,
    GenerationResponse,
    GenerationTaskView,
    TaskDetails,
    TaskFilter,
    TaskStatus,
)
from generation_engine.tasks.pricing import CostModel, StandardCostModel
from generation_engine.tasks.repository import TaskRepository
from generation_engine.tasks.validation import validate_request

logger = logging.getLogger(__name__)


class TaskLifecycleManager:
    """Owns every task status transition and its ledger side effects.

    The ``pending -> processing`` compare-and-set, the debit and the recorded
    charge commit in one transaction; so do ``processing -> failed`` and its
    refund. Lifecycle events are published after commit and never roll a
    transition back.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        database: Database,
        ledger: CreditLedger,
        repository: TaskRepository,
        registry: AdapterRegistry,
        cost_model: CostModel | None = None,
        publisher: EventPublisher | None = None,
        supported_work_types: Container[str] | None = None,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.repository = repository
        self.registry = registry
        self.cost_model = cost_model or StandardCostModel()
        self.publisher = publisher or LoggingEventPublisher()
        self.supported_work_types = (
            supported_work_types if supported_work_types is not None else registry
        )

    def create_task(self, request: GenerationRequest) -> GenerationTaskView:
        """Validate and persist a ``pending`` task; nothing is charged yet."""

        validate_request(request, supported_work_types=self.supported_work_types)
        discount = self.ledger.get_discount(request.user_id)
        projected_cost = self.cost_model.estimate(request, discount_percent=discount)
        task = self.repository.insert_task(
            task_id=str(uuid4()),
            request=request,
            projected_cost=projected_cost,
        )
        logger.info(
            "Task %s created for %s (type=%s projected_cost=%d)",
            task.task_id,
            task.user_id,
            task.work_type,
            projected_cost,
        )
        self._publish(
            LifecycleEventType.TASK_CREATED,
            task,
            {"type": task.work_type, "projected_cost": projected_cost},
        )
        return task

    def estimate_cost(self, request: GenerationRequest) -> int:
        """Projected cost for ``request`` with the user's current discount."""

        discount = self.ledger.get_discount(request.user_id)
        return self.cost_model.estimate(request, discount_percent=discount)

    def start_processing(self, task_id: str) -> GenerationTaskView:
        """Charge the user and submit the job to the external service.

        Raises:
            TaskNotFound: unknown task.
            InvalidState: task is not ``pending`` (for example a concurrent start won).
            InsufficientCredits: balance too low; the task stays ``pending``.
            SubmissionError: the adapter refused the job; refunded and ``failed``.
        """

        task = self.get_task(task_id)
        adapter = self.registry.get(task.work_type)

        with self.database.transaction() as session:
            if not self.repository.mark_processing(task_id, session=session):
                self._raise_invalid_state(
                    task_id,
                    required=TaskStatus.PENDING,
                    operation="start",
                    session=session,
                )
            discount = self.ledger.get_discount(task.user_id, session=session)
            cost = self.cost_model.estimate(task.request, discount_percent=discount)
            if cost > 0:
                self.ledger.debit(
                    task.user_id,
                    cost,
                    reason=CreditReason.GENERATION.value,
                    task_id=task_id,
                    session=session,
                )
            self.repository.record_charge(task_id, cost, session=session)
        logger.info("Task %s charged %d credits to %s", task_id, cost, task.user_id)

        try:
            job_id = adapter.submit(task_id, task.request)
        except Exception as error:  # noqa: BLE001
            detail = f"Submission failed: {error}"
            logger.warning("Task %s submission failed: %s", task_id, error)
            failed = self._fail_and_refund(task_id, detail, operation="fail submission of")
            self._publish(LifecycleEventType.TASK_FAILED, failed, {"error": detail})
            raise SubmissionError(
                detail,
                details={"task_id": task_id, "refunded": failed.charged_amount or 0},
            ) from error

        if not self.repository.record_submission(task_id, job_id):
            logger.warning(
                "Task %s left processing before job %s was recorded; cancelling the job",
                task_id,
                job_id,
            )
            self._cancel_orphan_job(task.work_type, job_id)
            return self.get_task(task_id)

        started = self.get_task(task_id)
        logger.info("Task %s submitted as external job %s", task_id, job_id)
        self._publish(
            LifecycleEventType.TASK_PROCESSING,
            started,
            {"type": started.work_type, "external_job_id": job_id},
        )
        return started

    def complete_task(self, task_id: str, response: GenerationResponse) -> GenerationTaskView:
        """Store the job result; requires ``processing``."""

        completed = self.repository.complete_task(task_id, response)
        if completed is None:
            self._raise_invalid_state(task_id, required=TaskStatus.PROCESSING, operation="complete")
        logger.info(
            "Task %s completed with %d outputs in %sms",
            task_id,
            len(response.outputs),
            response.processing_ms,
        )
        self._publish(
            LifecycleEventType.TASK_COMPLETED,
            completed,
            {"outputs": list(response.outputs)},
        )
        return completed

    def fail_task(self, task_id: str, error_detail: str) -> GenerationTaskView:
        """Mark ``processing`` task failed and refund its charge exactly once."""

        failed = self._fail_and_refund(task_id, error_detail, operation="fail")
        self._publish(LifecycleEventType.TASK_FAILED, failed, {"error": error_detail})
        return failed

    def cancel_task(self, task_id: str) -> GenerationTaskView:
        """Cancel a ``pending`` task; nothing was charged so nothing is refunded."""

        if not self.repository.cancel_task(task_id):
            self._raise_invalid_state(task_id, required=TaskStatus.PENDING, operation="cancel")
        logger.info("Task %s cancelled", task_id)
        return self.get_task(task_id)

    def cancel_external_job(self, task_id: str) -> bool:
        """Ask the compute service to stop a ``processing`` task's job.

        Status and ledger are untouched; the next poll observes the outcome.
        """

        task = self.get_task(task_id)
        if task.status != TaskStatus.PROCESSING:
            raise InvalidState(
                task_id=task_id,
                current=task.status.value,
                required=TaskStatus.PROCESSING.value,
                operation="cancel external job of",
            )
        if task.external_job_id is None:
            return False
        cancelled = self.registry.get(task.work_type).cancel(task.external_job_id)
        self.repository.add_event(
            task_id,
            "external_cancel_requested",
            {"external_job_id": task.external_job_id, "cancelled": cancelled},
        )
        return cancelled

    def get_task_by_id(self, task_id: str) -> GenerationTaskView | None:
        return self.repository.get_task(task_id)

    def get_task(self, task_id: str) -> GenerationTaskView:
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def get_task_details(self, task_id: str) -> TaskDetails:
        details = self.repository.get_task_details(task_id)
        if details is None:
            raise TaskNotFound(task_id)
        return details

    def get_tasks_for_user(
        self,
        user_id: str,
        task_filter: TaskFilter | None = None,
    ) -> list[GenerationTaskView]:
        return self.repository.list_tasks_for_user(user_id, task_filter)

    def get_next_pending_task(self, *, exclude: Collection[str] = ()) -> GenerationTaskView | None:
        return self.repository.next_pending_task(exclude=exclude)

    def cleanup_old_tasks(self, older_than: timedelta) -> int:
        """Delete terminal tasks finished more than ``older_than`` ago."""

        removed = self.repository.cleanup_terminal_tasks(older_than=utc_now() - older_than)
        if removed:
            logger.info("Removed %d terminal tasks older than %s", removed, older_than)
        return removed

    def _fail_and_refund(
        self,
        task_id: str,
        error_detail: str,
        *,
        operation: str,
    ) -> GenerationTaskView:
        with self.database.transaction() as session:
            failed = self.repository.fail_task(task_id, error_detail, session=session)
            if failed is None:
                self._raise_invalid_state(
                    task_id,
                    required=TaskStatus.PROCESSING,
                    operation=operation,
                    session=session,
                )
            if failed.charged_amount:
                refund = self.ledger.credit(
                    failed.user_id,
                    failed.charged_amount,
                    reason=CreditReason.REFUND.value,
                    task_id=task_id,
                    session=session,
                )
                if refund is None:
                    logger.warning("Task %s was already refunded", task_id)
        logger.info(
            "Task %s failed (%s); refunded %d credits",
            task_id,
            error_detail,
            failed.charged_amount or 0,
        )
        return failed

    def _cancel_orphan_job(self, work_type: str, job_id: str) -> None:
        try:
            self.registry.get(work_type).cancel(job_id)
        except Exception:  # noqa: BLE001
            logger.warning("Could not cancel orphan job %s", job_id, exc_info=True)

    def _raise_invalid_state(
        self,
        task_id: str,
        *,
        required: TaskStatus,
        operation: str,
        session: Session | None = None,
    ) -> NoReturn:
        current = self.repository.get_task(task_id, session=session)
        if current is None:
            raise TaskNotFound(task_id)
        raise InvalidState(
            task_id=task_id,
            current=current.status.value,
            required=required.value,
            operation=operation,
        )

    def _publish(
        self,
        event_type: LifecycleEventType,
        task: GenerationTaskView,
        payload: dict[str, Any],
    ) -> None:
        publish_safely(
            self.publisher,
            LifecycleEvent(
                event_type=event_type,
                task_id=task.task_id,
                user_id=task.user_id,
                payload=payload,
            ),
        )
