"""Durable storage of generation tasks and their audit events."""

from __future__ import annotations

import json
from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from generation_engine.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from generation_engine.storage.database import Database
from generation_engine.storage.sqlmodel_models import GenerationTaskEvent, GenerationTaskRow
from generation_engine.tasks.models import (
    TERMINAL_STATUSES,
    GenerationRequest,
    GenerationResponse,
    GenerationTaskView,
    TaskDetails,
    TaskEventView,
    TaskFilter,
    TaskStatus,
)


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Status changes are conditional updates keyed on the expected current
    status; each returns whether it won. Callers that need a status change and
    a ledger write to commit together pass their own ``session``.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def insert_task(
        self,
        *,
        task_id: str,
        request: GenerationRequest,
        projected_cost: int | None = None,
    ) -> GenerationTaskView:
        """Persist a new ``pending`` task."""

        now = to_db_datetime(utc_now())
        with self.database.transaction() as session:
            row = GenerationTaskRow(
                task_id=task_id,
                user_id=request.user_id,
                work_type=request.work_type,
                status=TaskStatus.PENDING.value,
                request_json=request.to_json(),
                projected_cost=projected_cost,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "work_type": request.work_type,
                    "tier": request.tier,
                    "projected_cost": projected_cost,
                },
            )
            session.flush()
            return _to_task_view(row)

    def get_task(self, task_id: str, *, session: Session | None = None) -> GenerationTaskView | None:
        with self.database.transaction(session) as active:
            row = active.exec(
                select(GenerationTaskRow).where(GenerationTaskRow.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with self.database.session() as session:
            row = session.exec(
                select(GenerationTaskRow).where(GenerationTaskRow.task_id == task_id),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(GenerationTaskEvent)
                .where(GenerationTaskEvent.task_id == task_id)
                .order_by(col(GenerationTaskEvent.created_at).asc(), col(GenerationTaskEvent.id).asc()),
            ).all()
            task = _to_task_view(row)
            events = [_to_event_view(event_row) for event_row in event_rows]
        return TaskDetails(task=task, events=events)

    def list_tasks_for_user(
        self,
        user_id: str,
        task_filter: TaskFilter | None = None,
    ) -> list[GenerationTaskView]:
        """List a user's tasks, newest first."""

        task_filter = task_filter or TaskFilter()
        statement = select(GenerationTaskRow).where(GenerationTaskRow.user_id == user_id)
        if task_filter.statuses:
            statement = statement.where(
                col(GenerationTaskRow.status).in_([status.value for status in task_filter.statuses]),
            )
        if task_filter.work_type is not None:
            statement = statement.where(GenerationTaskRow.work_type == task_filter.work_type)
        statement = (
            statement.order_by(
                col(GenerationTaskRow.created_at).desc(),
                col(GenerationTaskRow.task_id).desc(),
            )
            .offset(task_filter.offset)
            .limit(task_filter.limit)
        )
        with self.database.session() as session:
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def next_pending_task(self, *, exclude: Collection[str] = ()) -> GenerationTaskView | None:
        """Oldest ``pending`` task not in ``exclude``, or ``None`` when there is none."""

        statement = select(GenerationTaskRow).where(
            GenerationTaskRow.status == TaskStatus.PENDING.value,
        )
        if exclude:
            statement = statement.where(col(GenerationTaskRow.task_id).not_in(list(exclude)))
        with self.database.session() as session:
            row = session.exec(
                statement
                .order_by(
                    col(GenerationTaskRow.created_at).asc(),
                    col(GenerationTaskRow.task_id).asc(),
                )
                .limit(1),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_processing_tasks(
        self,
        *,
        started_before: datetime,
        limit: int = 100,
    ) -> list[GenerationTaskView]:
        """``processing`` tasks started before ``started_before``, oldest first."""

        with self.database.session() as session:
            rows = session.exec(
                select(GenerationTaskRow)
                .where(
                    GenerationTaskRow.status == TaskStatus.PROCESSING.value,
                    col(GenerationTaskRow.started_at) <= to_db_datetime(started_before),
                )
                .order_by(col(GenerationTaskRow.started_at).asc())
                .limit(limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def mark_processing(self, task_id: str, *, session: Session | None = None) -> bool:
        """Compare-and-set ``pending -> processing``."""

        now = to_db_datetime(utc_now())
        return self._transition(
            session=session,
            task_id=task_id,
            expected=TaskStatus.PENDING,
            target=TaskStatus.PROCESSING,
            values={"started_at": now},
            event_type="processing",
            details={},
        )

    def record_charge(self, task_id: str, amount: int, *, session: Session | None = None) -> bool:
        with self.database.transaction(session) as active:
            result = active.exec(
                sa_update(GenerationTaskRow)
                .where(
                    col(GenerationTaskRow.task_id) == task_id,
                    col(GenerationTaskRow.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTaskRow.charged_amount).is_(None),
                )
                .values(charged_amount=amount, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                return False
            self._add_event(
                session=active,
                task_id=task_id,
                event_type="charged",
                status_from=None,
                status_to=None,
                details={"amount": amount},
            )
            return True

    def record_submission(
        self,
        task_id: str,
        external_job_id: str,
        *,
        session: Session | None = None,
    ) -> bool:
        """Attach the external job id; only once, and only while ``processing``."""

        with self.database.transaction(session) as active:
            result = active.exec(
                sa_update(GenerationTaskRow)
                .where(
                    col(GenerationTaskRow.task_id) == task_id,
                    col(GenerationTaskRow.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTaskRow.external_job_id).is_(None),
                )
                .values(external_job_id=external_job_id, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                return False
            self._add_event(
                session=active,
                task_id=task_id,
                event_type="submitted",
                status_from=None,
                status_to=None,
                details={"external_job_id": external_job_id},
            )
            return True

    def complete_task(
        self,
        task_id: str,
        response: GenerationResponse,
        *,
        session: Session | None = None,
    ) -> GenerationTaskView | None:
        """Compare-and-set ``processing -> completed`` and store the result.

        ``response.processing_ms`` is derived from the stored ``started_at``.
        Returns ``None`` when the task was not ``processing``.
        """

        now = utc_now()
        with self.database.transaction(session) as active:
            won = self._transition(
                session=active,
                task_id=task_id,
                expected=TaskStatus.PROCESSING,
                target=TaskStatus.COMPLETED,
                values={"completed_at": to_db_datetime(now)},
                event_type="completed",
                details={"outputs": len(response.outputs)},
            )
            if not won:
                return None
            row = _get_row(active, task_id)
            if row.started_at is not None:
                elapsed = now - to_utc_aware_datetime(row.started_at)
                response.processing_ms = max(0, int(elapsed.total_seconds() * 1000))
            row.result_json = response.to_json()
            active.add(row)
            active.flush()
            return _to_task_view(row)

    def fail_task(
        self,
        task_id: str,
        error_detail: str,
        *,
        session: Session | None = None,
    ) -> GenerationTaskView | None:
        """Compare-and-set ``processing -> failed``; ``None`` when not ``processing``."""

        with self.database.transaction(session) as active:
            won = self._transition(
                session=active,
                task_id=task_id,
                expected=TaskStatus.PROCESSING,
                target=TaskStatus.FAILED,
                values={
                    "completed_at": to_db_datetime(utc_now()),
                    "error_detail": error_detail,
                },
                event_type="failed",
                details={"error": error_detail},
            )
            if not won:
                return None
            return _to_task_view(_get_row(active, task_id))

    def cancel_task(self, task_id: str, *, session: Session | None = None) -> bool:
        """Compare-and-set ``pending -> cancelled``."""

        return self._transition(
            session=session,
            task_id=task_id,
            expected=TaskStatus.PENDING,
            target=TaskStatus.CANCELLED,
            values={"completed_at": to_db_datetime(utc_now())},
            event_type="cancelled",
            details={},
        )

    def add_event(
        self,
        task_id: str,
        event_type: str,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        """Append a non-transition audit event."""

        with self.database.transaction() as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=dict(details or {}),
            )

    def cleanup_terminal_tasks(self, *, older_than: datetime) -> int:
        """Delete terminal tasks finished before ``older_than``; events cascade."""

        with self.database.transaction() as session:
            result = session.exec(
                sa_delete(GenerationTaskRow).where(
                    col(GenerationTaskRow.status).in_([status.value for status in TERMINAL_STATUSES]),
                    col(GenerationTaskRow.completed_at) < to_db_datetime(older_than),
                ),
            )
            return int(result.rowcount or 0)

    def _transition(  # noqa: PLR0913
        self,
        *,
        session: Session | None,
        task_id: str,
        expected: TaskStatus,
        target: TaskStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> bool:
        with self.database.transaction(session) as active:
            result = active.exec(
                sa_update(GenerationTaskRow)
                .where(
                    col(GenerationTaskRow.task_id) == task_id,
                    col(GenerationTaskRow.status) == expected.value,
                )
                .values(
                    status=target.value,
                    updated_at=to_db_datetime(utc_now()),
                    **values,
                ),
            )
            if result.rowcount != 1:
                return False
            self._add_event(
                session=active,
                task_id=task_id,
                event_type=event_type,
                status_from=expected,
                status_to=target,
                details=details,
            )
            return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            GenerationTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _get_row(session: Session, task_id: str) -> GenerationTaskRow:
    return session.exec(
        select(GenerationTaskRow).where(GenerationTaskRow.task_id == task_id),
    ).one()


def _to_task_view(row: GenerationTaskRow) -> GenerationTaskView:
    return GenerationTaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        request=GenerationRequest.from_json(row.request_json),
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        charged_amount=row.charged_amount,
        external_job_id=row.external_job_id,
        result=GenerationResponse.from_json(row.result_json) if row.result_json else None,
        error_detail=row.error_detail,
        updated_at=to_utc_aware_datetime(row.updated_at),
        projected_cost=row.projected_cost,
    )


def _to_event_view(row: GenerationTaskEvent) -> TaskEventView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
