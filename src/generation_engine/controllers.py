"""Controllers for generation-engine CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from generation_engine.config import Settings
from generation_engine.engine import Engine, open_engine
from generation_engine.errors import PollingTimeout
from generation_engine.ledger.models import CreditReason, CreditTransactionView
from generation_engine.tasks.models import (
    CostParameters,
    GenerationRequest,
    GenerationTaskView,
    TaskFilter,
    TaskStatus,
)


@dataclass(slots=True)
class GrantCreditsCommand:
    """CLI input for adding credits to an account."""

    db_path: Path | None
    user_id: str
    amount: int
    reason: str = CreditReason.GRANT.value


@dataclass(slots=True)
class AccountCommand:
    """CLI input for balance lookup."""

    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class HistoryCommand:
    """CLI input for ledger history."""

    db_path: Path | None
    user_id: str
    limit: int


@dataclass(slots=True)
class DiscountCommand:
    """CLI input for per-user discount."""

    db_path: Path | None
    user_id: str
    percent: int


@dataclass(slots=True)
class CreateTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    user_id: str
    work_type: str
    tier: str
    prompt: str | None
    width: int | None = None
    height: int | None = None
    steps: int | None = None
    batch: int | None = None
    image_count: int | None = None
    training_steps: int | None = None


@dataclass(slots=True)
class StartTaskCommand:
    """CLI input for starting a pending task."""

    db_path: Path | None
    task_id: str
    wait: bool


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    user_id: str
    status: str | None
    work_type: str | None
    limit: int


@dataclass(slots=True)
class TaskIdCommand:
    """CLI input for single-task operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CleanupCommand:
    """CLI input for terminal task housekeeping."""

    db_path: Path | None
    older_than_days: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class ReconcileCommand:
    """CLI input for the stale task sweep."""

    db_path: Path | None


class EngineCliController:
    """Coordinates ledger, task, worker and reconciliation CLI operations."""

    def grant(self, command: GrantCreditsCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            entry = engine.ledger.credit(command.user_id, command.amount, reason=command.reason)
        if entry is None:
            return [f"No credit recorded for {command.user_id}"]
        return [
            f"Granted {entry.amount} credits to {entry.user_id}: balance={entry.balance_after}",
        ]

    def balance(self, command: AccountCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            account = engine.ledger.get_account(command.user_id)
        if account is None:
            return [f"{command.user_id}: balance=0 (no account)"]
        return [
            f"{account.user_id}: balance={account.balance} "
            f"discount={account.discount_percent}%",
        ]

    def history(self, command: HistoryCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            entries = engine.ledger.list_transactions(command.user_id, limit=command.limit)
        if not entries:
            return [f"No ledger entries for {command.user_id}."]
        return [_render_transaction(entry) for entry in entries]

    def set_discount(self, command: DiscountCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            account = engine.ledger.set_discount(command.user_id, command.percent)
        return [f"Discount for {account.user_id} set to {account.discount_percent}%"]

    def create_task(self, command: CreateTaskCommand) -> list[str]:
        request = GenerationRequest(
            user_id=command.user_id,
            work_type=command.work_type,
            payload={"prompt": command.prompt} if command.prompt else {},
            cost_parameters=CostParameters(
                width=command.width,
                height=command.height,
                steps=command.steps,
                batch=command.batch,
                image_count=command.image_count,
                training_steps=command.training_steps,
            ),
            tier=command.tier,
        )
        with _engine(command.db_path) as engine:
            task = engine.manager.create_task(request)
        return [
            f"Task created: task_id={task.task_id} type={task.work_type} "
            f"status={task.status.value} projected_cost={task.projected_cost}",
        ]

    def start_task(self, command: StartTaskCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            task = engine.manager.start_processing(command.task_id)
            lines = [
                f"Task started: task_id={task.task_id} charged={task.charged_amount} "
                f"job={task.external_job_id or '-'}",
            ]
            if command.wait and task.status == TaskStatus.PROCESSING:
                try:
                    outcome = engine.supervisor.supervise(task.task_id).result()
                except PollingTimeout as error:
                    lines.append(f"Still processing: {error.message}")
                else:
                    outcome.raise_for_failure()
                    lines.append(_render_task(outcome.task))
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        task_filter = TaskFilter(
            statuses=(TaskStatus(command.status),) if command.status else (),
            work_type=command.work_type,
            limit=command.limit,
        )
        with _engine(command.db_path) as engine:
            tasks = engine.manager.get_tasks_for_user(command.user_id, task_filter)
        if not tasks:
            return ["No tasks found."]
        return [_render_task(task) for task in tasks]

    def inspect_task(self, command: TaskIdCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            details = engine.manager.get_task_details(command.task_id)
        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"User: {task.user_id}",
            f"Type: {task.work_type} tier={task.request.tier}",
            f"Status: {task.status.value}",
            f"Projected cost: {task.projected_cost if task.projected_cost is not None else '-'}",
            f"Charged: {task.charged_amount if task.charged_amount is not None else '-'}",
            f"External job: {task.external_job_id or '-'}",
            f"Created: {task.created_at.isoformat()}",
            f"Started: {task.started_at.isoformat() if task.started_at else '-'}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
        ]
        if task.result is not None:
            lines.append(
                f"Result: outputs={len(task.result.outputs)} "
                f"processing_ms={task.result.processing_ms}",
            )
            lines.extend(f"  - {output}" for output in task.result.outputs)
        if task.error_detail:
            lines.append(f"Error: {task.error_detail}")
        lines.append("Events:")
        for event in details.events:
            transition = ""
            if event.status_from is not None or event.status_to is not None:
                before = event.status_from.value if event.status_from else "-"
                after = event.status_to.value if event.status_to else "-"
                transition = f" {before}->{after}"
            lines.append(
                f"  - {event.created_at.isoformat()} {event.event_type}{transition} "
                f"{event.details or ''}".rstrip(),
            )
        return lines

    def cancel_task(self, command: TaskIdCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            task = engine.manager.cancel_task(command.task_id)
        return [f"Task cancelled: task_id={task.task_id}"]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            removed = engine.manager.cleanup_old_tasks(timedelta(days=command.older_than_days))
        return [f"Removed {removed} terminal tasks older than {command.older_than_days} days."]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            worker = engine.worker()
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} deferred={summary.deferred} "
            f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}",
        ]

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        with _engine(command.db_path) as engine:
            summary = engine.reconciliation.run_once()
        lines = [
            "Reconciliation summary: "
            f"examined={summary.examined} completed={summary.completed} "
            f"failed={summary.failed} still_processing={summary.still_processing}",
        ]
        lines.extend(f"  error: {error}" for error in summary.errors)
        return lines


def _render_task(task: GenerationTaskView) -> str:
    charged = task.charged_amount if task.charged_amount is not None else "-"
    return (
        f"{task.task_id} status={task.status.value} type={task.work_type} "
        f"charged={charged} job={task.external_job_id or '-'} "
        f"created={task.created_at.isoformat()}"
    )


def _render_transaction(entry: CreditTransactionView) -> str:
    sign = "-" if entry.kind.value == "debit" else "+"
    return (
        f"{entry.created_at.isoformat()} {sign}{entry.amount} reason={entry.reason} "
        f"task={entry.task_id or '-'} balance={entry.balance_after}"
    )


@contextmanager
def _engine(db_path: Path | None) -> Iterator[Engine]:
    settings = Settings.from_env(db_path=db_path)
    with open_engine(settings) as engine:
        yield engine
