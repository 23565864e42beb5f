"""CLI entrypoint for generation-engine."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from generation_engine import __version__
from generation_engine.controllers import (
    AccountCommand,
    CleanupCommand,
    CreateTaskCommand,
    DiscountCommand,
    EngineCliController,
    GrantCreditsCommand,
    HistoryCommand,
    ListTasksCommand,
    ReconcileCommand,
    StartTaskCommand,
    TaskIdCommand,
    WorkerCommand,
)
from generation_engine.errors import GenerationEngineError
from generation_engine.ledger.models import CreditReason
from generation_engine.tasks.models import TaskStatus, Tier, WorkType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = EngineCliController()
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="generation-engine")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    envvar="GENERATION_ENGINE_LOG_LEVEL",
    help="Logging verbosity.",
)
def generation_engine(log_level: str) -> None:
    """Generation task lifecycle engine with a credit ledger."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@generation_engine.group("credits")
def credits_group() -> None:
    """Credit ledger commands."""


@credits_group.command("grant")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Account owner.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Credits to add.")
@click.option(
    "--reason",
    type=click.Choice([CreditReason.GRANT.value, CreditReason.ADJUSTMENT.value]),
    default=CreditReason.GRANT.value,
    show_default=True,
    help="Ledger reason tag.",
)
def credits_grant(db_path: Path | None, user_id: str, amount: int, reason: str) -> None:
    """Add credits to an account, creating it when missing."""

    _emit(
        lambda: CONTROLLER.grant(
            GrantCreditsCommand(db_path=db_path, user_id=user_id, amount=amount, reason=reason),
        ),
    )


@credits_group.command("balance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Account owner.")
def credits_balance(db_path: Path | None, user_id: str) -> None:
    """Show balance and discount."""

    _emit(lambda: CONTROLLER.balance(AccountCommand(db_path=db_path, user_id=user_id)))


@credits_group.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Account owner.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max entries to print.",
)
def credits_history(db_path: Path | None, user_id: str, limit: int) -> None:
    """List ledger entries, newest first."""

    _emit(
        lambda: CONTROLLER.history(HistoryCommand(db_path=db_path, user_id=user_id, limit=limit)),
    )


@credits_group.command("discount")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Account owner.")
@click.option(
    "--percent",
    type=click.IntRange(min=0, max=100),
    required=True,
    help="Discount applied to projected costs.",
)
def credits_discount(db_path: Path | None, user_id: str, percent: int) -> None:
    """Set the per-user discount."""

    _emit(
        lambda: CONTROLLER.set_discount(
            DiscountCommand(db_path=db_path, user_id=user_id, percent=percent),
        ),
    )


@generation_engine.group()
def tasks() -> None:
    """Generation task commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Task owner.")
@click.option(
    "--type",
    "work_type",
    type=click.Choice([work_type.value for work_type in WorkType], case_sensitive=False),
    required=True,
    help="Kind of work.",
)
@click.option(
    "--tier",
    type=click.Choice([tier.value for tier in Tier], case_sensitive=False),
    default=Tier.STANDARD.value,
    show_default=True,
    help="Model cost tier.",
)
@click.option("--prompt", default=None, help="Prompt passed to the compute service.")
@click.option("--width", type=int, default=None, help="Output width in pixels.")
@click.option("--height", type=int, default=None, help="Output height in pixels.")
@click.option("--steps", type=int, default=None, help="Sampling steps.")
@click.option("--batch", type=int, default=None, help="Outputs per job.")
@click.option("--image-count", type=int, default=None, help="Training images.")
@click.option("--training-steps", type=int, default=None, help="Training steps.")
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    user_id: str,
    work_type: str,
    tier: str,
    prompt: str | None,
    width: int | None,
    height: int | None,
    steps: int | None,
    batch: int | None,
    image_count: int | None,
    training_steps: int | None,
) -> None:
    """Create a pending task; nothing is charged until it starts."""

    _emit(
        lambda: CONTROLLER.create_task(
            CreateTaskCommand(
                db_path=db_path,
                user_id=user_id,
                work_type=work_type.lower(),
                tier=tier.lower(),
                prompt=prompt,
                width=width,
                height=height,
                steps=steps,
                batch=batch,
                image_count=image_count,
                training_steps=training_steps,
            ),
        ),
    )


@tasks.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--wait/--no-wait",
    default=True,
    show_default=True,
    help="Poll the external job until it finishes.",
)
def tasks_start(db_path: Path | None, task_id: str, wait: bool) -> None:
    """Charge and submit a pending task."""

    _emit(
        lambda: CONTROLLER.start_task(
            StartTaskCommand(db_path=db_path, task_id=task_id, wait=wait),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--user-id", required=True, help="Task owner.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--type", "work_type", default=None, help="Optional work type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    user_id: str,
    status: str | None,
    work_type: str | None,
    limit: int,
) -> None:
    """List a user's tasks, newest first."""

    _emit(
        lambda: CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                user_id=user_id,
                status=status.lower() if status else None,
                work_type=work_type,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit(lambda: CONTROLLER.inspect_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending task."""

    _emit(lambda: CONTROLLER.cancel_task(TaskIdCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=30,
    show_default=True,
    help="Delete terminal tasks finished before this many days ago.",
)
def tasks_cleanup(db_path: Path | None, older_than_days: int) -> None:
    """Delete old completed, failed and cancelled tasks."""

    _emit(
        lambda: CONTROLLER.cleanup(
            CleanupCommand(db_path=db_path, older_than_days=older_than_days),
        ),
    )


@generation_engine.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one pending task or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
) -> None:
    """Start pending tasks and wait for their jobs."""

    _emit(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@generation_engine.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=DB_PATH_HELP)
def reconcile(db_path: Path | None) -> None:
    """Re-check stale processing tasks once."""

    _emit(lambda: CONTROLLER.reconcile(ReconcileCommand(db_path=db_path)))


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except GenerationEngineError as error:
        raise click.ClickException(f"[{error.code}] {error.message}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    generation_engine()
