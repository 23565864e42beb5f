from __future__ import annotations

import allure
from conftest import image_request

from generation_engine.compute.echo_adapter import EchoComputeAdapter
from generation_engine.engine import Engine
from generation_engine.tasks.models import TaskStatus
from generation_engine.tasks.reconciliation import MISSING_JOB_ERROR

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Reconciliation"),
]


def test_sweep_settles_finished_jobs(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)

    summary = engine.reconciliation.run_once()

    assert summary.examined == 1
    assert summary.completed == 1
    assert engine.manager.get_task(task.task_id).status == TaskStatus.COMPLETED
    assert engine.ledger.get_balance("alice") == 70


def test_sweep_fails_and_refunds_tasks_without_job(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    # Simulates a crash between the charge commit and the adapter submit.
    engine.repository.mark_processing(task.task_id)
    engine.ledger.debit("alice", 30, task_id=task.task_id)
    engine.repository.record_charge(task.task_id, 30)

    summary = engine.reconciliation.run_once()

    assert summary.failed == 1
    failed = engine.manager.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.error_detail == MISSING_JOB_ERROR
    assert engine.ledger.get_balance("alice") == 100


def test_sweep_leaves_running_jobs_processing(
    engine: Engine,
    echo_adapter: EchoComputeAdapter,
) -> None:
    echo_adapter.checks_until_done = 50
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)

    summary = engine.reconciliation.run_once()

    assert summary.still_processing == 1
    assert engine.manager.get_task(task.task_id).status == TaskStatus.PROCESSING


def test_sweep_ignores_tasks_inside_grace_period(engine: Engine) -> None:
    engine.reconciliation.settings.grace_seconds = 3600
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)

    summary = engine.reconciliation.run_once()

    assert summary.examined == 0
    assert engine.manager.get_task(task.task_id).status == TaskStatus.PROCESSING
