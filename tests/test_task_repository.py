from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import image_request
from sqlalchemy import func
from sqlmodel import select

from generation_engine.storage.common import utc_now
from generation_engine.storage.database import Database
from generation_engine.storage.sqlmodel_models import GenerationTaskEvent
from generation_engine.tasks.models import GenerationResponse, TaskFilter, TaskStatus
from generation_engine.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Generation Tasks"),
    allure.feature("Task Repository"),
]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TaskRepository]:
    database = Database(tmp_path / "tasks.db")
    database.init_schema()
    yield TaskRepository(database)
    database.close()


def test_insert_writes_task_with_created_event(repository: TaskRepository) -> None:
    created = repository.insert_task(task_id="t-1", request=image_request(), projected_cost=30)

    assert created.status == TaskStatus.PENDING
    assert created.projected_cost == 30
    details = repository.get_task_details("t-1")
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to == TaskStatus.PENDING
    assert details.events[0].details["projected_cost"] == 30


def test_transitions_are_compare_and_set(repository: TaskRepository) -> None:
    repository.insert_task(task_id="t-1", request=image_request(), projected_cost=30)

    assert repository.mark_processing("t-1") is True
    assert repository.mark_processing("t-1") is False
    assert repository.cancel_task("t-1") is False

    assert repository.record_charge("t-1", 30) is True
    assert repository.record_charge("t-1", 30) is False
    assert repository.record_submission("t-1", "job-1") is True
    assert repository.record_submission("t-1", "job-2") is False

    completed = repository.complete_task("t-1", GenerationResponse(outputs=["echo://a.png"]))
    assert completed is not None
    assert completed.status == TaskStatus.COMPLETED
    assert completed.charged_amount == 30
    assert completed.external_job_id == "job-1"
    assert completed.result is not None
    assert completed.result.processing_ms is not None
    assert completed.completed_at is not None

    assert repository.fail_task("t-1", "late failure") is None
    task = repository.get_task("t-1")
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.error_detail is None


def test_details_record_transition_events(repository: TaskRepository) -> None:
    repository.insert_task(task_id="t-1", request=image_request(), projected_cost=30)
    repository.mark_processing("t-1")
    repository.fail_task("t-1", "boom")
    repository.add_event("t-1", "note", {"source": "test"})

    details = repository.get_task_details("t-1")

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "created",
        "processing",
        "failed",
        "note",
    ]
    assert details.events[2].status_from == TaskStatus.PROCESSING
    assert details.events[2].status_to == TaskStatus.FAILED
    assert details.task.error_detail == "boom"
    assert repository.get_task_details("missing") is None


def test_listing_filters_and_queue_order(repository: TaskRepository) -> None:
    repository.insert_task(task_id="t-1", request=image_request())
    repository.insert_task(task_id="t-2", request=image_request())
    repository.insert_task(task_id="t-3", request=image_request(user_id="bob"))
    repository.cancel_task("t-2")

    alice = repository.list_tasks_for_user("alice")
    assert [task.task_id for task in alice] == ["t-2", "t-1"]
    pending = repository.list_tasks_for_user(
        "alice",
        TaskFilter(statuses=(TaskStatus.PENDING,)),
    )
    assert [task.task_id for task in pending] == ["t-1"]
    assert repository.list_tasks_for_user("alice", TaskFilter(work_type="video")) == []
    paged = repository.list_tasks_for_user("alice", TaskFilter(limit=1, offset=1))
    assert [task.task_id for task in paged] == ["t-1"]

    next_task = repository.next_pending_task()
    assert next_task is not None
    assert next_task.task_id == "t-1"
    after_skip = repository.next_pending_task(exclude={"t-1"})
    assert after_skip is not None
    assert after_skip.task_id == "t-3"


def test_cleanup_removes_only_old_terminal_tasks(repository: TaskRepository) -> None:
    repository.insert_task(task_id="done", request=image_request())
    repository.insert_task(task_id="waiting", request=image_request())
    repository.cancel_task("done")

    assert repository.cleanup_terminal_tasks(older_than=utc_now() - timedelta(days=1)) == 0
    removed = repository.cleanup_terminal_tasks(older_than=utc_now() + timedelta(seconds=1))

    assert removed == 1
    assert repository.get_task("done") is None
    assert repository.get_task("waiting") is not None
    with repository.database.session() as session:
        orphaned = session.exec(
            select(func.count())
            .select_from(GenerationTaskEvent)
            .where(GenerationTaskEvent.task_id == "done"),
        ).one()
    assert orphaned == 0


def test_processing_tasks_listed_by_start_time(repository: TaskRepository) -> None:
    repository.insert_task(task_id="t-1", request=image_request())
    repository.insert_task(task_id="t-2", request=image_request())
    repository.mark_processing("t-1")

    stale = repository.list_processing_tasks(started_before=utc_now())
    assert [task.task_id for task in stale] == ["t-1"]
    assert repository.list_processing_tasks(started_before=utc_now() - timedelta(hours=1)) == []
