from __future__ import annotations

import threading

import allure
import pytest
from conftest import image_request

from generation_engine.compute.base import JobState
from generation_engine.compute.echo_adapter import EchoComputeAdapter
from generation_engine.engine import Engine
from generation_engine.errors import (
    InsufficientCredits,
    InvalidState,
    SubmissionError,
    TaskNotFound,
    ValidationError,
)
from generation_engine.ledger.models import CreditReason, TransactionKind
from generation_engine.tasks.events import LifecycleEventType, RecordingEventPublisher
from generation_engine.tasks.models import (
    CostParameters,
    GenerationRequest,
    GenerationResponse,
    TaskFilter,
    TaskStatus,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Charge, Submit, Settle"),
]


def _event_types(publisher: RecordingEventPublisher) -> list[str]:
    return [event.event_type.value for event in publisher.events]


def test_happy_path_charges_once_and_completes(
    engine: Engine,
    publisher: RecordingEventPublisher,
) -> None:
    engine.ledger.credit("alice", 100)

    task = engine.manager.create_task(image_request())
    assert task.status == TaskStatus.PENDING
    assert task.charged_amount is None
    assert task.projected_cost == 30
    assert engine.ledger.get_balance("alice") == 100

    started = engine.manager.start_processing(task.task_id)
    assert started.status == TaskStatus.PROCESSING
    assert started.charged_amount == 30
    assert started.external_job_id is not None
    assert started.started_at is not None
    assert engine.ledger.get_balance("alice") == 70

    outcome = engine.supervisor.poll(task.task_id)
    assert outcome.final_state == JobState.COMPLETED
    completed = outcome.task
    assert completed.status == TaskStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.result is not None
    assert len(completed.result.outputs) == 1
    assert completed.result.processing_ms is not None
    assert completed.result.processing_ms >= 0
    assert engine.ledger.get_balance("alice") == 70

    assert _event_types(publisher) == [
        "task-created",
        "task-processing",
        "task-completed",
    ]
    created_event = publisher.events[0]
    assert created_event.payload["type"] == "image"
    assert publisher.events[-1].payload["outputs"] == completed.result.outputs


def test_insufficient_credits_leaves_task_pending(
    engine: Engine,
    echo_adapter: EchoComputeAdapter,
    publisher: RecordingEventPublisher,
) -> None:
    engine.ledger.credit("alice", 10)
    task = engine.manager.create_task(image_request())

    with pytest.raises(InsufficientCredits) as error:
        engine.manager.start_processing(task.task_id)

    assert error.value.required == 30
    assert error.value.available == 10
    reloaded = engine.manager.get_task(task.task_id)
    assert reloaded.status == TaskStatus.PENDING
    assert reloaded.charged_amount is None
    assert reloaded.started_at is None
    assert engine.ledger.get_balance("alice") == 10
    assert echo_adapter.submitted_jobs == []
    assert _event_types(publisher) == ["task-created"]


def test_submission_failure_refunds_and_fails(
    settings,
    publisher: RecordingEventPublisher,
) -> None:
    from generation_engine.engine import echo_registry, open_engine

    rejecting = EchoComputeAdapter(fail_submissions=True)
    with open_engine(
        settings,
        adapters=echo_registry(settings.enabled_work_types, rejecting),
        publisher=publisher,
    ) as engine:
        engine.ledger.credit("alice", 100)
        task = engine.manager.create_task(image_request())

        with pytest.raises(SubmissionError) as error:
            engine.manager.start_processing(task.task_id)

        assert error.value.details["refunded"] == 30
        failed = engine.manager.get_task(task.task_id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error_detail is not None
        assert failed.error_detail.startswith("Submission failed")
        assert engine.ledger.get_balance("alice") == 100
        kinds = [
            (entry.kind, entry.reason) for entry in engine.ledger.list_transactions("alice")
        ]
        assert kinds == [
            (TransactionKind.CREDIT, CreditReason.REFUND.value),
            (TransactionKind.DEBIT, CreditReason.GENERATION.value),
            (TransactionKind.CREDIT, CreditReason.GRANT.value),
        ]
    assert _event_types(publisher) == ["task-created", "task-failed"]


def test_job_failure_mid_flight_refunds(
    settings,
    publisher: RecordingEventPublisher,
) -> None:
    from generation_engine.engine import echo_registry, open_engine

    failing = EchoComputeAdapter(checks_until_done=2, final_state=JobState.FAILED)
    with open_engine(
        settings,
        adapters=echo_registry(settings.enabled_work_types, failing),
        publisher=publisher,
    ) as engine:
        engine.ledger.credit("alice", 100)
        task = engine.manager.create_task(image_request())
        engine.manager.start_processing(task.task_id)

        outcome = engine.supervisor.poll(task.task_id)

        assert outcome.attempts == 2
        assert outcome.final_state == JobState.FAILED
        assert outcome.task.status == TaskStatus.FAILED
        assert outcome.task.error_detail == "echo job failed"
        assert engine.ledger.get_balance("alice") == 100
    failed_events = publisher.of_type(LifecycleEventType.TASK_FAILED)
    assert len(failed_events) == 1
    assert failed_events[0].payload["error"] == "echo job failed"


def test_concurrent_start_debits_exactly_once(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    barrier = threading.Barrier(4)
    results: list[str] = []
    lock = threading.Lock()

    def _start() -> None:
        barrier.wait(timeout=5)
        try:
            engine.manager.start_processing(task.task_id)
        except InvalidState:
            outcome = "lost"
        else:
            outcome = "won"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=_start) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(results) == ["lost", "lost", "lost", "won"]
    assert engine.ledger.get_balance("alice") == 70
    debits = [
        entry
        for entry in engine.ledger.list_transactions("alice")
        if entry.kind == TransactionKind.DEBIT
    ]
    assert len(debits) == 1
    assert debits[0].task_id == task.task_id


def test_concurrent_starts_with_balance_for_one_charge(engine: Engine) -> None:
    engine.ledger.credit("alice", 30)
    first = engine.manager.create_task(image_request())
    second = engine.manager.create_task(image_request())
    barrier = threading.Barrier(2)
    results: dict[str, str] = {}
    lock = threading.Lock()

    def _start(task_id: str) -> None:
        barrier.wait(timeout=5)
        try:
            engine.manager.start_processing(task_id)
        except InsufficientCredits:
            outcome = "insufficient"
        else:
            outcome = "started"
        with lock:
            results[task_id] = outcome

    threads = [
        threading.Thread(target=_start, args=(task.task_id,)) for task in (first, second)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(results.values()) == ["insufficient", "started"]
    assert engine.ledger.get_balance("alice") == 0
    debits = [
        entry
        for entry in engine.ledger.list_transactions("alice")
        if entry.kind == TransactionKind.DEBIT
    ]
    assert len(debits) == 1
    loser = next(task_id for task_id, outcome in results.items() if outcome == "insufficient")
    unpaid = engine.manager.get_task(loser)
    assert unpaid.status == TaskStatus.PENDING
    assert unpaid.charged_amount is None


def test_cancel_processing_task_is_rejected(
    engine: Engine,
    publisher: RecordingEventPublisher,
) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)
    events_before = _event_types(publisher)

    with pytest.raises(InvalidState) as error:
        engine.manager.cancel_task(task.task_id)

    assert error.value.current == TaskStatus.PROCESSING.value
    assert error.value.required == TaskStatus.PENDING.value
    unchanged = engine.manager.get_task(task.task_id)
    assert unchanged.status == TaskStatus.PROCESSING
    assert unchanged.charged_amount == 30
    assert engine.ledger.get_balance("alice") == 70
    assert _event_types(publisher) == events_before


def test_refund_survives_task_tagged_adjustment(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)
    engine.ledger.credit(
        "alice",
        5,
        reason=CreditReason.ADJUSTMENT.value,
        task_id=task.task_id,
    )
    assert engine.ledger.get_balance("alice") == 75

    engine.manager.fail_task(task.task_id, "GPU on fire")

    assert engine.ledger.get_balance("alice") == 105
    assert engine.ledger.has_refund_for_task(task.task_id) is True


def test_fail_task_refunds_exactly_once(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)

    failed = engine.manager.fail_task(task.task_id, "GPU on fire")
    with pytest.raises(InvalidState):
        engine.manager.fail_task(task.task_id, "GPU on fire again")

    assert failed.status == TaskStatus.FAILED
    assert failed.error_detail == "GPU on fire"
    assert engine.ledger.get_balance("alice") == 100
    assert engine.ledger.has_refund_for_task(task.task_id) is True


def test_validation_error_has_no_side_effects(
    engine: Engine,
    publisher: RecordingEventPublisher,
) -> None:
    request = GenerationRequest(
        user_id="alice",
        work_type="image",
        cost_parameters=CostParameters(width=10, height=10),
    )

    with pytest.raises(ValidationError) as error:
        engine.manager.create_task(request)

    assert len(error.value.errors) == 2
    assert engine.manager.get_tasks_for_user("alice") == []
    assert publisher.events == []


def test_cancel_pending_task_without_ledger_change(
    engine: Engine,
    publisher: RecordingEventPublisher,
) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())

    cancelled = engine.manager.cancel_task(task.task_id)

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert engine.ledger.get_balance("alice") == 100
    with pytest.raises(InvalidState):
        engine.manager.start_processing(task.task_id)
    assert _event_types(publisher) == ["task-created"]


@pytest.mark.parametrize("operation", ["complete", "fail", "cancel", "start"])
def test_illegal_transitions_change_nothing(engine: Engine, operation: str) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)
    engine.manager.complete_task(task.task_id, GenerationResponse(outputs=["done.png"]))
    before = engine.manager.get_task(task.task_id)

    actions = {
        "complete": lambda: engine.manager.complete_task(task.task_id, GenerationResponse()),
        "fail": lambda: engine.manager.fail_task(task.task_id, "late failure"),
        "cancel": lambda: engine.manager.cancel_task(task.task_id),
        "start": lambda: engine.manager.start_processing(task.task_id),
    }
    with pytest.raises(InvalidState) as error:
        actions[operation]()

    assert error.value.current == "completed"
    after = engine.manager.get_task(task.task_id)
    assert after.status == before.status
    assert after.result == before.result
    assert engine.ledger.get_balance("alice") == 70


def test_complete_requires_processing(engine: Engine) -> None:
    task = engine.manager.create_task(image_request())

    with pytest.raises(InvalidState) as error:
        engine.manager.complete_task(task.task_id, GenerationResponse())

    assert error.value.required == "processing"


def test_unknown_task_raises_not_found(engine: Engine) -> None:
    assert engine.manager.get_task_by_id("missing") is None
    with pytest.raises(TaskNotFound):
        engine.manager.get_task("missing")
    with pytest.raises(TaskNotFound):
        engine.manager.start_processing("missing")
    with pytest.raises(TaskNotFound):
        engine.manager.cancel_task("missing")


def test_discount_applies_at_charge_time(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.ledger.set_discount("alice", 50)

    started = engine.manager.start_processing(task.task_id)

    assert started.charged_amount == 15
    assert engine.ledger.get_balance("alice") == 85


def test_publisher_failure_does_not_roll_back(settings) -> None:
    from generation_engine.engine import open_engine

    class _BrokenPublisher:
        def publish(self, event) -> None:
            raise RuntimeError("bus down")

    with open_engine(settings, publisher=_BrokenPublisher()) as engine:
        engine.ledger.credit("alice", 100)
        task = engine.manager.create_task(image_request())
        started = engine.manager.start_processing(task.task_id)

        assert started.status == TaskStatus.PROCESSING
        assert engine.ledger.get_balance("alice") == 70


def test_listing_and_next_pending_order(engine: Engine) -> None:
    first = engine.manager.create_task(image_request())
    second = engine.manager.create_task(image_request())
    engine.manager.create_task(image_request(user_id="bob"))
    engine.manager.cancel_task(second.task_id)

    assert engine.manager.get_next_pending_task().task_id == first.task_id
    alice_tasks = engine.manager.get_tasks_for_user("alice")
    assert [task.task_id for task in alice_tasks] == [second.task_id, first.task_id]
    pending = engine.manager.get_tasks_for_user(
        "alice",
        TaskFilter(statuses=(TaskStatus.PENDING,)),
    )
    assert [task.task_id for task in pending] == [first.task_id]
    assert engine.manager.get_next_pending_task(exclude={first.task_id}).user_id == "bob"


def test_task_details_include_audit_events(engine: Engine) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    engine.manager.start_processing(task.task_id)
    engine.supervisor.poll(task.task_id)

    details = engine.manager.get_task_details(task.task_id)

    assert [event.event_type for event in details.events] == [
        "created",
        "processing",
        "charged",
        "submitted",
        "completed",
    ]
    assert details.events[0].details["projected_cost"] == 30
    assert details.events[1].status_from == TaskStatus.PENDING
    assert details.events[1].status_to == TaskStatus.PROCESSING


def test_cancel_external_job_keeps_status(
    engine: Engine,
    echo_adapter: EchoComputeAdapter,
) -> None:
    engine.ledger.credit("alice", 100)
    task = engine.manager.create_task(image_request())
    started = engine.manager.start_processing(task.task_id)

    assert engine.manager.cancel_external_job(task.task_id) is True

    assert echo_adapter.job_state(started.external_job_id) == JobState.CANCELLED
    assert engine.manager.get_task(task.task_id).status == TaskStatus.PROCESSING
    outcome = engine.supervisor.poll(task.task_id)
    assert outcome.task.status == TaskStatus.FAILED
    assert engine.ledger.get_balance("alice") == 100
