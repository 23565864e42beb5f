from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from generation_engine.errors import DuplicateTransaction, InsufficientCredits
from generation_engine.ledger import CreditLedger, CreditReason, TransactionKind
from generation_engine.storage.database import Database

pytestmark = [
    allure.epic("Credit Ledger"),
    allure.feature("Balances & Idempotency"),
]


@pytest.fixture()
def ledger(tmp_path: Path):
    database = Database(tmp_path / "ledger.db")
    database.init_schema()
    yield CreditLedger(database)
    database.close()


def test_unknown_user_has_zero_balance(ledger: CreditLedger) -> None:
    assert ledger.get_balance("nobody") == 0
    assert ledger.get_account("nobody") is None
    assert ledger.check_balance("nobody", 1) is False


def test_credit_creates_account_and_records_entry(ledger: CreditLedger) -> None:
    entry = ledger.credit("alice", 100)

    assert entry is not None
    assert entry.kind == TransactionKind.CREDIT
    assert entry.reason == CreditReason.GRANT.value
    assert entry.balance_after == 100
    assert ledger.get_balance("alice") == 100
    assert ledger.check_balance("alice", 100) is True


def test_debit_decrements_and_tracks_balance_after(ledger: CreditLedger) -> None:
    ledger.credit("alice", 100)

    entry = ledger.debit("alice", 30, task_id="task-1")

    assert entry.kind == TransactionKind.DEBIT
    assert entry.reason == CreditReason.GENERATION.value
    assert entry.balance_after == 70
    assert ledger.get_balance("alice") == 70


def test_debit_with_insufficient_balance_changes_nothing(ledger: CreditLedger) -> None:
    ledger.credit("alice", 10)

    with pytest.raises(InsufficientCredits) as error:
        ledger.debit("alice", 30, task_id="task-1")

    assert error.value.required == 30
    assert error.value.available == 10
    assert error.value.code == "INSUFFICIENT_CREDITS"
    assert ledger.get_balance("alice") == 10
    assert [entry.kind for entry in ledger.list_transactions("alice")] == [TransactionKind.CREDIT]


def test_debit_for_unknown_user_is_insufficient(ledger: CreditLedger) -> None:
    with pytest.raises(InsufficientCredits):
        ledger.debit("ghost", 1)


def test_second_debit_for_same_task_is_rejected(ledger: CreditLedger) -> None:
    ledger.credit("alice", 100)
    ledger.debit("alice", 30, task_id="task-1")

    with pytest.raises(DuplicateTransaction):
        ledger.debit("alice", 30, task_id="task-1")

    assert ledger.get_balance("alice") == 70


def test_refund_for_same_task_is_applied_once(ledger: CreditLedger) -> None:
    ledger.credit("alice", 100)
    ledger.debit("alice", 30, task_id="task-1")

    first = ledger.credit("alice", 30, reason=CreditReason.REFUND.value, task_id="task-1")
    second = ledger.credit("alice", 30, reason=CreditReason.REFUND.value, task_id="task-1")

    assert first is not None
    assert second is None
    assert ledger.get_balance("alice") == 100
    assert ledger.has_refund_for_task("task-1") is True
    refunds = [
        entry
        for entry in ledger.list_transactions("alice")
        if entry.reason == CreditReason.REFUND.value
    ]
    assert len(refunds) == 1


def test_task_tagged_adjustment_does_not_block_refund(ledger: CreditLedger) -> None:
    ledger.credit("alice", 100)
    ledger.debit("alice", 30, task_id="task-1")

    adjustment = ledger.credit(
        "alice",
        5,
        reason=CreditReason.ADJUSTMENT.value,
        task_id="task-1",
    )

    assert adjustment is not None
    assert ledger.has_refund_for_task("task-1") is False
    refund = ledger.credit("alice", 30, reason=CreditReason.REFUND.value, task_id="task-1")
    assert refund is not None
    assert ledger.get_balance("alice") == 105


def test_untagged_credits_are_never_deduplicated(ledger: CreditLedger) -> None:
    ledger.credit("alice", 5)
    ledger.credit("alice", 5)

    assert ledger.get_balance("alice") == 10


@pytest.mark.parametrize("amount", [0, -5, True, 2.5])
def test_amount_must_be_positive_integer(ledger: CreditLedger, amount: object) -> None:
    with pytest.raises(ValueError, match="positive integer"):
        ledger.credit("alice", amount)  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="positive integer"):
        ledger.debit("alice", amount)  # type: ignore[arg-type]


def test_discount_is_stored_per_account(ledger: CreditLedger) -> None:
    assert ledger.get_discount("alice") == 0

    account = ledger.set_discount("alice", 15)

    assert account.discount_percent == 15
    assert account.balance == 0
    assert ledger.get_discount("alice") == 15
    with pytest.raises(ValueError, match="Discount"):
        ledger.set_discount("alice", 101)


def test_history_is_newest_first_and_limited(ledger: CreditLedger) -> None:
    ledger.credit("alice", 50)
    ledger.debit("alice", 10, task_id="task-1")
    ledger.credit("alice", 10, reason=CreditReason.REFUND.value, task_id="task-1")

    entries = ledger.list_transactions("alice", limit=2)

    assert [entry.reason for entry in entries] == ["refund", "generation"]


def test_concurrent_debits_never_overdraw(ledger: CreditLedger) -> None:
    ledger.credit("alice", 100)
    start = threading.Event()
    outcomes: list[str] = []
    lock = threading.Lock()

    def _debit(index: int) -> None:
        start.wait(timeout=5)
        try:
            ledger.debit("alice", 10, task_id=f"task-{index}")
        except InsufficientCredits:
            result = "insufficient"
        else:
            result = "ok"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_debit, args=(index,)) for index in range(15)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert outcomes.count("ok") == 10
    assert outcomes.count("insufficient") == 5
    assert ledger.get_balance("alice") == 0
