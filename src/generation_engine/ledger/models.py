"""Domain models for the credit ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TransactionKind(str, Enum):
    """Direction of a ledger entry."""

    DEBIT = "debit"
    CREDIT = "credit"


class CreditReason(str, Enum):
    """Reason tags recorded on ledger entries."""

    GRANT = "grant"
    GENERATION = "generation"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


@dataclass(slots=True)
class CreditAccountView:
    """Readable account snapshot."""

    user_id: str
    balance: int
    discount_percent: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CreditTransactionView:
    """One ledger entry for audit and refund idempotency."""

    transaction_id: int
    user_id: str
    kind: TransactionKind
    amount: int
    reason: str
    task_id: str | None
    balance_after: int | None
    created_at: datetime
