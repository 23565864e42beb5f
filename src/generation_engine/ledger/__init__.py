"""Per-user credit balances with atomic debit and idempotent refunds."""

from generation_engine.ledger.models import (
    CreditAccountView,
    CreditReason,
    CreditTransactionView,
    TransactionKind,
)
from generation_engine.ledger.repository import CreditLedger

__all__ = [
    "CreditAccountView",
    "CreditLedger",
    "CreditReason",
    "CreditTransactionView",
    "TransactionKind",
]
