"""Credit ledger backed by SQLModel + SQLite."""

from __future__ import annotations

import logging

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from generation_engine.errors import DuplicateTransaction, InsufficientCredits
from generation_engine.ledger.models import (
    CreditAccountView,
    CreditReason,
    CreditTransactionView,
    TransactionKind,
)
from generation_engine.storage.common import to_db_datetime, to_utc_aware_datetime, utc_now
from generation_engine.storage.database import Database
from generation_engine.storage.sqlmodel_models import CreditAccount, CreditTransaction

logger = logging.getLogger(__name__)


class CreditLedger:
    """Per-user balances with atomic debit and task-scoped idempotent entries.

    Every mutating method accepts an optional ``session``; when given, the
    write joins the caller's transaction instead of committing on its own.
    Each write path starts with a write statement so SQLite takes the write
    lock before anything is read.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def check_balance(self, user_id: str, amount: int) -> bool:
        """Advisory check only; :meth:`debit` is the authoritative gate."""

        return self.get_balance(user_id) >= amount

    def get_balance(self, user_id: str, *, session: Session | None = None) -> int:
        with self.database.transaction(session) as active:
            return _balance_in(active, user_id)

    def get_account(self, user_id: str) -> CreditAccountView | None:
        with self.database.session() as session:
            row = session.exec(
                select(CreditAccount).where(CreditAccount.user_id == user_id),
            ).one_or_none()
            if row is None:
                return None
            return _to_account_view(row)

    def get_discount(self, user_id: str, *, session: Session | None = None) -> int:
        with self.database.transaction(session) as active:
            discount = active.exec(
                select(CreditAccount.discount_percent).where(CreditAccount.user_id == user_id),
            ).one_or_none()
        return discount or 0

    def set_discount(self, user_id: str, percent: int) -> CreditAccountView:
        """Set the per-user discount applied by the cost model."""

        if not 0 <= percent <= 100:
            raise ValueError(f"Discount must be within 0..100, got {percent}")
        now = to_db_datetime(utc_now())
        with self.database.transaction() as session:
            _ensure_account(session, user_id)
            session.exec(
                sa_update(CreditAccount)
                .where(col(CreditAccount.user_id) == user_id)
                .values(discount_percent=percent, updated_at=now),
            )
            row = session.exec(
                select(CreditAccount).where(CreditAccount.user_id == user_id),
            ).one()
            view = _to_account_view(row)
        logger.info("Discount for %s set to %d%%", user_id, percent)
        return view

    def debit(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str = CreditReason.GENERATION.value,
        task_id: str | None = None,
        session: Session | None = None,
    ) -> CreditTransactionView:
        """Atomically check and decrement the balance.

        Raises:
            InsufficientCredits: balance is lower than ``amount``; nothing changes.
            DuplicateTransaction: ``task_id`` was already debited.
        """

        _require_positive(amount)
        now = to_db_datetime(utc_now())
        with self.database.transaction(session) as active:
            result = active.exec(
                sa_update(CreditAccount)
                .where(
                    col(CreditAccount.user_id) == user_id,
                    col(CreditAccount.balance) >= amount,
                )
                .values(balance=col(CreditAccount.balance) - amount, updated_at=now),
            )
            if result.rowcount != 1:
                raise InsufficientCredits(
                    user_id=user_id,
                    required=amount,
                    available=_balance_in(active, user_id),
                )
            entry = _insert_entry(
                active,
                user_id=user_id,
                kind=TransactionKind.DEBIT,
                amount=amount,
                reason=_reason_value(reason),
                task_id=task_id,
                balance_after=_balance_in(active, user_id),
            )
            if entry is None:
                raise DuplicateTransaction(
                    f"Task {task_id} has already been debited",
                    details={"task_id": task_id, "user_id": user_id},
                )
        logger.info(
            "Debited %d credits from %s (reason=%s task=%s balance=%s)",
            amount,
            user_id,
            entry.reason,
            task_id or "-",
            entry.balance_after,
        )
        return entry

    def credit(
        self,
        user_id: str,
        amount: int,
        *,
        reason: str = CreditReason.GRANT.value,
        task_id: str | None = None,
        session: Session | None = None,
    ) -> CreditTransactionView | None:
        """Atomically increment the balance, creating the account when missing.

        Returns ``None`` without touching the balance when this is a refund and
        ``task_id`` was already refunded. Other credits may carry the same task
        reference without blocking its refund.
        """

        _require_positive(amount)
        now = to_db_datetime(utc_now())
        with self.database.transaction(session) as active:
            _ensure_account(active, user_id)
            entry = _insert_entry(
                active,
                user_id=user_id,
                kind=TransactionKind.CREDIT,
                amount=amount,
                reason=_reason_value(reason),
                task_id=task_id,
                balance_after=_balance_in(active, user_id) + amount,
            )
            if entry is None:
                logger.info("Duplicate refund for task %s ignored (user=%s)", task_id, user_id)
                return None
            active.exec(
                sa_update(CreditAccount)
                .where(col(CreditAccount.user_id) == user_id)
                .values(balance=col(CreditAccount.balance) + amount, updated_at=now),
            )
        logger.info(
            "Credited %d credits to %s (reason=%s task=%s balance=%s)",
            amount,
            user_id,
            entry.reason,
            task_id or "-",
            entry.balance_after,
        )
        return entry

    def has_refund_for_task(self, task_id: str, *, session: Session | None = None) -> bool:
        with self.database.transaction(session) as active:
            found = active.exec(
                select(CreditTransaction.id).where(
                    CreditTransaction.task_id == task_id,
                    CreditTransaction.kind == TransactionKind.CREDIT.value,
                    CreditTransaction.reason == CreditReason.REFUND.value,
                ),
            ).first()
        return found is not None

    def list_transactions(self, user_id: str, *, limit: int = 50) -> list[CreditTransactionView]:
        """Return the newest ledger entries for one user."""

        with self.database.session() as session:
            rows = session.exec(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(col(CreditTransaction.created_at).desc(), col(CreditTransaction.id).desc())
                .limit(limit),
            ).all()
            return [_to_transaction_view(row) for row in rows]


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Amount must be a positive integer, got {amount!r}")


def _reason_value(reason: str) -> str:
    return reason.value if isinstance(reason, CreditReason) else str(reason)


def _balance_in(session: Session, user_id: str) -> int:
    balance = session.exec(
        select(CreditAccount.balance).where(CreditAccount.user_id == user_id),
    ).one_or_none()
    return balance or 0


def _ensure_account(session: Session, user_id: str) -> None:
    now = to_db_datetime(utc_now())
    session.exec(
        sqlite_insert(CreditAccount)
        .values(
            user_id=user_id,
            balance=0,
            discount_percent=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id"]),
    )


def _insert_entry(  # noqa: PLR0913
    session: Session,
    *,
    user_id: str,
    kind: TransactionKind,
    amount: int,
    reason: str,
    task_id: str | None,
    balance_after: int,
) -> CreditTransactionView | None:
    now = utc_now()
    result = session.exec(
        sqlite_insert(CreditTransaction)
        .values(
            user_id=user_id,
            kind=kind.value,
            amount=amount,
            reason=reason,
            task_id=task_id,
            balance_after=balance_after,
            created_at=to_db_datetime(now),
        )
        .on_conflict_do_nothing(),
    )
    if result.rowcount != 1:
        return None
    return CreditTransactionView(
        transaction_id=int(result.lastrowid),
        user_id=user_id,
        kind=kind,
        amount=amount,
        reason=reason,
        task_id=task_id,
        balance_after=balance_after,
        created_at=now,
    )


def _to_account_view(row: CreditAccount) -> CreditAccountView:
    return CreditAccountView(
        user_id=row.user_id,
        balance=row.balance,
        discount_percent=row.discount_percent,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_transaction_view(row: CreditTransaction) -> CreditTransactionView:
    return CreditTransactionView(
        transaction_id=row.id or 0,
        user_id=row.user_id,
        kind=TransactionKind(row.kind),
        amount=row.amount,
        reason=row.reason,
        task_id=row.task_id,
        balance_after=row.balance_after,
        created_at=to_utc_aware_datetime(row.created_at),
    )
