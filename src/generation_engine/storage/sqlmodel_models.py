"""SQLModel ORM tables for ledger and task storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class CreditAccount(SQLModel, table=True):
    __tablename__ = "credit_accounts"  # type: ignore[bad-override]
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_credit_accounts_discount_range",
        ),
    )

    user_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    discount_percent: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CreditTransaction(SQLModel, table=True):
    __tablename__ = "credit_transactions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_credit_transactions_task_debit",
            "task_id",
            unique=True,
            sqlite_where=text("task_id IS NOT NULL AND kind = 'debit'"),
        ),
        Index(
            "uq_credit_transactions_task_refund",
            "task_id",
            unique=True,
            sqlite_where=text("task_id IS NOT NULL AND kind = 'credit' AND reason = 'refund'"),
        ),
        Index("idx_credit_transactions_user_time", "user_id", "created_at"),
        CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("credit_accounts.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    amount: int
    reason: str = Field(index=True)
    task_id: str | None = Field(default=None)
    balance_after: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskRow(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_tasks_queue", "status", "created_at"),
        Index("idx_generation_tasks_user_time", "user_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    work_type: str = Field(index=True)
    status: str = Field(index=True)
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    projected_cost: int | None = None
    charged_amount: int | None = None
    external_job_id: str | None = Field(default=None, index=True)
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTaskEvent(SQLModel, table=True):
    __tablename__ = "generation_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_generation_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
