"""Initial credit ledger and generation task schema."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "credit_accounts",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_percent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        sa.CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100",
            name="ck_credit_accounts_discount_range",
        ),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["credit_accounts.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("amount > 0", name="ck_credit_transactions_amount_positive"),
    )
    op.create_index(
        "ix_credit_transactions_user_id",
        "credit_transactions",
        ["user_id"],
        unique=False,
    )
    op.create_index("ix_credit_transactions_kind", "credit_transactions", ["kind"], unique=False)
    op.create_index(
        "ix_credit_transactions_reason",
        "credit_transactions",
        ["reason"],
        unique=False,
    )
    op.create_index(
        "idx_credit_transactions_user_time",
        "credit_transactions",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_credit_transactions_task_debit",
        "credit_transactions",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("task_id IS NOT NULL AND kind = 'debit'"),
    )
    op.create_index(
        "uq_credit_transactions_task_refund",
        "credit_transactions",
        ["task_id"],
        unique=True,
        sqlite_where=sa.text("task_id IS NOT NULL AND kind = 'credit' AND reason = 'refund'"),
    )

    op.create_table(
        "generation_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("work_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("projected_cost", sa.Integer(), nullable=True),
        sa.Column("charged_amount", sa.Integer(), nullable=True),
        sa.Column("external_job_id", sa.String(), nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_generation_tasks_user_id", "generation_tasks", ["user_id"], unique=False)
    op.create_index(
        "ix_generation_tasks_work_type",
        "generation_tasks",
        ["work_type"],
        unique=False,
    )
    op.create_index("ix_generation_tasks_status", "generation_tasks", ["status"], unique=False)
    op.create_index(
        "ix_generation_tasks_external_job_id",
        "generation_tasks",
        ["external_job_id"],
        unique=False,
    )
    op.create_index(
        "idx_generation_tasks_queue",
        "generation_tasks",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "idx_generation_tasks_user_time",
        "generation_tasks",
        ["user_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "generation_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["generation_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_task_events_task_id",
        "generation_task_events",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_generation_task_events_event_type",
        "generation_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_generation_task_events_task_time",
        "generation_task_events",
        ["task_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_generation_task_events_task_time", table_name="generation_task_events")
    op.drop_index("ix_generation_task_events_event_type", table_name="generation_task_events")
    op.drop_index("ix_generation_task_events_task_id", table_name="generation_task_events")
    op.drop_table("generation_task_events")
    op.drop_index("idx_generation_tasks_user_time", table_name="generation_tasks")
    op.drop_index("idx_generation_tasks_queue", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_external_job_id", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_status", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_work_type", table_name="generation_tasks")
    op.drop_index("ix_generation_tasks_user_id", table_name="generation_tasks")
    op.drop_table("generation_tasks")
    op.drop_index("uq_credit_transactions_task_refund", table_name="credit_transactions")
    op.drop_index("uq_credit_transactions_task_debit", table_name="credit_transactions")
    op.drop_index("idx_credit_transactions_user_time", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_reason", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_kind", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("credit_accounts")
