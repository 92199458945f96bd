"""initial_schema

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-19 09:12:41.118402

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c2a9d7b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLModel persists enum member names, not values
JOB_STATE = sa.Enum(
    "CREATED",
    "SUBMITTING",
    "WAITING",
    "PROCESSING",
    "SUCCEEDED",
    "FAILED",
    "EXPIRED",
    name="jobstate",
)
LEDGER_OPERATION = sa.Enum("HOLD", "RELEASE", "SETTLE", "CREDIT", name="ledgeroperation")
PAYMENT_STATE = sa.Enum(
    "PENDING", "MATCHED", "COMPLETED", "EXPIRED", "MISMATCHED", name="paymentstate"
)
EVENT_SOURCE = sa.Enum("PROVIDER", "PAYMENT_GATEWAY", name="eventsource")


def upgrade() -> None:
    """Create job, ledger, payment, idempotency and usage tables."""
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("provider_task_id", sa.String(length=255), nullable=True),
        sa.Column("cost_estimate", sa.Integer(), nullable=False),
        sa.Column("request", sa.JSON(), nullable=False),
        sa.Column("state", JOB_STATE, nullable=False),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.String(length=1000), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("terminal_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("cost_estimate > 0", name="ck_generation_jobs_cost"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_task_id"),
    )
    op.create_index("ix_generation_jobs_owner_id", "generation_jobs", ["owner_id"])
    op.create_index("ix_generation_jobs_state", "generation_jobs", ["state"])
    op.create_index("ix_generation_jobs_created_at", "generation_jobs", ["created_at"])

    op.create_table(
        "ledger_accounts",
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("held_amount", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_ledger_accounts_balance"),
        sa.CheckConstraint("held_amount >= 0", name="ck_ledger_accounts_held"),
        sa.PrimaryKeyConstraint("owner_id"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("operation", LEDGER_OPERATION, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("payment_intent_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_ledger_entries_amount"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ledger_entries_owner_id", "ledger_entries", ["owner_id"])
    op.create_index("ix_ledger_entries_job_id", "ledger_entries", ["job_id"])
    op.create_index(
        "ix_ledger_entries_payment_intent_id", "ledger_entries", ["payment_intent_id"]
    )

    op.create_table(
        "payment_intents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("expected_amount", sa.Integer(), nullable=False),
        sa.Column("match_token", sa.String(length=64), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=False),
        sa.Column("state", PAYMENT_STATE, nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=True),
        sa.Column("transfer_amount", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("expected_amount > 0", name="ck_payment_intents_amount"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_intents_owner_id", "payment_intents", ["owner_id"])
    op.create_index(
        "ix_payment_intents_match_token", "payment_intents", ["match_token"], unique=True
    )
    op.create_index("ix_payment_intents_state", "payment_intents", ["state"])

    op.create_table(
        "processed_events",
        sa.Column("source_system", EVENT_SOURCE, nullable=False),
        sa.Column("external_event_id", sa.String(length=255), nullable=False),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("source_system", "external_event_id"),
    )

    op.create_table(
        "usage_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_usage_logs_owner_id", "usage_logs", ["owner_id"])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_index("ix_usage_logs_owner_id", table_name="usage_logs")
    op.drop_table("usage_logs")
    op.drop_table("processed_events")
    op.drop_index("ix_payment_intents_state", table_name="payment_intents")
    op.drop_index("ix_payment_intents_match_token", table_name="payment_intents")
    op.drop_index("ix_payment_intents_owner_id", table_name="payment_intents")
    op.drop_table("payment_intents")
    op.drop_index("ix_ledger_entries_payment_intent_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_job_id", table_name="ledger_entries")
    op.drop_index("ix_ledger_entries_owner_id", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_table("ledger_accounts")
    op.drop_index("ix_generation_jobs_created_at", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_state", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_owner_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")

    bind = op.get_bind()
    for enum_type in (EVENT_SOURCE, PAYMENT_STATE, LEDGER_OPERATION, JOB_STATE):
        enum_type.drop(bind, checkfirst=True)
