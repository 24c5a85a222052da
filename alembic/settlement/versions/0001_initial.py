"""initial settlement schema

Revision ID: 0001_settlement
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_settlement"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "payout_ledgers",
        sa.Column("ledger_id", sa.String(), nullable=False),
        sa.Column("professional_id", sa.String(), nullable=False),
        sa.Column("professional_email", sa.String(), nullable=False),
        sa.Column("professional_name", sa.String(), nullable=False),
        sa.Column("week_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("week_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_revenue", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_commission", sa.Numeric(12, 2), nullable=False),
        sa.Column("professional_payout", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("service_items", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("bank_details", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("transfer_method", sa.String(), nullable=False),
        sa.Column("gateway_payout_id", sa.String(), nullable=True),
        sa.Column("transaction_id", sa.String(), nullable=True),
        sa.Column("transferred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("failure_retryable", sa.Boolean(), nullable=False),
        sa.Column("submit_attempt", sa.Integer(), nullable=False),
        sa.Column("admin_notes", sa.String(), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("state_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("ledger_id"),
        sa.UniqueConstraint("professional_id", "week_start", "week_end", name="uq_payout_ledger_week"),
        sa.UniqueConstraint("gateway_payout_id"),
    )
    op.create_index("ix_payout_ledgers_professional_id", "payout_ledgers", ["professional_id"])
    op.create_index("ix_payout_ledgers_professional_email", "payout_ledgers", ["professional_email"])
    op.create_index("ix_payout_ledgers_status", "payout_ledgers", ["status"])

    op.create_table(
        "payout_timeline",
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("ledger_id", sa.String(), nullable=False),
        sa.Column("from_state", sa.String(), nullable=True),
        sa.Column("to_state", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("event_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["ledger_id"], ["payout_ledgers.ledger_id"]),
        sa.PrimaryKeyConstraint("timeline_id"),
    )
    op.create_index("ix_payout_timeline_ledger_id", "payout_timeline", ["ledger_id"])
    op.create_index("ix_payout_timeline_event_id", "payout_timeline", ["event_id"])

    op.create_table(
        "gateway_calls",
        sa.Column("call_id", sa.String(), nullable=False),
        sa.Column("ledger_id", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("result", sa.String(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("call_id"),
    )
    op.create_index("ix_gateway_calls_ledger_id", "gateway_calls", ["ledger_id"])

    op.create_table(
        "webhook_inbox",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("gateway_payout_id", sa.String(), nullable=False),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_inbox_gateway_payout_id", "webhook_inbox", ["gateway_payout_id"])
    op.create_index("ix_webhook_inbox_status", "webhook_inbox", ["status"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_webhook_inbox_status", table_name="webhook_inbox")
    op.drop_index("ix_webhook_inbox_gateway_payout_id", table_name="webhook_inbox")
    op.drop_table("webhook_inbox")
    op.drop_index("ix_gateway_calls_ledger_id", table_name="gateway_calls")
    op.drop_table("gateway_calls")
    op.drop_index("ix_payout_timeline_event_id", table_name="payout_timeline")
    op.drop_index("ix_payout_timeline_ledger_id", table_name="payout_timeline")
    op.drop_table("payout_timeline")
    op.drop_index("ix_payout_ledgers_status", table_name="payout_ledgers")
    op.drop_index("ix_payout_ledgers_professional_email", table_name="payout_ledgers")
    op.drop_index("ix_payout_ledgers_professional_id", table_name="payout_ledgers")
    op.drop_table("payout_ledgers")
