"""add hot-path indexes for reconciliation and outbox

Revision ID: 0003_hot_path_indexes
Revises: 0002_timeline_immutability
Create Date: 2026-10-19
"""

from alembic import op


revision = "0003_hot_path_indexes"
down_revision = "0002_timeline_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payout_ledgers_status_updated_at",
        "payout_ledgers",
        ["status", "updated_at"],
    )
    op.create_index(
        "ix_payout_ledgers_professional_id_week_start",
        "payout_ledgers",
        ["professional_id", "week_start"],
    )
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
    op.drop_index("ix_payout_ledgers_professional_id_week_start", table_name="payout_ledgers")
    op.drop_index("ix_payout_ledgers_status_updated_at", table_name="payout_ledgers")
