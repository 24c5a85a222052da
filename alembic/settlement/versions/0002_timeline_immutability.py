"""enforce append-only payout timeline

Revision ID: 0002_timeline_immutability
Revises: 0001_settlement
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_timeline_immutability"
down_revision = "0001_settlement"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_payout_timeline_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'payout_timeline is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_payout_timeline_immutable
        BEFORE UPDATE OR DELETE ON payout_timeline
        FOR EACH ROW
        EXECUTE FUNCTION prevent_payout_timeline_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_payout_timeline_immutable ON payout_timeline;")
    op.execute("DROP FUNCTION IF EXISTS prevent_payout_timeline_mutation();")
