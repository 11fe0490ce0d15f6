"""lease payment event claims

Revision ID: 0003_payment_event_claim_lease
Revises: 0002_append_only_audit
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_payment_event_claim_lease"
down_revision = "0002_append_only_audit"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("payment_events", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.execute("UPDATE payment_events SET claimed_at = created_at WHERE outcome = 'PROCESSING'")


def downgrade() -> None:
    op.drop_column("payment_events", "claimed_at")
