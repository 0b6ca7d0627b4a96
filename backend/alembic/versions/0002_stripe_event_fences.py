"""processed stripe events and applied membership events

Revision ID: 0002_stripe_event_fences
Revises: 0001_membership_billing
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0002_stripe_event_fences"
down_revision = "0001_membership_billing"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "stripe_webhook_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True),
        sa.Column("event_type", sa.String(length=128), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "group_membership_events",
        sa.Column("membership_event_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "membership_id",
            sa.String(length=36),
            sa.ForeignKey("group_memberships.membership_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("membership_id", "stripe_event_id", name="uq_group_membership_events_event"),
    )
    op.create_index("ix_group_membership_events_membership_id", "group_membership_events", ["membership_id"])


def downgrade() -> None:
    op.drop_table("group_membership_events")
    op.drop_table("stripe_webhook_events")
