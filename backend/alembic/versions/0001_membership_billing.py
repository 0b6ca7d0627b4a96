"""membership billing and stripe reconciliation

Revision ID: 0001_membership_billing
Revises: 
Create Date: 2026-10-19 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_membership_billing"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=320), nullable=True, unique=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "groups",
        sa.Column("group_id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=True, unique=True),
        sa.Column(
            "owner_id",
            sa.String(length=36),
            sa.ForeignKey("users.user_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_groups_owner_id", "groups", ["owner_id"])
    op.create_table(
        "group_admins",
        sa.Column("group_admin_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="admin"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_admins_group_user"),
    )
    op.create_index("ix_group_admins_group_id", "group_admins", ["group_id"])
    op.create_index("ix_group_admins_user_id", "group_admins", ["user_id"])

    op.create_table(
        "group_membership_tiers",
        sa.Column("tier_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("billing_period", sa.String(length=16), nullable=False, server_default="month"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_product_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_price_id", sa.String(length=255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_group_membership_tiers_group_id", "group_membership_tiers", ["group_id"])

    op.create_table(
        "group_memberships",
        sa.Column("membership_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "tier_id",
            sa.String(length=36),
            sa.ForeignKey("group_membership_tiers.tier_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("renewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_last_event_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_memberships_group_user"),
    )
    op.create_index("ix_group_memberships_group_id", "group_memberships", ["group_id"])
    op.create_index("ix_group_memberships_user_id", "group_memberships", ["user_id"])
    op.create_index("ix_group_memberships_subscription", "group_memberships", ["stripe_subscription_id"])
    op.create_index("ix_group_memberships_payment_intent", "group_memberships", ["stripe_payment_intent_id"])
    op.create_index(
        "ix_group_memberships_customer_renewed", "group_memberships", ["stripe_customer_id", "renewed_at"]
    )

    op.create_table(
        "group_member_statuses",
        sa.Column("member_status_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member_statuses_group_user"),
    )
    op.create_index("ix_group_member_statuses_group_id", "group_member_statuses", ["group_id"])
    op.create_index("ix_group_member_statuses_user_id", "group_member_statuses", ["user_id"])

    op.create_table(
        "group_revenue_entries",
        sa.Column("entry_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "membership_id",
            sa.String(length=36),
            sa.ForeignKey("group_memberships.membership_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("amount_gross_cents", sa.Integer(), nullable=False),
        sa.Column("amount_net_cents", sa.Integer(), nullable=False),
        sa.Column("fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_object_id", sa.String(length=255), nullable=False),
        sa.Column("stripe_balance_transaction", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "stripe_event_id", "stripe_object_id", name="uq_group_revenue_entries_event_object"
        ),
    )
    op.create_index(
        "ix_group_revenue_entries_group_occurred", "group_revenue_entries", ["group_id", "occurred_at"]
    )
    op.create_index(
        "ix_group_revenue_entries_balance_txn", "group_revenue_entries", ["stripe_balance_transaction"]
    )

    op.create_table(
        "group_payout_schedules",
        sa.Column("schedule_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id",
            sa.String(length=36),
            sa.ForeignKey("groups.group_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("frequency", sa.String(length=16), nullable=False, server_default="monthly"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("destination_account", sa.String(length=255), nullable=True),
        sa.Column("manual_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_payout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_payout_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "group_payouts",
        sa.Column("payout_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "schedule_id",
            sa.String(length=36),
            sa.ForeignKey("group_payout_schedules.schedule_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="EUR"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("initiated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("stripe_payout_id", sa.String(length=255), nullable=True, unique=True),
        sa.Column("stripe_transfer_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_last_event_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_group_payouts_group_initiated", "group_payouts", ["group_id", "initiated_at"])
    op.create_index("ix_group_payouts_transfer", "group_payouts", ["stripe_transfer_id"])

    op.create_table(
        "group_payment_disputes",
        sa.Column("dispute_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "membership_id",
            sa.String(length=36),
            sa.ForeignKey("group_memberships.membership_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("stripe_dispute_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("stripe_charge_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="under_review"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("evidence_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_last_event_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_group_payment_disputes_group_status", "group_payment_disputes", ["group_id", "status"])
    op.create_index("ix_group_payment_disputes_charge", "group_payment_disputes", ["stripe_charge_id"])

    op.create_table(
        "group_payment_refunds",
        sa.Column("refund_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "membership_id",
            sa.String(length=36),
            sa.ForeignKey("group_memberships.membership_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "user_id", sa.String(length=36), sa.ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("stripe_refund_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("stripe_charge_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stripe_last_event_id", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_group_payment_refunds_group_id", "group_payment_refunds", ["group_id"])
    op.create_index("ix_group_payment_refunds_charge", "group_payment_refunds", ["stripe_charge_id"])

    op.create_table(
        "group_membership_coupons",
        sa.Column("coupon_id", sa.String(length=36), primary_key=True),
        sa.Column(
            "group_id", sa.String(length=36), sa.ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("percentage_off", sa.Float(), nullable=True),
        sa.Column("amount_off_cents", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_coupon_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_promotion_code_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "code", name="uq_group_membership_coupons_group_code"),
    )
    op.create_index("ix_group_membership_coupons_group_id", "group_membership_coupons", ["group_id"])
    op.create_index(
        "ix_group_membership_coupons_stripe_promotion_code_id",
        "group_membership_coupons",
        ["stripe_promotion_code_id"],
    )


def downgrade() -> None:
    op.drop_table("group_membership_coupons")
    op.drop_table("group_payment_refunds")
    op.drop_table("group_payment_disputes")
    op.drop_table("group_payouts")
    op.drop_table("group_payout_schedules")
    op.drop_table("group_revenue_entries")
    op.drop_table("group_member_statuses")
    op.drop_table("group_memberships")
    op.drop_table("group_membership_tiers")
    op.drop_table("group_admins")
    op.drop_table("groups")
    op.drop_table("users")
