from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from wns_payments.infra.db import Base


class GroupRevenueEntry(Base):
    """Append-only ledger row. Never updated after insert."""

    __tablename__ = "group_revenue_entries"
    __table_args__ = (
        UniqueConstraint(
            "stripe_event_id", "stripe_object_id", name="uq_group_revenue_entries_event_object"
        ),
        Index("ix_group_revenue_entries_group_occurred", "group_id", "occurred_at"),
        Index("ix_group_revenue_entries_balance_txn", "stripe_balance_transaction"),
    )

    entry_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
    )
    membership_id: Mapped[str | None] = mapped_column(
        ForeignKey("group_memberships.membership_id", ondelete="SET NULL")
    )
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.user_id", ondelete="SET NULL"))
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_gross_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_net_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    stripe_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_object_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_balance_transaction: Mapped[str | None] = mapped_column(String(255))
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
