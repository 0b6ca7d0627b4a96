from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from wns_payments.domain.payouts import statuses
from wns_payments.infra.db import Base


class GroupPayoutSchedule(Base):
    __tablename__ = "group_payout_schedules"

    schedule_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False, unique=True
    )
    frequency: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.FREQUENCY_MONTHLY
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=statuses.SCHEDULE_ACTIVE
    )
    destination_account: Mapped[str | None] = mapped_column(String(255))
    manual_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_payout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_payout_scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class GroupPayout(Base):
    __tablename__ = "group_payouts"
    __table_args__ = (
        Index("ix_group_payouts_group_initiated", "group_id", "initiated_at"),
        Index("ix_group_payouts_transfer", "stripe_transfer_id"),
    )

    payout_id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    group_id: Mapped[str] = mapped_column(
        ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False
    )
    schedule_id: Mapped[str | None] = mapped_column(
        ForeignKey("group_payout_schedules.schedule_id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=statuses.PENDING)
    initiated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(String(500))
    stripe_payout_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    stripe_transfer_id: Mapped[str | None] = mapped_column(String(255))
    stripe_last_event_id: Mapped[str | None] = mapped_column(String(255))
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
