from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.revenue.db_models import GroupRevenueEntry
from wns_payments.infra.db import dialect_insert
from wns_payments.infra.metrics import metrics

logger = logging.getLogger(__name__)

MEMBERSHIP_CHARGE = "membership_charge"
MEMBERSHIP_REFUND = "membership_refund"
MEMBERSHIP_CHARGEBACK = "membership_chargeback"

ENTRY_TYPES = {MEMBERSHIP_CHARGE, MEMBERSHIP_REFUND, MEMBERSHIP_CHARGEBACK}

SideEffect = Callable[[GroupRevenueEntry], Awaitable[None]]


@dataclass(frozen=True)
class RevenueEntryInput:
    group_id: str
    type: str
    amount_gross_cents: int
    currency: str
    occurred_at: datetime
    stripe_event_id: str
    stripe_object_id: str
    membership_id: str | None = None
    user_id: str | None = None
    amount_net_cents: int | None = None
    fee_cents: int | None = None
    stripe_balance_transaction: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RecordedEntry:
    entry: GroupRevenueEntry
    created: bool


@dataclass(frozen=True)
class CurrencySummary:
    currency: str
    gross_cents: int
    net_cents: int
    fee_cents: int
    count: int


def resolve_amounts(gross: int, net: int | None, fee: int | None) -> tuple[int, int]:
    """Return ``(net, fee)`` filling whichever side was not reported."""
    if net is None:
        fee_value = fee or 0
        return gross - fee_value, fee_value
    if fee is None:
        return net, max(gross - net, 0)
    return net, fee


async def _fetch_entry(session: AsyncSession, stripe_event_id: str, stripe_object_id: str) -> GroupRevenueEntry:
    stmt = sa.select(GroupRevenueEntry).where(
        GroupRevenueEntry.stripe_event_id == stripe_event_id,
        GroupRevenueEntry.stripe_object_id == stripe_object_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one()


async def record_revenue_entry(session: AsyncSession, entry: RevenueEntryInput) -> RecordedEntry:
    """Insert a ledger row unless ``(stripe_event_id, stripe_object_id)`` already exists.

    The unique constraint decides the race between concurrent deliveries of the
    same event; the loser gets the winner's row back with ``created=False``.
    """
    if entry.type not in ENTRY_TYPES:
        raise ValueError(f"Unknown revenue entry type: {entry.type}")

    net, fee = resolve_amounts(entry.amount_gross_cents, entry.amount_net_cents, entry.fee_cents)
    insert = dialect_insert(session)
    stmt = (
        insert(GroupRevenueEntry)
        .values(
            entry_id=str(uuid.uuid4()),
            group_id=entry.group_id,
            membership_id=entry.membership_id,
            user_id=entry.user_id,
            type=entry.type,
            amount_gross_cents=entry.amount_gross_cents,
            amount_net_cents=net,
            fee_cents=fee,
            currency=entry.currency.upper(),
            occurred_at=entry.occurred_at,
            stripe_event_id=entry.stripe_event_id,
            stripe_object_id=entry.stripe_object_id,
            stripe_balance_transaction=entry.stripe_balance_transaction,
            metadata_json=dict(entry.metadata),
        )
        .on_conflict_do_nothing(
            index_elements=[GroupRevenueEntry.stripe_event_id, GroupRevenueEntry.stripe_object_id]
        )
    )
    result = await session.execute(stmt)
    created = (result.rowcount or 0) == 1
    stored = await _fetch_entry(session, entry.stripe_event_id, entry.stripe_object_id)
    metrics.record_revenue_entry(entry.type, created)
    logger.info(
        "revenue_entry_recorded" if created else "revenue_entry_exists",
        extra={
            "extra": {
                "entry_id": stored.entry_id,
                "group_id": entry.group_id,
                "type": entry.type,
                "stripe_event_id": entry.stripe_event_id,
                "stripe_object_id": entry.stripe_object_id,
            }
        },
    )
    return RecordedEntry(entry=stored, created=created)


def _side_effect_name(side_effect: SideEffect) -> str:
    name = getattr(side_effect, "__name__", None)
    if name is None:
        func = getattr(side_effect, "func", None)
        name = getattr(func, "__name__", None)
    return name or type(side_effect).__name__


async def record_revenue_entry_with_side_effects(
    session: AsyncSession,
    entry: RevenueEntryInput,
    *,
    on_created: Sequence[SideEffect] = (),
) -> RecordedEntry:
    """Record a ledger row and run ``on_created`` callbacks only if it was inserted.

    This is the only supported way to attach side effects (coupon redemption,
    receipts) to a ledger write. Each callback runs in its own savepoint, so a
    failed statement rolls back only that callback and the ledger row stays the
    source of truth. Callback failures are logged and swallowed.
    """
    recorded = await record_revenue_entry(session, entry)
    if not recorded.created:
        return recorded

    for side_effect in on_created:
        name = _side_effect_name(side_effect)
        try:
            async with session.begin_nested():
                await side_effect(recorded.entry)
        except Exception as exc:  # noqa: BLE001
            metrics.record_side_effect(name, "error")
            logger.warning(
                "revenue_side_effect_failed",
                extra={
                    "extra": {
                        "side_effect": name,
                        "entry_id": recorded.entry.entry_id,
                        "stripe_event_id": entry.stripe_event_id,
                        "reason": type(exc).__name__,
                    }
                },
            )
        else:
            metrics.record_side_effect(name, "ok")
    return recorded


async def find_entry_by_balance_transaction(
    session: AsyncSession, balance_transaction: str
) -> GroupRevenueEntry | None:
    stmt = (
        sa.select(GroupRevenueEntry)
        .where(GroupRevenueEntry.stripe_balance_transaction == balance_transaction)
        .order_by(GroupRevenueEntry.occurred_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_group_revenue_summary(session: AsyncSession, group_id: str) -> list[CurrencySummary]:
    stmt = (
        sa.select(
            GroupRevenueEntry.currency,
            sa.func.coalesce(sa.func.sum(GroupRevenueEntry.amount_gross_cents), 0),
            sa.func.coalesce(sa.func.sum(GroupRevenueEntry.amount_net_cents), 0),
            sa.func.coalesce(sa.func.sum(GroupRevenueEntry.fee_cents), 0),
            sa.func.count(GroupRevenueEntry.entry_id),
        )
        .where(GroupRevenueEntry.group_id == group_id)
        .group_by(GroupRevenueEntry.currency)
        .order_by(GroupRevenueEntry.currency)
    )
    result = await session.execute(stmt)
    return [
        CurrencySummary(
            currency=currency,
            gross_cents=int(gross),
            net_cents=int(net),
            fee_cents=int(fee),
            count=int(count),
        )
        for currency, gross, net, fee, count in result.all()
    ]


async def list_revenue_entries(
    session: AsyncSession, group_id: str, *, limit: int = 25, offset: int = 0
) -> list[GroupRevenueEntry]:
    stmt = (
        sa.select(GroupRevenueEntry)
        .where(GroupRevenueEntry.group_id == group_id)
        .order_by(GroupRevenueEntry.occurred_at.desc(), GroupRevenueEntry.entry_id)
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
