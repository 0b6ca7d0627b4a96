from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.payouts import statuses
from wns_payments.domain.payouts.db_models import GroupPayout, GroupPayoutSchedule
from wns_payments.infra.metrics import metrics
from wns_payments.shared.stripe_payloads import (
    as_int,
    expandable_id,
    from_unix,
    metadata_of,
    normalize_currency,
    read_metadata_string,
    safe_get,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_PAYOUT_CURRENCY = "EUR"


@dataclass(frozen=True)
class PayoutReference:
    """Identifiers a Stripe payout event carries for locating our record."""

    stripe_payout_id: str | None
    group_payout_id: str | None
    group_id: str | None
    schedule_id: str | None
    transfer_id: str | None

    @classmethod
    def from_payout(cls, payout: Any) -> PayoutReference:
        metadata = metadata_of(payout)
        return cls(
            stripe_payout_id=expandable_id(safe_get(payout, "id")),
            group_payout_id=read_metadata_string(metadata, "groupPayoutId"),
            group_id=read_metadata_string(metadata, "groupId"),
            schedule_id=read_metadata_string(metadata, "groupPayoutScheduleId"),
            transfer_id=read_metadata_string(metadata, "transferId", "stripeTransferId"),
        )


PayoutLookup = Callable[[AsyncSession, PayoutReference], Awaitable[GroupPayout | None]]


async def by_group_payout_id(session: AsyncSession, ref: PayoutReference) -> GroupPayout | None:
    if not ref.group_payout_id:
        return None
    return await session.get(GroupPayout, ref.group_payout_id)


async def by_stripe_payout_id(session: AsyncSession, ref: PayoutReference) -> GroupPayout | None:
    if not ref.stripe_payout_id:
        return None
    stmt = sa.select(GroupPayout).where(GroupPayout.stripe_payout_id == ref.stripe_payout_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def by_transfer_id(session: AsyncSession, ref: PayoutReference) -> GroupPayout | None:
    if not ref.transfer_id:
        return None
    stmt = (
        sa.select(GroupPayout)
        .where(GroupPayout.stripe_transfer_id == ref.transfer_id)
        .order_by(GroupPayout.initiated_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def latest_for_group(session: AsyncSession, ref: PayoutReference) -> GroupPayout | None:
    """Most recently initiated payout of the metadata group.

    Legacy payouts carry nothing but ``groupId``. When two payouts for the same
    group are in flight without distinguishing metadata, an event for the
    newer one can land on the older record.
    """
    if not ref.group_id:
        return None
    stmt = (
        sa.select(GroupPayout)
        .where(GroupPayout.group_id == ref.group_id)
        .order_by(GroupPayout.initiated_at.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


PAYOUT_LOOKUPS: tuple[tuple[str, PayoutLookup], ...] = (
    ("group_payout_id", by_group_payout_id),
    ("stripe_payout_id", by_stripe_payout_id),
    ("transfer_id", by_transfer_id),
    ("latest_for_group", latest_for_group),
)


async def find_payout(
    session: AsyncSession,
    ref: PayoutReference,
    *,
    lookups: tuple[tuple[str, PayoutLookup], ...] = PAYOUT_LOOKUPS,
) -> tuple[GroupPayout | None, str | None]:
    for name, lookup in lookups:
        record = await lookup(session, ref)
        if record is not None:
            return record, name
    return None, None


def merge_payout_metadata(existing: dict[str, Any] | None, payout: Any) -> dict[str, Any]:
    base = dict(existing) if isinstance(existing, dict) else {}
    existing_stripe = base.get("stripe") if isinstance(base.get("stripe"), dict) else {}
    arrival = from_unix(safe_get(payout, "arrival_date"))
    base["stripe"] = {
        **existing_stripe,
        "payoutType": safe_get(payout, "type"),
        "destinationType": safe_get(payout, "destination_type"),
        "destination": expandable_id(safe_get(payout, "destination")),
        "arrivalDate": arrival.isoformat() if arrival else None,
        "balanceTransaction": expandable_id(safe_get(payout, "balance_transaction")),
        "failureCode": safe_get(payout, "failure_code"),
        "failureMessage": safe_get(payout, "failure_message"),
        "statementDescriptor": safe_get(payout, "statement_descriptor"),
        "metadata": metadata_of(payout),
    }
    return base


def _failure_reason(payout: Any, previous: str | None) -> str:
    return (
        safe_get(payout, "failure_message")
        or safe_get(payout, "failure_code")
        or previous
        or statuses.DEFAULT_FAILURE_REASON
    )


async def _resolve_schedule_id(
    session: AsyncSession, group_id: str, explicit_schedule_id: str | None
) -> str | None:
    if explicit_schedule_id:
        return explicit_schedule_id
    stmt = sa.select(GroupPayoutSchedule.schedule_id).where(GroupPayoutSchedule.group_id == group_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def mark_schedule_paid(
    session: AsyncSession, schedule_id: str | None, completed_at: datetime | None
) -> None:
    if not schedule_id or completed_at is None:
        return
    await session.execute(
        sa.update(GroupPayoutSchedule)
        .where(GroupPayoutSchedule.schedule_id == schedule_id)
        .values(last_payout_at=completed_at, next_payout_scheduled_at=None)
        .execution_options(synchronize_session=False)
    )
    logger.info(
        "payout_schedule_updated",
        extra={"extra": {"schedule_id": schedule_id, "last_payout_at": completed_at.isoformat()}},
    )


async def upsert_payout_from_stripe(
    session: AsyncSession,
    event_id: str,
    payout: Any,
    *,
    lookups: tuple[tuple[str, PayoutLookup], ...] = PAYOUT_LOOKUPS,
) -> GroupPayout | None:
    """Create or update a payout record from a ``payout.*`` event.

    Returns ``None`` when nothing matched and the event has no ``groupId``
    metadata to create a record under.
    """
    ref = PayoutReference.from_payout(payout)
    record, matched_by = await find_payout(session, ref, lookups=lookups)

    status = statuses.map_payout_status(safe_get(payout, "status"))
    initiated_at = from_unix(safe_get(payout, "created")) or (record.initiated_at if record else None) or utcnow()
    completed_at = None
    if status == statuses.PAID:
        completed_at = from_unix(safe_get(payout, "arrival_date")) or utcnow()
    amount = as_int(safe_get(payout, "amount"))
    raw_currency = safe_get(payout, "currency")

    if record is None:
        if not ref.group_id:
            logger.warning(
                "payout_missing_group_context",
                extra={"extra": {"stripe_event_id": event_id, "stripe_payout_id": ref.stripe_payout_id}},
            )
            metrics.record_payout_upsert(status, "skipped")
            return None
        schedule_id = await _resolve_schedule_id(session, ref.group_id, ref.schedule_id)
        record = GroupPayout(
            group_id=ref.group_id,
            schedule_id=schedule_id,
            amount_cents=amount if amount is not None else 0,
            currency=normalize_currency(raw_currency, DEFAULT_PAYOUT_CURRENCY),
            status=status,
            initiated_at=initiated_at,
            completed_at=completed_at,
            failure_reason=_failure_reason(payout, None) if status == statuses.FAILED else None,
            stripe_payout_id=ref.stripe_payout_id,
            stripe_transfer_id=ref.transfer_id,
            stripe_last_event_id=event_id,
            metadata_json=merge_payout_metadata(None, payout),
        )
        session.add(record)
        await session.flush()
        await mark_schedule_paid(session, schedule_id, completed_at)
        metrics.record_payout_upsert(status, "created")
        logger.info(
            "payout_created",
            extra={
                "extra": {
                    "payout_id": record.payout_id,
                    "group_id": record.group_id,
                    "status": status,
                    "stripe_event_id": event_id,
                }
            },
        )
        return record

    if record.stripe_last_event_id == event_id:
        metrics.record_payout_upsert(record.status, "duplicate")
        logger.debug(
            "payout_event_already_applied",
            extra={"extra": {"payout_id": record.payout_id, "stripe_event_id": event_id}},
        )
        return record

    record.status = status
    record.initiated_at = initiated_at
    record.stripe_last_event_id = event_id
    record.metadata_json = merge_payout_metadata(record.metadata_json, payout)
    if completed_at is not None:
        record.completed_at = completed_at
    else:
        record.completed_at = None
    if status == statuses.FAILED:
        record.failure_reason = _failure_reason(payout, record.failure_reason)
    else:
        record.failure_reason = None
    if ref.stripe_payout_id:
        record.stripe_payout_id = ref.stripe_payout_id
    if ref.transfer_id:
        record.stripe_transfer_id = ref.transfer_id
    if ref.schedule_id:
        record.schedule_id = ref.schedule_id
    if amount is not None:
        record.amount_cents = amount
    if isinstance(raw_currency, str) and raw_currency.strip():
        record.currency = normalize_currency(raw_currency, record.currency)
    await session.flush()
    await mark_schedule_paid(session, record.schedule_id, completed_at)
    metrics.record_payout_upsert(status, "updated")
    logger.info(
        "payout_updated",
        extra={
            "extra": {
                "payout_id": record.payout_id,
                "matched_by": matched_by,
                "status": status,
                "stripe_event_id": event_id,
            }
        },
    )
    return record
