from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.memberships import statuses
from wns_payments.domain.memberships.db_models import GroupMemberStatus, GroupMembership, GroupMembershipEvent
from wns_payments.domain.memberships.supersession import SupersessionPolicy
from wns_payments.infra.db import dialect_insert
from wns_payments.shared.stripe_payloads import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutCompletion:
    event_id: str
    group_id: str
    user_id: str
    tier_id: str | None
    billing_period: str | None
    checkout_session_id: str | None = None
    customer_id: str | None = None
    subscription_id: str | None = None
    payment_intent_id: str | None = None


@dataclass
class MembershipChange:
    membership: GroupMembership
    applied: bool
    created: bool = False


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, billing_period: str | None) -> datetime | None:
    """Return ``start`` plus one billing period, or ``None`` when it never expires.

    Month arithmetic clamps to the last day of the target month, so Jan 31
    becomes Feb 28 (or 29).
    """
    period = statuses.normalize_billing_period(billing_period)
    if period == statuses.BILLING_MONTH:
        return _add_months(start, 1)
    if period == statuses.BILLING_YEAR:
        return _add_months(start, 12)
    return None


async def get_membership(session: AsyncSession, group_id: str, user_id: str) -> GroupMembership | None:
    stmt = sa.select(GroupMembership).where(
        GroupMembership.group_id == group_id,
        GroupMembership.user_id == user_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_membership_by_subscription(
    session: AsyncSession, subscription_id: str
) -> GroupMembership | None:
    stmt = (
        sa.select(GroupMembership)
        .where(GroupMembership.stripe_subscription_id == subscription_id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_membership_by_payment_intent(
    session: AsyncSession, payment_intent_id: str
) -> GroupMembership | None:
    stmt = (
        sa.select(GroupMembership)
        .where(GroupMembership.stripe_payment_intent_id == payment_intent_id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_latest_membership_by_customer(
    session: AsyncSession, customer_id: str
) -> GroupMembership | None:
    stmt = (
        sa.select(GroupMembership)
        .where(GroupMembership.stripe_customer_id == customer_id)
        .order_by(GroupMembership.renewed_at.desc().nulls_last(), GroupMembership.created_at.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def claim_membership_event(session: AsyncSession, membership: GroupMembership, event_id: str) -> bool:
    """Record ``event_id`` as applied to ``membership``. Returns False when it already was.

    ``stripe_last_event_id`` only remembers the newest event, so an older id
    redelivered after a newer one is caught here instead.
    """
    insert = dialect_insert(session)
    stmt = (
        insert(GroupMembershipEvent)
        .values(
            membership_event_id=str(uuid.uuid4()),
            membership_id=membership.membership_id,
            stripe_event_id=event_id,
        )
        .on_conflict_do_nothing(
            index_elements=[GroupMembershipEvent.membership_id, GroupMembershipEvent.stripe_event_id]
        )
    )
    result = await session.execute(stmt)
    return (result.rowcount or 0) == 1


async def sync_member_status(
    session: AsyncSession,
    *,
    group_id: str,
    user_id: str,
    membership_status: str,
    now: datetime | None = None,
) -> GroupMemberStatus:
    """Mirror a membership status onto the simplified active/inactive projection."""
    now = now or utcnow()
    legacy_status = statuses.legacy_status_for(membership_status)
    stmt = sa.select(GroupMemberStatus).where(
        GroupMemberStatus.group_id == group_id,
        GroupMemberStatus.user_id == user_id,
    )
    row = (await session.execute(stmt)).scalar_one_or_none()
    if row is None:
        row = GroupMemberStatus(
            group_id=group_id,
            user_id=user_id,
            status=legacy_status,
            joined_at=now,
            last_active=now if legacy_status == statuses.LEGACY_ACTIVE else None,
        )
        session.add(row)
    else:
        if legacy_status == statuses.LEGACY_ACTIVE:
            row.last_active = now
        row.status = legacy_status
    await session.flush()
    return row


async def apply_checkout_completion(
    session: AsyncSession,
    completion: CheckoutCompletion,
    *,
    supersession: SupersessionPolicy | None = None,
    now: datetime | None = None,
) -> MembershipChange:
    """Create or refresh the ``(group, user)`` membership for a completed checkout."""
    now = now or utcnow()
    expires_at = add_billing_period(now, completion.billing_period)
    membership = await get_membership(session, completion.group_id, completion.user_id)

    if membership is None:
        membership = GroupMembership(
            group_id=completion.group_id,
            user_id=completion.user_id,
            tier_id=completion.tier_id,
            status=statuses.ACTIVE,
            started_at=now,
            renewed_at=now,
            expires_at=expires_at,
            stripe_customer_id=completion.customer_id,
            stripe_subscription_id=completion.subscription_id,
            stripe_checkout_session_id=completion.checkout_session_id,
            stripe_payment_intent_id=completion.payment_intent_id,
            stripe_last_event_id=completion.event_id,
        )
        session.add(membership)
        await session.flush()
        await claim_membership_event(session, membership, completion.event_id)
        await sync_member_status(
            session,
            group_id=completion.group_id,
            user_id=completion.user_id,
            membership_status=statuses.ACTIVE,
            now=now,
        )
        logger.info(
            "membership_created",
            extra={
                "extra": {
                    "membership_id": membership.membership_id,
                    "group_id": completion.group_id,
                    "stripe_event_id": completion.event_id,
                }
            },
        )
        return MembershipChange(membership=membership, applied=True, created=True)

    if membership.stripe_last_event_id == completion.event_id or not await claim_membership_event(
        session, membership, completion.event_id
    ):
        logger.debug(
            "membership_event_already_applied",
            extra={
                "extra": {
                    "membership_id": membership.membership_id,
                    "stripe_event_id": completion.event_id,
                }
            },
        )
        return MembershipChange(membership=membership, applied=False)

    previous_subscription_id = membership.stripe_subscription_id
    previous_status = membership.status

    membership.status = statuses.ACTIVE
    membership.tier_id = completion.tier_id
    membership.renewed_at = now
    membership.expires_at = expires_at
    membership.stripe_customer_id = completion.customer_id or membership.stripe_customer_id
    membership.stripe_subscription_id = completion.subscription_id or membership.stripe_subscription_id
    membership.stripe_checkout_session_id = completion.checkout_session_id
    membership.stripe_payment_intent_id = (
        completion.payment_intent_id or membership.stripe_payment_intent_id
    )
    membership.stripe_last_event_id = completion.event_id
    await session.flush()
    await sync_member_status(
        session,
        group_id=membership.group_id,
        user_id=membership.user_id,
        membership_status=statuses.ACTIVE,
        now=now,
    )
    logger.info(
        "membership_renewed",
        extra={
            "extra": {
                "membership_id": membership.membership_id,
                "previous_status": previous_status,
                "stripe_event_id": completion.event_id,
            }
        },
    )

    superseded = (
        supersession is not None
        and previous_subscription_id
        and completion.subscription_id
        and previous_subscription_id != completion.subscription_id
        and previous_status != statuses.CANCELED
    )
    if superseded:
        try:
            await supersession.handle(
                membership,
                previous_subscription_id=previous_subscription_id,
                new_subscription_id=completion.subscription_id,
                event_id=completion.event_id,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "membership_supersession_failed",
                extra={
                    "extra": {
                        "membership_id": membership.membership_id,
                        "previous_subscription_id": previous_subscription_id,
                        "reason": type(exc).__name__,
                    }
                },
            )
    return MembershipChange(membership=membership, applied=True)


async def _apply_to_subscription(
    session: AsyncSession,
    *,
    event_id: str,
    subscription_id: str,
    status: str,
    renewed_at: datetime | None,
    expires_at: datetime | None,
    customer_id: str | None = None,
    payment_intent_id: str | None = None,
) -> GroupMembership | None:
    membership = await find_membership_by_subscription(session, subscription_id)
    if membership is None:
        logger.warning(
            "membership_not_found_for_subscription",
            extra={"extra": {"stripe_subscription_id": subscription_id, "stripe_event_id": event_id}},
        )
        return None
    if membership.stripe_last_event_id == event_id or not await claim_membership_event(
        session, membership, event_id
    ):
        logger.debug(
            "membership_event_already_applied",
            extra={"extra": {"membership_id": membership.membership_id, "stripe_event_id": event_id}},
        )
        return None

    previous_status = membership.status
    membership.status = status
    if renewed_at is not None:
        membership.renewed_at = renewed_at
    if expires_at is not None:
        membership.expires_at = expires_at
    if customer_id:
        membership.stripe_customer_id = customer_id
    if payment_intent_id:
        membership.stripe_payment_intent_id = payment_intent_id
    membership.stripe_last_event_id = event_id
    await session.flush()
    await sync_member_status(
        session,
        group_id=membership.group_id,
        user_id=membership.user_id,
        membership_status=status,
    )
    logger.info(
        "membership_status_applied",
        extra={
            "extra": {
                "membership_id": membership.membership_id,
                "previous_status": previous_status,
                "status": status,
                "stripe_event_id": event_id,
            }
        },
    )
    return membership


async def apply_subscription_change(
    session: AsyncSession,
    *,
    event_id: str,
    subscription_id: str,
    provider_status: str | None,
    period_start: datetime | None,
    period_end: datetime | None,
    customer_id: str | None = None,
    deleted: bool = False,
) -> GroupMembership | None:
    """Apply ``customer.subscription.updated``/``deleted``.

    Returns ``None`` when no membership uses the subscription or the event was
    already applied.
    """
    status = statuses.CANCELED if deleted else statuses.map_subscription_status(provider_status)
    return await _apply_to_subscription(
        session,
        event_id=event_id,
        subscription_id=subscription_id,
        status=status,
        renewed_at=period_start or utcnow(),
        expires_at=period_end,
        customer_id=customer_id,
    )


async def apply_invoice_payment(
    session: AsyncSession,
    *,
    event_id: str,
    subscription_id: str,
    succeeded: bool,
    paid_at: datetime | None,
    period_end: datetime | None,
    customer_id: str | None = None,
    payment_intent_id: str | None = None,
) -> GroupMembership | None:
    """A failed payment moves the membership to past_due and keeps ``renewed_at``."""
    return await _apply_to_subscription(
        session,
        event_id=event_id,
        subscription_id=subscription_id,
        status=statuses.ACTIVE if succeeded else statuses.PAST_DUE,
        renewed_at=(paid_at or utcnow()) if succeeded else None,
        expires_at=period_end,
        customer_id=customer_id,
        payment_intent_id=payment_intent_id,
    )
