from __future__ import annotations

import logging
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.disputes import statuses
from wns_payments.domain.disputes.db_models import GroupPaymentDispute
from wns_payments.domain.revenue import service as revenue_service
from wns_payments.domain.webhooks.context import ContextQuery, ResolvedContext, resolve_context
from wns_payments.shared.stripe_payloads import (
    as_int,
    expandable_id,
    from_unix,
    get_path,
    metadata_of,
    normalize_currency,
    safe_get,
    utcnow,
)

logger = logging.getLogger(__name__)


def _first_balance_transaction(dispute: Any) -> str | None:
    raw = safe_get(dispute, "balance_transactions")
    if raw is None:
        return None
    items = raw if isinstance(raw, list) else safe_get(raw, "data")
    if not items:
        return None
    return expandable_id(items[0])


async def _context_for(
    session: AsyncSession, event_id: str, dispute: Any
) -> tuple[str, str, ResolvedContext] | None:
    dispute_id = expandable_id(safe_get(dispute, "id"))
    charge_id = expandable_id(safe_get(dispute, "charge"))
    if not dispute_id or not charge_id:
        logger.warning("dispute_missing_identifiers", extra={"extra": {"stripe_event_id": event_id}})
        return None
    context = await resolve_context(
        session,
        ContextQuery(
            payment_intent_id=expandable_id(safe_get(dispute, "payment_intent")),
            charge_id=charge_id,
            customer_id=expandable_id(safe_get(dispute, "customer")),
            metadata=metadata_of(dispute),
        ),
    )
    if not context.group_id:
        logger.warning(
            "dispute_without_group_context",
            extra={"extra": {"stripe_event_id": event_id, "stripe_dispute_id": dispute_id}},
        )
        return None
    return dispute_id, charge_id, context


async def _upsert_dispute(
    session: AsyncSession,
    *,
    event_id: str,
    dispute: Any,
    dispute_id: str,
    charge_id: str,
    context: ResolvedContext,
    metadata: dict[str, Any],
) -> GroupPaymentDispute:
    stmt = sa.select(GroupPaymentDispute).where(GroupPaymentDispute.stripe_dispute_id == dispute_id)
    record = (await session.execute(stmt)).scalar_one_or_none()
    if record is None:
        record = GroupPaymentDispute(group_id=context.group_id, stripe_dispute_id=dispute_id)
        session.add(record)

    record.membership_id = context.membership_id or record.membership_id
    record.user_id = context.user_id or record.user_id
    record.stripe_charge_id = charge_id
    record.stripe_payment_intent_id = (
        expandable_id(safe_get(dispute, "payment_intent")) or record.stripe_payment_intent_id
    )
    record.status = statuses.map_dispute_status(safe_get(dispute, "status"))
    record.amount_cents = as_int(safe_get(dispute, "amount")) or 0
    record.currency = normalize_currency(safe_get(dispute, "currency"), "EUR")
    record.reason = safe_get(dispute, "reason") or record.reason
    record.evidence_due_at = (
        from_unix(get_path(dispute, "evidence_details", "due_by")) or record.evidence_due_at
    )
    record.stripe_last_event_id = event_id
    record.metadata_json = metadata
    return record


async def open_or_update_dispute(
    session: AsyncSession, event_id: str, dispute: Any
) -> GroupPaymentDispute | None:
    resolved = await _context_for(session, event_id, dispute)
    if resolved is None:
        return None
    dispute_id, charge_id, context = resolved
    evidence_details = safe_get(dispute, "evidence_details")
    record = await _upsert_dispute(
        session,
        event_id=event_id,
        dispute=dispute,
        dispute_id=dispute_id,
        charge_id=charge_id,
        context=context,
        metadata={
            "evidenceDetails": dict(evidence_details) if isinstance(evidence_details, dict) else None,
            "paymentIntentId": expandable_id(safe_get(dispute, "payment_intent")),
        },
    )
    await session.flush()
    logger.info(
        "dispute_recorded",
        extra={
            "extra": {
                "dispute_id": record.dispute_id,
                "status": record.status,
                "stripe_event_id": event_id,
            }
        },
    )
    return record


async def close_dispute(
    session: AsyncSession, event_id: str, dispute: Any
) -> GroupPaymentDispute | None:
    """Record a closed dispute and book a chargeback when it was lost."""
    resolved = await _context_for(session, event_id, dispute)
    if resolved is None:
        return None
    dispute_id, charge_id, context = resolved
    outcome = safe_get(dispute, "outcome")
    record = await _upsert_dispute(
        session,
        event_id=event_id,
        dispute=dispute,
        dispute_id=dispute_id,
        charge_id=charge_id,
        context=context,
        metadata={
            "networkReasonCode": safe_get(dispute, "network_reason_code"),
            "outcome": dict(outcome) if isinstance(outcome, dict) else outcome,
            "paymentIntentId": expandable_id(safe_get(dispute, "payment_intent")),
        },
    )
    closed_at = from_unix(safe_get(dispute, "closed_at")) or utcnow()
    record.closed_at = closed_at
    await session.flush()
    logger.info(
        "dispute_closed",
        extra={
            "extra": {
                "dispute_id": record.dispute_id,
                "status": record.status,
                "stripe_event_id": event_id,
            }
        },
    )

    if record.status == statuses.LOST and record.amount_cents > 0:
        await revenue_service.record_revenue_entry(
            session,
            revenue_service.RevenueEntryInput(
                group_id=context.group_id,
                membership_id=context.membership_id,
                user_id=context.user_id,
                type=revenue_service.MEMBERSHIP_CHARGEBACK,
                amount_gross_cents=-record.amount_cents,
                currency=record.currency,
                occurred_at=closed_at,
                stripe_event_id=event_id,
                stripe_object_id=dispute_id,
                stripe_balance_transaction=_first_balance_transaction(dispute),
                metadata={
                    "source": "charge.dispute.closed",
                    "status": safe_get(dispute, "status"),
                    "paymentIntentId": record.stripe_payment_intent_id,
                },
            ),
        )
    return record
