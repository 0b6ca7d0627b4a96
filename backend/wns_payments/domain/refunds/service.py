from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.refunds.db_models import SUCCEEDED, GroupPaymentRefund, map_refund_status
from wns_payments.domain.revenue import service as revenue_service
from wns_payments.domain.webhooks.context import ContextQuery, resolve_context
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


@dataclass(frozen=True)
class RefundRecord:
    group_id: str
    stripe_refund_id: str
    stripe_charge_id: str
    stripe_event_id: str
    amount_cents: int
    currency: str
    status: str
    membership_id: str | None = None
    user_id: str | None = None
    stripe_payment_intent_id: str | None = None
    reason: str | None = None
    failure_reason: str | None = None
    processed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


async def upsert_refund(session: AsyncSession, record: RefundRecord) -> GroupPaymentRefund:
    stmt = sa.select(GroupPaymentRefund).where(
        GroupPaymentRefund.stripe_refund_id == record.stripe_refund_id
    )
    refund = (await session.execute(stmt)).scalar_one_or_none()
    if refund is None:
        refund = GroupPaymentRefund(group_id=record.group_id, stripe_refund_id=record.stripe_refund_id)
        session.add(refund)

    refund.membership_id = record.membership_id or refund.membership_id
    refund.user_id = record.user_id or refund.user_id
    refund.stripe_charge_id = record.stripe_charge_id
    refund.stripe_payment_intent_id = record.stripe_payment_intent_id or refund.stripe_payment_intent_id
    refund.stripe_last_event_id = record.stripe_event_id
    refund.amount_cents = record.amount_cents
    refund.currency = record.currency.upper()
    refund.status = record.status
    refund.reason = record.reason or refund.reason
    refund.failure_reason = record.failure_reason or refund.failure_reason
    refund.processed_at = record.processed_at or refund.processed_at
    refund.metadata_json = dict(record.metadata)
    await session.flush()
    return refund


async def reconcile_charge_refund(session: AsyncSession, event_id: str, charge: Any) -> int | None:
    """Audit every refund on a ``charge.refunded`` charge and book the succeeded total.

    Returns the refunded amount written to the ledger, ``0`` when nothing
    succeeded, or ``None`` when the charge could not be attributed to a group.
    """
    charge_id = expandable_id(safe_get(charge, "id"))
    if not charge_id:
        logger.warning("refund_missing_charge_id", extra={"extra": {"stripe_event_id": event_id}})
        return None

    payment_intent_id = expandable_id(safe_get(charge, "payment_intent"))
    context = await resolve_context(
        session,
        ContextQuery(
            payment_intent_id=payment_intent_id,
            charge_id=charge_id,
            customer_id=expandable_id(safe_get(charge, "customer")),
            metadata=metadata_of(charge),
        ),
    )
    if not context.group_id:
        logger.warning(
            "refund_without_group_context",
            extra={"extra": {"stripe_event_id": event_id, "stripe_charge_id": charge_id}},
        )
        return None

    refunds = get_path(charge, "refunds", "data", default=[]) or []
    charge_currency = safe_get(charge, "currency")
    total_refunded = 0
    refund_ids: list[str | None] = []
    for refund in refunds:
        refund_id = expandable_id(safe_get(refund, "id"))
        refund_ids.append(refund_id)
        amount = as_int(safe_get(refund, "amount"))
        if not refund_id or amount is None:
            continue
        status = map_refund_status(safe_get(refund, "status"))
        if status == SUCCEEDED:
            total_refunded += amount
        await upsert_refund(
            session,
            RefundRecord(
                group_id=context.group_id,
                membership_id=context.membership_id,
                user_id=context.user_id,
                stripe_refund_id=refund_id,
                stripe_charge_id=charge_id,
                stripe_payment_intent_id=payment_intent_id,
                stripe_event_id=event_id,
                amount_cents=amount,
                currency=normalize_currency(safe_get(refund, "currency") or charge_currency, "EUR"),
                status=status,
                reason=safe_get(refund, "reason"),
                failure_reason=safe_get(refund, "failure_reason"),
                processed_at=from_unix(safe_get(refund, "created")) or from_unix(safe_get(charge, "created")),
                metadata={
                    "balanceTransaction": expandable_id(safe_get(refund, "balance_transaction")),
                    "paymentIntentId": payment_intent_id,
                },
            ),
        )

    if total_refunded <= 0:
        logger.info(
            "refund_nothing_succeeded",
            extra={"extra": {"stripe_event_id": event_id, "stripe_charge_id": charge_id}},
        )
        return 0

    fallback_currency = safe_get(refunds[0], "currency") if refunds else None
    await revenue_service.record_revenue_entry(
        session,
        revenue_service.RevenueEntryInput(
            group_id=context.group_id,
            membership_id=context.membership_id,
            user_id=context.user_id,
            type=revenue_service.MEMBERSHIP_REFUND,
            amount_gross_cents=-total_refunded,
            currency=normalize_currency(charge_currency or fallback_currency, "EUR"),
            occurred_at=from_unix(safe_get(charge, "created")) or utcnow(),
            stripe_event_id=event_id,
            stripe_object_id=charge_id,
            stripe_balance_transaction=expandable_id(safe_get(charge, "balance_transaction")),
            metadata={
                "source": "charge.refunded",
                "paymentIntentId": payment_intent_id,
                "refundIds": refund_ids,
            },
        ),
    )
    return total_refunded
