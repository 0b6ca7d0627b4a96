from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.coupons import service as coupon_service
from wns_payments.domain.coupons.db_models import GroupMembershipCoupon
from wns_payments.domain.disputes import service as dispute_service
from wns_payments.domain.memberships import service as membership_service
from wns_payments.domain.memberships import tiers as tier_service
from wns_payments.domain.memberships.supersession import SupersessionPolicy
from wns_payments.domain.notifications.receipts import ReceiptNotifier
from wns_payments.domain.payouts import service as payout_service
from wns_payments.domain.refunds import service as refund_service
from wns_payments.domain.revenue import service as revenue_service
from wns_payments.domain.revenue.db_models import GroupRevenueEntry
from wns_payments.domain.webhooks.events import StripeEvent, StripeEventType
from wns_payments.shared.stripe_payloads import (
    as_int,
    expandable_id,
    from_unix,
    get_path,
    metadata_of,
    read_metadata_string,
    safe_get,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookDependencies:
    supersession_policy: SupersessionPolicy | None = None
    receipt_notifier: ReceiptNotifier | None = None


WebhookHandler = Callable[[AsyncSession, StripeEvent, WebhookDependencies], Awaitable[None]]


def _charge_side_effects(
    session: AsyncSession,
    deps: WebhookDependencies,
    *,
    event_id: str,
    coupon: GroupMembershipCoupon | None,
    description: str | None,
) -> list[revenue_service.SideEffect]:
    effects: list[revenue_service.SideEffect] = []
    if coupon is not None:
        coupon_id = coupon.coupon_id

        async def redeem_coupon(entry: GroupRevenueEntry) -> None:
            await coupon_service.redeem_coupon(session, coupon_id, event_id=event_id)

        effects.append(redeem_coupon)

    notifier = deps.receipt_notifier
    if notifier is not None:

        async def send_receipt(entry: GroupRevenueEntry) -> None:
            await notifier.queue_membership_receipt(
                session,
                user_id=entry.user_id,
                group_id=entry.group_id,
                amount_cents=entry.amount_gross_cents,
                currency=entry.currency,
                description=description,
            )

        effects.append(send_receipt)
    return effects


async def _coupon_for_checkout(
    session: AsyncSession, group_id: str, metadata: dict[str, Any], checkout: Any
) -> GroupMembershipCoupon | None:
    coupon_id = read_metadata_string(metadata, "couponId")
    if coupon_id:
        coupon = await coupon_service.get_coupon(session, coupon_id)
        if coupon is not None:
            return coupon
    coupon_code = read_metadata_string(metadata, "couponCode")
    if coupon_code:
        coupon = await coupon_service.find_active_coupon_by_code(session, group_id, coupon_code)
        if coupon is not None:
            return coupon
    promotion_code = expandable_id(
        get_path(checkout, "total_details", "breakdown", "discounts", 0, "promotion_code")
    )
    if promotion_code:
        return await coupon_service.find_coupon_by_promotion_code(session, promotion_code)
    return None


async def handle_checkout_completed(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    checkout = event.obj
    metadata = metadata_of(checkout)
    user_id = read_metadata_string(metadata, "userId")
    tier_id = read_metadata_string(metadata, "tierId")
    group_id = read_metadata_string(metadata, "groupId")
    if not user_id:
        logger.warning("checkout_missing_user_metadata", extra={"extra": {"stripe_event_id": event.event_id}})
        return

    billing_period = None
    if tier_id:
        tier = await tier_service.get_tier(session, tier_id)
        if tier is None:
            logger.warning(
                "checkout_tier_missing",
                extra={"extra": {"stripe_event_id": event.event_id, "tier_id": tier_id}},
            )
            tier_id = None
        else:
            group_id = tier.group_id
            billing_period = tier.billing_period
    if not group_id:
        logger.warning("checkout_missing_group_context", extra={"extra": {"stripe_event_id": event.event_id}})
        return

    change = await membership_service.apply_checkout_completion(
        session,
        membership_service.CheckoutCompletion(
            event_id=event.event_id,
            group_id=group_id,
            user_id=user_id,
            tier_id=tier_id,
            billing_period=billing_period,
            checkout_session_id=expandable_id(safe_get(checkout, "id")),
            customer_id=expandable_id(safe_get(checkout, "customer")),
            subscription_id=expandable_id(safe_get(checkout, "subscription")),
            payment_intent_id=expandable_id(safe_get(checkout, "payment_intent")),
        ),
        supersession=deps.supersession_policy,
    )

    # Subscription checkouts are booked from invoice.payment_succeeded.
    mode = safe_get(checkout, "mode")
    amount_total = as_int(safe_get(checkout, "amount_total"))
    currency = safe_get(checkout, "currency")
    if mode == "subscription" or amount_total is None or not currency:
        return

    membership = change.membership
    coupon = await _coupon_for_checkout(session, group_id, metadata, checkout)
    await revenue_service.record_revenue_entry_with_side_effects(
        session,
        revenue_service.RevenueEntryInput(
            group_id=membership.group_id,
            membership_id=membership.membership_id,
            user_id=membership.user_id,
            type=revenue_service.MEMBERSHIP_CHARGE,
            amount_gross_cents=amount_total,
            currency=currency,
            occurred_at=from_unix(safe_get(checkout, "created")) or utcnow(),
            stripe_event_id=event.event_id,
            stripe_object_id=expandable_id(safe_get(checkout, "id")) or event.event_id,
            stripe_balance_transaction=expandable_id(safe_get(checkout, "payment_intent")),
            metadata={
                "source": StripeEventType.CHECKOUT_SESSION_COMPLETED.value,
                "mode": mode,
                "couponId": coupon.coupon_id if coupon else None,
                "couponCode": read_metadata_string(metadata, "couponCode"),
            },
        ),
        on_created=_charge_side_effects(
            session,
            deps,
            event_id=event.event_id,
            coupon=coupon,
            description=read_metadata_string(metadata, "description"),
        ),
    )


def _subscription_period(subscription: Any, field: str) -> Any:
    value = safe_get(subscription, field)
    if value is None:
        value = get_path(subscription, "items", "data", 0, field)
    return from_unix(value)


async def _handle_subscription(
    session: AsyncSession, event: StripeEvent, *, deleted: bool
) -> None:
    subscription = event.obj
    subscription_id = expandable_id(safe_get(subscription, "id"))
    if not subscription_id:
        logger.warning("subscription_missing_id", extra={"extra": {"stripe_event_id": event.event_id}})
        return
    await membership_service.apply_subscription_change(
        session,
        event_id=event.event_id,
        subscription_id=subscription_id,
        provider_status=safe_get(subscription, "status"),
        period_start=_subscription_period(subscription, "current_period_start"),
        period_end=_subscription_period(subscription, "current_period_end"),
        customer_id=expandable_id(safe_get(subscription, "customer")),
        deleted=deleted,
    )


async def handle_subscription_updated(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await _handle_subscription(session, event, deleted=False)


async def handle_subscription_deleted(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await _handle_subscription(session, event, deleted=True)


def _invoice_subscription_id(invoice: Any) -> str | None:
    return expandable_id(safe_get(invoice, "subscription")) or expandable_id(
        get_path(invoice, "parent", "subscription_details", "subscription")
    )


async def _handle_invoice(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies, *, succeeded: bool
) -> None:
    invoice = event.obj
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.warning(
            "invoice_missing_subscription",
            extra={"extra": {"stripe_event_id": event.event_id, "invoice_id": safe_get(invoice, "id")}},
        )
        return

    paid_at = (
        from_unix(get_path(invoice, "status_transitions", "paid_at"))
        or from_unix(safe_get(invoice, "created"))
        or utcnow()
    )
    membership = await membership_service.apply_invoice_payment(
        session,
        event_id=event.event_id,
        subscription_id=subscription_id,
        succeeded=succeeded,
        paid_at=paid_at,
        period_end=from_unix(get_path(invoice, "lines", "data", 0, "period", "end")),
        customer_id=expandable_id(safe_get(invoice, "customer")),
        payment_intent_id=expandable_id(safe_get(invoice, "payment_intent")),
    )
    if not succeeded or membership is None:
        return

    gross = as_int(safe_get(invoice, "total"))
    if gross is None:
        gross = as_int(safe_get(invoice, "amount_paid"))
    net = as_int(safe_get(invoice, "amount_paid"))
    currency = safe_get(invoice, "currency")
    if gross is None or not currency:
        return

    coupon = None
    promotion_code = expandable_id(get_path(invoice, "discount", "promotion_code"))
    if promotion_code:
        coupon = await coupon_service.find_coupon_by_promotion_code(session, promotion_code)

    await revenue_service.record_revenue_entry_with_side_effects(
        session,
        revenue_service.RevenueEntryInput(
            group_id=membership.group_id,
            membership_id=membership.membership_id,
            user_id=membership.user_id,
            type=revenue_service.MEMBERSHIP_CHARGE,
            amount_gross_cents=gross,
            amount_net_cents=net if net is not None else gross,
            currency=currency,
            occurred_at=paid_at,
            stripe_event_id=event.event_id,
            stripe_object_id=expandable_id(safe_get(invoice, "id")) or event.event_id,
            stripe_balance_transaction=expandable_id(safe_get(invoice, "charge")),
            metadata={
                "source": StripeEventType.INVOICE_PAYMENT_SUCCEEDED.value,
                "invoiceNumber": safe_get(invoice, "number"),
                "subscriptionId": subscription_id,
                "promotionCode": promotion_code,
            },
        ),
        on_created=_charge_side_effects(
            session,
            deps,
            event_id=event.event_id,
            coupon=coupon,
            description=get_path(invoice, "lines", "data", 0, "description"),
        ),
    )


async def handle_invoice_payment_succeeded(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await _handle_invoice(session, event, deps, succeeded=True)


async def handle_invoice_payment_failed(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await _handle_invoice(session, event, deps, succeeded=False)


async def handle_charge_refunded(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await refund_service.reconcile_charge_refund(session, event.event_id, event.obj)


async def handle_dispute_opened_or_updated(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await dispute_service.open_or_update_dispute(session, event.event_id, event.obj)


async def handle_dispute_closed(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await dispute_service.close_dispute(session, event.event_id, event.obj)


async def handle_payout(
    session: AsyncSession, event: StripeEvent, deps: WebhookDependencies
) -> None:
    await payout_service.upsert_payout_from_stripe(session, event.event_id, event.obj)


DEFAULT_HANDLERS: Mapping[StripeEventType, WebhookHandler] = MappingProxyType(
    {
        StripeEventType.CHECKOUT_SESSION_COMPLETED: handle_checkout_completed,
        StripeEventType.SUBSCRIPTION_UPDATED: handle_subscription_updated,
        StripeEventType.SUBSCRIPTION_DELETED: handle_subscription_deleted,
        StripeEventType.INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
        StripeEventType.INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
        StripeEventType.CHARGE_REFUNDED: handle_charge_refunded,
        StripeEventType.DISPUTE_CREATED: handle_dispute_opened_or_updated,
        StripeEventType.DISPUTE_UPDATED: handle_dispute_opened_or_updated,
        StripeEventType.DISPUTE_CLOSED: handle_dispute_closed,
        StripeEventType.DISPUTE_FUNDS_REINSTATED: handle_dispute_closed,
        StripeEventType.PAYOUT_CREATED: handle_payout,
        StripeEventType.PAYOUT_UPDATED: handle_payout,
        StripeEventType.PAYOUT_PAID: handle_payout,
        StripeEventType.PAYOUT_FAILED: handle_payout,
        StripeEventType.PAYOUT_CANCELED: handle_payout,
    }
)
