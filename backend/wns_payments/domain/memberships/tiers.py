from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.memberships import statuses
from wns_payments.domain.memberships.db_models import GroupMembershipTier
from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.infra.stripe_idempotency import make_stripe_idempotency_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierSyncResult:
    product_id: str | None
    price_id: str | None
    skipped: bool


def _stripe_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


async def get_tier(session: AsyncSession, tier_id: str) -> GroupMembershipTier | None:
    return await session.get(GroupMembershipTier, tier_id)


async def sync_tier_with_stripe(
    session: AsyncSession, tier: GroupMembershipTier, stripe_client: Any
) -> TierSyncResult:
    """Create the Stripe product and price backing a tier when they are missing.

    Prices are immutable on Stripe, so an existing ``stripe_price_id`` is kept
    as is; changing a tier's price requires clearing it first.
    """
    if tier.stripe_product_id and tier.stripe_price_id:
        return TierSyncResult(product_id=tier.stripe_product_id, price_id=tier.stripe_price_id, skipped=True)

    metadata = {"tierId": tier.tier_id, "groupId": tier.group_id}
    product_id = tier.stripe_product_id
    if not product_id:
        product = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_product",
            name=tier.name,
            description=tier.description,
            metadata=metadata,
            idempotency_key=make_stripe_idempotency_key(
                "tier_product", group_id=tier.group_id, object_id=tier.tier_id
            ),
        )
        product_id = _stripe_id(product)

    billing_period = statuses.normalize_billing_period(tier.billing_period)
    recurring_interval = None
    if billing_period in {statuses.BILLING_MONTH, statuses.BILLING_YEAR}:
        recurring_interval = billing_period
    price = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_price",
        product_id=product_id,
        unit_amount=tier.price_cents,
        currency=tier.currency,
        recurring_interval=recurring_interval,
        metadata=metadata,
        idempotency_key=make_stripe_idempotency_key(
            "tier_price",
            group_id=tier.group_id,
            object_id=tier.tier_id,
            extra={
                "product_id": product_id,
                "unit_amount": tier.price_cents,
                "currency": tier.currency.lower(),
                "interval": recurring_interval,
            },
        ),
    )
    tier.stripe_product_id = product_id
    tier.stripe_price_id = _stripe_id(price)
    await session.flush()
    logger.info(
        "tier_synced_with_stripe",
        extra={
            "extra": {
                "tier_id": tier.tier_id,
                "stripe_product_id": tier.stripe_product_id,
                "stripe_price_id": tier.stripe_price_id,
            }
        },
    )
    return TierSyncResult(product_id=tier.stripe_product_id, price_id=tier.stripe_price_id, skipped=False)
