from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.domain.coupons.db_models import (
    DISCOUNT_FIXED_AMOUNT,
    DISCOUNT_PERCENTAGE,
    GroupMembershipCoupon,
)
from wns_payments.domain.errors import DomainError
from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.infra.stripe_idempotency import make_stripe_idempotency_key

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

COUPON_INACTIVE = "COUPON_INACTIVE"
COUPON_NOT_ACTIVE = "COUPON_NOT_ACTIVE"
COUPON_EXPIRED = "COUPON_EXPIRED"
COUPON_LIMIT_REACHED = "COUPON_LIMIT_REACHED"


@dataclass(frozen=True)
class CouponSyncResult:
    coupon_id: str | None
    promotion_code_id: str | None
    skipped: bool


def normalize_coupon_code(code: str) -> str:
    return _WHITESPACE_RE.sub("", code or "").upper()


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_coupon_values(
    discount_type: str,
    *,
    percentage_off: float | None = None,
    amount_off_cents: int | None = None,
) -> None:
    if discount_type == DISCOUNT_PERCENTAGE:
        if percentage_off is None:
            raise DomainError(detail="PERCENT_REQUIRED", title="Invalid coupon")
        if percentage_off <= 0 or percentage_off > 100:
            raise DomainError(detail="PERCENT_RANGE", title="Invalid coupon")
        return
    if discount_type == DISCOUNT_FIXED_AMOUNT:
        if amount_off_cents is None:
            raise DomainError(detail="AMOUNT_REQUIRED", title="Invalid coupon")
        if amount_off_cents <= 0:
            raise DomainError(detail="AMOUNT_POSITIVE", title="Invalid coupon")
        return
    raise DomainError(detail="DISCOUNT_TYPE_INVALID", title="Invalid coupon")


def check_coupon_applicability(coupon: GroupMembershipCoupon, now: datetime) -> str | None:
    """Return a rejection code, or ``None`` when the coupon can be applied at ``now``."""
    if not coupon.is_active:
        return COUPON_INACTIVE
    starts_at = _aware(coupon.starts_at)
    if starts_at is not None and starts_at > now:
        return COUPON_NOT_ACTIVE
    expires_at = _aware(coupon.expires_at)
    if expires_at is not None and expires_at < now:
        return COUPON_EXPIRED
    if coupon.max_redemptions is not None and coupon.redemption_count >= coupon.max_redemptions:
        return COUPON_LIMIT_REACHED
    return None


async def get_coupon(session: AsyncSession, coupon_id: str) -> GroupMembershipCoupon | None:
    return await session.get(GroupMembershipCoupon, coupon_id)


async def find_active_coupon_by_code(
    session: AsyncSession, group_id: str, code: str
) -> GroupMembershipCoupon | None:
    stmt = sa.select(GroupMembershipCoupon).where(
        GroupMembershipCoupon.group_id == group_id,
        GroupMembershipCoupon.code == normalize_coupon_code(code),
        GroupMembershipCoupon.is_active.is_(True),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_coupon_by_promotion_code(
    session: AsyncSession, promotion_code_id: str
) -> GroupMembershipCoupon | None:
    stmt = (
        sa.select(GroupMembershipCoupon)
        .where(GroupMembershipCoupon.stripe_promotion_code_id == promotion_code_id)
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def redeem_coupon(session: AsyncSession, coupon_id: str, *, event_id: str) -> bool:
    """Increment the redemption counter once.

    This does not deduplicate by itself: callers must only reach it through a
    ledger write that reported a freshly inserted row.
    """
    stmt = (
        sa.update(GroupMembershipCoupon)
        .where(GroupMembershipCoupon.coupon_id == coupon_id)
        .values(redemption_count=GroupMembershipCoupon.redemption_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    updated = (result.rowcount or 0) > 0
    if updated:
        logger.info(
            "coupon_redeemed",
            extra={"extra": {"coupon_id": coupon_id, "stripe_event_id": event_id}},
        )
    else:
        logger.warning(
            "coupon_redeem_missing",
            extra={"extra": {"coupon_id": coupon_id, "stripe_event_id": event_id}},
        )
    return updated


async def sync_coupon_with_stripe(
    session: AsyncSession, coupon: GroupMembershipCoupon, stripe_client: Any
) -> CouponSyncResult:
    """Make sure the coupon has a Stripe coupon and a matching promotion code."""
    validate_coupon_values(
        coupon.discount_type,
        percentage_off=coupon.percentage_off,
        amount_off_cents=coupon.amount_off_cents,
    )
    if coupon.stripe_coupon_id and coupon.stripe_promotion_code_id:
        await set_promotion_code_active(coupon, stripe_client, active=coupon.is_active)
        return CouponSyncResult(
            coupon_id=coupon.stripe_coupon_id,
            promotion_code_id=coupon.stripe_promotion_code_id,
            skipped=True,
        )

    stripe_metadata = {"source": "wns", "code": coupon.code, "couponId": coupon.coupon_id}
    stripe_coupon_id = coupon.stripe_coupon_id
    if not stripe_coupon_id:
        coupon_kwargs: dict[str, Any] = {}
        if coupon.discount_type == DISCOUNT_PERCENTAGE:
            coupon_kwargs["percent_off"] = coupon.percentage_off
        else:
            coupon_kwargs["amount_off"] = coupon.amount_off_cents
            coupon_kwargs["currency"] = coupon.currency
        created = await stripe_infra.call_stripe_client_method(
            stripe_client,
            "create_coupon",
            name=coupon.name or coupon.code,
            metadata=stripe_metadata,
            idempotency_key=make_stripe_idempotency_key(
                "coupon_create", group_id=coupon.group_id, object_id=coupon.coupon_id
            ),
            **coupon_kwargs,
        )
        stripe_coupon_id = _stripe_id(created)

    expires_at = _aware(coupon.expires_at)
    promotion = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_promotion_code",
        coupon_id=stripe_coupon_id,
        code=coupon.code,
        active=coupon.is_active,
        max_redemptions=coupon.max_redemptions,
        expires_at=int(expires_at.timestamp()) if expires_at else None,
        metadata=stripe_metadata,
        idempotency_key=make_stripe_idempotency_key(
            "promo_create",
            group_id=coupon.group_id,
            object_id=coupon.coupon_id,
            extra={"stripe_coupon_id": stripe_coupon_id},
        ),
    )
    coupon.stripe_coupon_id = stripe_coupon_id
    coupon.stripe_promotion_code_id = _stripe_id(promotion)
    await session.flush()
    logger.info(
        "coupon_synced_with_stripe",
        extra={
            "extra": {
                "coupon_id": coupon.coupon_id,
                "stripe_coupon_id": coupon.stripe_coupon_id,
                "stripe_promotion_code_id": coupon.stripe_promotion_code_id,
            }
        },
    )
    return CouponSyncResult(
        coupon_id=coupon.stripe_coupon_id,
        promotion_code_id=coupon.stripe_promotion_code_id,
        skipped=False,
    )


async def set_promotion_code_active(
    coupon: GroupMembershipCoupon, stripe_client: Any, *, active: bool
) -> None:
    if not coupon.stripe_promotion_code_id:
        return
    await stripe_infra.call_stripe_client_method(
        stripe_client,
        "update_promotion_code",
        coupon.stripe_promotion_code_id,
        active=active,
        idempotency_key=make_stripe_idempotency_key(
            "promo_update",
            object_id=coupon.stripe_promotion_code_id,
            extra={"active": active},
        ),
    )


def _stripe_id(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)
