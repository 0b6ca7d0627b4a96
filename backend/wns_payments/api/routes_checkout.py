from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from wns_payments.api.identity import require_current_user_id
from wns_payments.domain.coupons import service as coupon_service
from wns_payments.domain.coupons.db_models import DISCOUNT_FIXED_AMOUNT, GroupMembershipCoupon
from wns_payments.domain.errors import DomainError
from wns_payments.domain.groups.db_models import Group, User
from wns_payments.domain.memberships import statuses
from wns_payments.domain.memberships import tiers as tier_service
from wns_payments.domain.memberships.db_models import GroupMembershipTier
from wns_payments.domain.memberships.schemas import CheckoutRequest, CheckoutResponse
from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.infra.db import get_db_session
from wns_payments.infra.metrics import metrics
from wns_payments.infra.stripe_idempotency import checkout_idempotency_key
from wns_payments.settings import settings
from wns_payments.shared.circuit_breaker import CircuitBreakerOpenError
from wns_payments.shared.stripe_payloads import safe_get, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)

CHECKOUT_CONTEXT = "membership-tier"


def _stripe_client(request: Request):
    if getattr(request.app.state, "stripe_client", None):
        return request.app.state.stripe_client
    services = getattr(request.app.state, "services", None)
    if services and getattr(services, "stripe_client", None):
        return services.stripe_client
    return None


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


def resolve_redirect_url(base_url: str, slug: str | None, outcome: str, override: str | None) -> str:
    if override:
        return override
    return f"{base_url.rstrip('/')}/groups/{slug or 'group'}?checkout={outcome}"


async def _read_body(request: Request) -> CheckoutRequest:
    try:
        raw: Any = await request.json()
    except ValueError:
        raw = {}
    if not isinstance(raw, dict):
        raw = {}
    try:
        return CheckoutRequest.model_validate(raw)
    except ValidationError as exc:
        raise DomainError(
            detail="INVALID_REQUEST",
            title="Invalid checkout request",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()],
        ) from exc


async def _resolve_coupon(
    session: AsyncSession, tier: GroupMembershipTier, coupon_code: str, stripe_client: Any
) -> tuple[GroupMembershipCoupon, str]:
    coupon = await coupon_service.find_active_coupon_by_code(session, tier.group_id, coupon_code)
    if coupon is None:
        raise DomainError(detail="COUPON_NOT_FOUND", title="Coupon not found", status_code=404)

    rejection = coupon_service.check_coupon_applicability(coupon, utcnow())
    if rejection:
        raise DomainError(detail=rejection, title="Coupon not applicable", status_code=409)

    if (
        coupon.discount_type == DISCOUNT_FIXED_AMOUNT
        and coupon.currency
        and coupon.currency.upper() != tier.currency.upper()
    ):
        raise DomainError(detail="COUPON_CURRENCY_MISMATCH", title="Coupon not applicable", status_code=422)

    sync = await coupon_service.sync_coupon_with_stripe(session, coupon, stripe_client)
    promotion_code_id = coupon.stripe_promotion_code_id or sync.promotion_code_id
    if not promotion_code_id:
        raise DomainError(detail="COUPON_NOT_READY", title="Coupon not ready", status_code=422)
    return coupon, promotion_code_id


async def _create_checkout(
    http_request: Request,
    session: AsyncSession,
    *,
    user_id: str,
    stripe_client: Any,
    body: CheckoutRequest,
) -> CheckoutResponse:
    app_settings = _app_settings(http_request)
    tier = await tier_service.get_tier(session, body.tier_id)
    if tier is None:
        raise DomainError(detail="TIER_NOT_FOUND", title="Tier not found", status_code=404)

    coupon: GroupMembershipCoupon | None = None
    promotion_code_id: str | None = None
    if body.coupon_code:
        coupon, promotion_code_id = await _resolve_coupon(
            session, tier, coupon_service.normalize_coupon_code(body.coupon_code), stripe_client
        )

    sync = await tier_service.sync_tier_with_stripe(session, tier, stripe_client)
    price_id = tier.stripe_price_id or sync.price_id
    if not price_id:
        raise DomainError(detail="PRICE_NOT_AVAILABLE", title="Price not available", status_code=422)

    group = await session.get(Group, tier.group_id)
    user = await session.get(User, user_id)
    mode = "payment" if statuses.normalize_billing_period(tier.billing_period) == statuses.BILLING_ONCE else "subscription"
    quantity = min(body.quantity, app_settings.checkout_max_quantity)
    slug = group.slug if group is not None else None

    metadata = {
        "context": CHECKOUT_CONTEXT,
        "groupId": tier.group_id,
        "tierId": tier.tier_id,
        "userId": user_id,
    }
    if coupon is not None:
        metadata["couponId"] = coupon.coupon_id
        metadata["couponCode"] = coupon.code

    idempotency_key = http_request.headers.get("Idempotency-Key") or checkout_idempotency_key(
        user_id, tier.tier_id, quantity
    )
    checkout_session = await stripe_infra.call_stripe_client_method(
        stripe_client,
        "create_membership_checkout_session",
        mode=mode,
        price_id=price_id,
        quantity=quantity,
        success_url=resolve_redirect_url(app_settings.app_url, slug, "success", body.success_url),
        cancel_url=resolve_redirect_url(app_settings.app_url, slug, "cancelled", body.cancel_url),
        client_reference_id=f"{user_id}:{tier.tier_id}",
        metadata=metadata,
        customer_email=user.email if user is not None else None,
        promotion_code_id=promotion_code_id,
        idempotency_key=idempotency_key,
    )
    await session.commit()

    logger.info(
        "membership_checkout_created",
        extra={
            "extra": {
                "tier_id": tier.tier_id,
                "group_id": tier.group_id,
                "mode": mode,
                "coupon_id": coupon.coupon_id if coupon is not None else None,
            }
        },
    )
    return CheckoutResponse(
        session_id=str(safe_get(checkout_session, "id")),
        url=safe_get(checkout_session, "url"),
        mode=mode,
    )


@router.post("/v1/payments/stripe/checkout", response_model=CheckoutResponse)
async def create_membership_checkout(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> CheckoutResponse:
    user_id = require_current_user_id(http_request)
    stripe_client = _stripe_client(http_request)
    if not stripe_infra.is_client_configured(stripe_client):
        raise DomainError(detail="STRIPE_NOT_CONFIGURED", title="Stripe not configured", status_code=503)

    body = await _read_body(http_request)
    if not body.tier_id:
        raise DomainError(detail="TIER_ID_REQUIRED", title="Invalid checkout request", status_code=400)

    try:
        return await _create_checkout(
            http_request, session, user_id=user_id, stripe_client=stripe_client, body=body
        )
    except (DomainError, HTTPException):
        await session.rollback()
        raise
    except CircuitBreakerOpenError as exc:
        await session.rollback()
        metrics.record_stripe_circuit_open()
        logger.warning("stripe_checkout_circuit_open", extra={"extra": {"reason": type(exc).__name__}})
        raise DomainError(
            detail="STRIPE_UNAVAILABLE",
            title="Stripe temporarily unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        ) from exc
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.exception(
            "stripe_checkout_creation_failed",
            extra={"extra": {"tier_id": body.tier_id, "reason": type(exc).__name__}},
        )
        raise DomainError(
            detail="CHECKOUT_ERROR",
            title="Checkout failed",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        ) from exc
