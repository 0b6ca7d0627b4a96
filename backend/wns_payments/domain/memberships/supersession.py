"""What to do with an older subscription once a checkout attaches a newer one."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from wns_payments.domain.memberships.db_models import GroupMembership
from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.infra.stripe_idempotency import make_stripe_idempotency_key

logger = logging.getLogger(__name__)


class SupersessionPolicy(Protocol):
    async def handle(
        self,
        membership: GroupMembership,
        *,
        previous_subscription_id: str,
        new_subscription_id: str,
        event_id: str,
    ) -> None: ...


class CancelSupersededSubscription:
    """Cancel the replaced subscription at Stripe so the member is not billed twice."""

    def __init__(self, stripe_client: Any) -> None:
        self.stripe_client = stripe_client

    async def handle(
        self,
        membership: GroupMembership,
        *,
        previous_subscription_id: str,
        new_subscription_id: str,
        event_id: str,
    ) -> None:
        log_extra = {
            "membership_id": membership.membership_id,
            "previous_subscription_id": previous_subscription_id,
            "new_subscription_id": new_subscription_id,
            "stripe_event_id": event_id,
        }
        try:
            await stripe_infra.call_stripe_client_method(
                self.stripe_client,
                "cancel_subscription",
                previous_subscription_id,
                idempotency_key=make_stripe_idempotency_key(
                    "supersede_subscription",
                    object_id=previous_subscription_id,
                    extra={"replaced_by": new_subscription_id},
                ),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "membership_superseded_cancel_failed",
                extra={"extra": {**log_extra, "reason": type(exc).__name__}},
            )
            return
        logger.info("membership_superseded_subscription_canceled", extra={"extra": log_extra})


class KeepSupersededSubscription:
    """Leave the older subscription running; billing cleanup happens elsewhere."""

    async def handle(
        self,
        membership: GroupMembership,
        *,
        previous_subscription_id: str,
        new_subscription_id: str,
        event_id: str,
    ) -> None:
        logger.info(
            "membership_supersession_skipped",
            extra={
                "extra": {
                    "membership_id": membership.membership_id,
                    "previous_subscription_id": previous_subscription_id,
                    "new_subscription_id": new_subscription_id,
                    "stripe_event_id": event_id,
                }
            },
        )


def resolve_supersession_policy(app_settings, stripe_client: Any) -> SupersessionPolicy:
    if getattr(app_settings, "stripe_cancel_superseded_subscriptions", True):
        return CancelSupersededSubscription(stripe_client)
    return KeepSupersededSubscription()
