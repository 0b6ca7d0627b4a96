from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from wns_payments.infra import stripe_client as stripe_infra
from wns_payments.shared.circuit_breaker import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class WebhookRejected(Exception):
    """Base for webhook requests rejected before any handler runs."""

    code = "WEBHOOK_REJECTED"
    status_code = 400


class StripeNotConfiguredError(WebhookRejected):
    code = "STRIPE_NOT_CONFIGURED"
    status_code = 503


class MissingSecretError(WebhookRejected):
    code = "WEBHOOK_SECRET_MISSING"
    status_code = 500


class MissingSignatureError(WebhookRejected):
    code = "SIGNATURE_REQUIRED"
    status_code = 400


class InvalidSignatureError(WebhookRejected):
    code = "INVALID_SIGNATURE"
    status_code = 400


@dataclass(frozen=True)
class NormalizedEvent:
    id: str
    type: str
    data: dict[str, Any]


def to_plain(value: Any) -> Any:
    """Turn Stripe SDK objects into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {str(key): to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(item) for item in value]
    to_dict = getattr(value, "to_dict_recursive", None) or getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_plain(to_dict())
    return value


async def normalize_event(
    stripe_client: Any,
    payload: bytes,
    signature: str | None,
    *,
    webhook_secret: str | None,
) -> NormalizedEvent:
    """Verify a webhook delivery and return its ``{id, type, data.object}``.

    The checks run in a fixed order: client, secret, signature header, then
    the signature itself.
    """
    if not stripe_infra.is_client_configured(stripe_client):
        raise StripeNotConfiguredError()
    if not webhook_secret:
        raise MissingSecretError()
    if not signature:
        raise MissingSignatureError()

    try:
        raw_event = await stripe_infra.call_stripe_client_method(
            stripe_client, "verify_webhook", payload=payload, signature=signature
        )
    except CircuitBreakerOpenError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.warning("stripe_webhook_invalid_signature", extra={"extra": {"reason": type(exc).__name__}})
        raise InvalidSignatureError() from exc

    event = to_plain(raw_event)
    if not isinstance(event, dict):
        raise InvalidSignatureError()
    event_id = event.get("id")
    event_type = event.get("type")
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    obj = data.get("object") if isinstance(data.get("object"), dict) else {}
    if not isinstance(event_id, str) or not event_id:
        raise InvalidSignatureError()
    return NormalizedEvent(id=event_id, type=str(event_type or ""), data=obj)
