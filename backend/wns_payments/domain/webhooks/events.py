"""Closed set of Stripe event types the reconciliation pipeline understands.

Each type decodes into its own frozen dataclass so handlers receive a value
whose class names the event. Types outside :class:`StripeEventType` are
acknowledged and ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Mapping


class StripeEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHARGE_REFUNDED = "charge.refunded"
    DISPUTE_CREATED = "charge.dispute.created"
    DISPUTE_UPDATED = "charge.dispute.updated"
    DISPUTE_CLOSED = "charge.dispute.closed"
    DISPUTE_FUNDS_REINSTATED = "charge.dispute.funds_reinstated"
    PAYOUT_CREATED = "payout.created"
    PAYOUT_UPDATED = "payout.updated"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"
    PAYOUT_CANCELED = "payout.canceled"

    @classmethod
    def parse(cls, value: str | None) -> StripeEventType | None:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class StripeEvent:
    event_id: str
    obj: Mapping[str, Any]

    event_type: ClassVar[StripeEventType]


@dataclass(frozen=True)
class CheckoutSessionCompleted(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.CHECKOUT_SESSION_COMPLETED


@dataclass(frozen=True)
class SubscriptionUpdated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.SUBSCRIPTION_UPDATED


@dataclass(frozen=True)
class SubscriptionDeleted(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.SUBSCRIPTION_DELETED


@dataclass(frozen=True)
class InvoicePaymentSucceeded(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.INVOICE_PAYMENT_SUCCEEDED


@dataclass(frozen=True)
class InvoicePaymentFailed(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.INVOICE_PAYMENT_FAILED


@dataclass(frozen=True)
class ChargeRefunded(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.CHARGE_REFUNDED


@dataclass(frozen=True)
class DisputeCreated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.DISPUTE_CREATED


@dataclass(frozen=True)
class DisputeUpdated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.DISPUTE_UPDATED


@dataclass(frozen=True)
class DisputeClosed(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.DISPUTE_CLOSED


@dataclass(frozen=True)
class DisputeFundsReinstated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.DISPUTE_FUNDS_REINSTATED


@dataclass(frozen=True)
class PayoutCreated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.PAYOUT_CREATED


@dataclass(frozen=True)
class PayoutUpdated(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.PAYOUT_UPDATED


@dataclass(frozen=True)
class PayoutPaid(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.PAYOUT_PAID


@dataclass(frozen=True)
class PayoutFailed(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.PAYOUT_FAILED


@dataclass(frozen=True)
class PayoutCanceled(StripeEvent):
    event_type: ClassVar[StripeEventType] = StripeEventType.PAYOUT_CANCELED


EVENT_VARIANTS: Mapping[StripeEventType, type[StripeEvent]] = MappingProxyType(
    {
        variant.event_type: variant
        for variant in (
            CheckoutSessionCompleted,
            SubscriptionUpdated,
            SubscriptionDeleted,
            InvoicePaymentSucceeded,
            InvoicePaymentFailed,
            ChargeRefunded,
            DisputeCreated,
            DisputeUpdated,
            DisputeClosed,
            DisputeFundsReinstated,
            PayoutCreated,
            PayoutUpdated,
            PayoutPaid,
            PayoutFailed,
            PayoutCanceled,
        )
    }
)

if set(EVENT_VARIANTS) != set(StripeEventType):
    raise RuntimeError("every StripeEventType needs an event variant")


def decode_event(event_id: str, event_type: str | None, obj: Mapping[str, Any]) -> StripeEvent | None:
    """Return the typed variant, or ``None`` for an event type we do not handle."""
    parsed = StripeEventType.parse(event_type)
    if parsed is None:
        return None
    return EVENT_VARIANTS[parsed](event_id=event_id, obj=obj)
