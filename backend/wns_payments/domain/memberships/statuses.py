ACTIVE = "active"
PAST_DUE = "past_due"
CANCELED = "canceled"

MEMBERSHIP_STATUSES = {ACTIVE, PAST_DUE, CANCELED}

LEGACY_ACTIVE = "active"
LEGACY_INACTIVE = "inactive"

BILLING_MONTH = "month"
BILLING_YEAR = "year"
BILLING_ONCE = "once"

BILLING_PERIODS = {BILLING_MONTH, BILLING_YEAR, BILLING_ONCE}

_ACTIVE_SUBSCRIPTION_STATES = {"active", "trialing"}
_CANCELED_SUBSCRIPTION_STATES = {"canceled", "incomplete_expired"}


def map_subscription_status(value: str | None) -> str:
    """Collapse a Stripe subscription status onto the membership status set."""
    normalized = (value or "").strip().lower()
    if normalized in _ACTIVE_SUBSCRIPTION_STATES:
        return ACTIVE
    if normalized in _CANCELED_SUBSCRIPTION_STATES:
        return CANCELED
    return PAST_DUE


def legacy_status_for(membership_status: str) -> str:
    return LEGACY_ACTIVE if membership_status == ACTIVE else LEGACY_INACTIVE


def normalize_billing_period(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in BILLING_PERIODS:
        return None
    return normalized
