PENDING = "pending"
IN_TRANSIT = "in_transit"
PAID = "paid"
FAILED = "failed"
CANCELED = "canceled"

PAYOUT_STATUSES = {PENDING, IN_TRANSIT, PAID, FAILED, CANCELED}

FREQUENCY_DAILY = "daily"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_MONTHLY = "monthly"
FREQUENCY_MANUAL = "manual"

SCHEDULE_ACTIVE = "active"
SCHEDULE_PAUSED = "paused"

DEFAULT_FAILURE_REASON = "payout_failed"


def map_payout_status(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {PAID, IN_TRANSIT, CANCELED, FAILED}:
        return normalized
    return PENDING
