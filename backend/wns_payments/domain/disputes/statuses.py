NEEDS_RESPONSE = "needs_response"
WARNING_NEEDS_RESPONSE = "warning_needs_response"
WARNING_UNDER_REVIEW = "warning_under_review"
UNDER_REVIEW = "under_review"
WARNING_CLOSED = "warning_closed"
CHARGE_REFUNDED = "charge_refunded"
WON = "won"
LOST = "lost"

DISPUTE_STATUSES = frozenset(
    {
        NEEDS_RESPONSE,
        WARNING_NEEDS_RESPONSE,
        WARNING_UNDER_REVIEW,
        UNDER_REVIEW,
        WARNING_CLOSED,
        CHARGE_REFUNDED,
        WON,
        LOST,
    }
)


def map_dispute_status(value: str | None) -> str:
    """Unknown provider statuses are treated as still under review."""
    normalized = (value or "").strip().lower()
    if normalized in DISPUTE_STATUSES:
        return normalized
    return UNDER_REVIEW
