from __future__ import annotations

import hashlib
import json
from typing import Any


def _stable_extra_value(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_stripe_idempotency_key(
    purpose: str,
    *,
    group_id: str | None = None,
    user_id: str | None = None,
    object_id: str | None = None,
    extra: dict | None = None,
) -> str:
    """Build a deterministic idempotency key for a Stripe mutation.

    Identical inputs yield identical keys, so a retried webhook or a retried
    sync call is collapsed by Stripe into the original request.

    Format: ``<prefix8>-<sha256hex32>``. The prefix is the first 8 characters
    of *purpose* with underscores replaced by hyphens, which keeps keys
    readable in the Stripe dashboard.
    """
    parts: list[str] = [purpose]
    if group_id is not None:
        parts.append(f"g:{group_id}")
    if user_id is not None:
        parts.append(f"u:{user_id}")
    if object_id is not None:
        parts.append(f"o:{object_id}")
    if extra:
        for k in sorted(extra.keys()):
            parts.append(f"x:{k}:{_stable_extra_value(extra[k])}")

    raw = "|".join(parts)
    digest = hashlib.sha256(raw.encode()).hexdigest()[:32]
    prefix = purpose[:8].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"


def checkout_idempotency_key(user_id: str, tier_id: str, quantity: int) -> str:
    """Fallback key for checkout creation when the caller sends no ``Idempotency-Key``."""
    return hashlib.sha256(f"{user_id}:{tier_id}:{quantity}".encode()).hexdigest()
