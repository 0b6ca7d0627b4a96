"""Tolerant accessors for Stripe objects decoded from webhook payloads."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, Mapping):
        return source.get(key, default)
    return getattr(source, key, default)


def get_path(source: object, *keys: str | int, default: Any | None = None) -> Any:
    current: Any = source
    for key in keys:
        if current is None:
            return default
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or len(current) <= key:
                return default
            current = current[key]
        else:
            current = safe_get(current, key)
    return default if current is None else current


def expandable_id(value: object) -> str | None:
    """Return the id of a Stripe field that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    nested = safe_get(value, "id")
    return str(nested) if nested else None


def metadata_of(source: object) -> dict[str, Any]:
    metadata = safe_get(source, "metadata")
    if isinstance(metadata, Mapping):
        return dict(metadata)
    return {}


def read_metadata_string(metadata: Mapping[str, Any] | None, *keys: str) -> str | None:
    if not metadata:
        return None
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str):
            trimmed = value.strip()
            if trimmed:
                return trimmed
    return None


def from_unix(value: object) -> datetime | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return None


def as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def normalize_currency(value: object, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip().upper()
    return default.upper()


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)
