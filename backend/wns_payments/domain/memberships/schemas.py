import math
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tier_id: str | None = Field(None, alias="tierId")
    success_url: str | None = Field(None, alias="successUrl")
    cancel_url: str | None = Field(None, alias="cancelUrl")
    quantity: int = 1
    coupon_code: str | None = Field(None, alias="couponCode")

    @field_validator("tier_id", "success_url", "cancel_url", "coupon_code", mode="before")
    @classmethod
    def blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        if value is not None and not isinstance(value, str):
            return None
        return value

    @field_validator("quantity", mode="before")
    @classmethod
    def coerce_quantity(cls, value: object) -> int:
        """Truncate to an integer; anything unusable becomes 1. The upper bound is applied by the route."""
        if isinstance(value, bool):
            return 1
        try:
            numeric = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return 1
        if not math.isfinite(numeric):
            return 1
        truncated = math.trunc(numeric)
        return truncated if truncated > 0 else 1


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    url: str | None = None
    mode: Literal["payment", "subscription"]
