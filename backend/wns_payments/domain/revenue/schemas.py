from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CurrencySummaryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    currency: str
    gross_cents: int = Field(alias="grossCents")
    net_cents: int = Field(alias="netCents")
    fee_cents: int = Field(alias="feeCents")
    count: int


class RevenueEntryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    entry_id: str = Field(alias="id")
    type: str
    membership_id: str | None = Field(None, alias="membershipId")
    user_id: str | None = Field(None, alias="userId")
    amount_gross_cents: int = Field(alias="amountGrossCents")
    amount_net_cents: int = Field(alias="amountNetCents")
    fee_cents: int = Field(alias="feeCents")
    currency: str
    occurred_at: datetime = Field(alias="occurredAt")
    stripe_event_id: str = Field(alias="stripeEventId")
    stripe_object_id: str = Field(alias="stripeObjectId")
    stripe_balance_transaction: str | None = Field(None, alias="stripeBalanceTransaction")
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")


class EarningsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    group_id: str = Field(alias="groupId")
    summary: list[CurrencySummaryResponse]
    entries: list[RevenueEntryResponse]
