"""Pydantic schemas for recurring payment subscriptions."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment_subscription import SubscriptionScope, SubscriptionStatus


class SubscriptionCreate(BaseModel):
    """Payload schema to register a recurring pledge."""

    scope: SubscriptionScope
    scope_id: int | None = Field(default=None, gt=0)
    user_id: int | None = Field(default=None, gt=0)
    amount: Decimal = Field(gt=Decimal("0"))
    currency: str | None = Field(default=None, pattern=r"^[A-Za-z]{3}$")

    @field_validator("currency")
    @classmethod
    def _normalise_currency(cls, value: str | None) -> str | None:
        return value.upper() if value else value


class SubscriptionRead(BaseModel):
    """Response schema for subscriptions."""

    id: int
    user_id: int | None = None
    payment_method_id: int
    scope_type: SubscriptionScope
    scope_id: int | None = None
    amount: Decimal
    currency: str
    provider: str
    provider_subscription_id: str
    status: SubscriptionStatus
    next_charge_at: datetime | None = None
    last_charge_at: datetime | None = None
    canceled_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExpectedPaymentRead(BaseModel):
    subscription_id: int
    provider_subscription_id: str
    scope_type: SubscriptionScope
    scope_id: int | None = None
    amount: Decimal
    currency: str
    next_charge_at: datetime | None = None
