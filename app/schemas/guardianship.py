"""Pydantic schemas for guardianships."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from app.models.donation import DonationStatus
from app.models.guardianship import GuardianshipStatus


class GuardianshipCreate(BaseModel):
    """Payload schema to open a guardianship."""

    user_id: int = Field(gt=0)
    animal_id: int = Field(gt=0)
    grace_days: int | None = Field(default=None, ge=0)


class GuardianshipActivate(BaseModel):
    donation_id: int = Field(gt=0)


class GuardianshipRequirePayment(BaseModel):
    grace_days: int | None = Field(default=None, ge=0)


class GuardianshipComplete(BaseModel):
    cancel_subscription: bool = False


class LinkedDonationRead(BaseModel):
    donation_id: int
    amount: Decimal
    currency: str
    status: DonationStatus
    donation_date: datetime


class GuardianshipRead(BaseModel):
    """Response schema for guardianships."""

    id: int
    user_id: int
    animal_id: int
    start_date: datetime
    status: GuardianshipStatus
    grace_until: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GuardianshipDetail(GuardianshipRead):
    donations: list[LinkedDonationRead] = Field(default_factory=list)
