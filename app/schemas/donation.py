"""Pydantic schemas for the donation ledger."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from app.models.donation import DonationStatus, DonationTarget


class DonationRead(BaseModel):
    id: int
    user_id: int | None = None
    payment_method_id: int
    amount: Decimal
    currency: str
    status: DonationStatus
    transaction_id: str | None = None
    target_entity: DonationTarget | None = None
    target_entity_id: int | None = None
    purpose: str | None = None
    recurring: bool
    anonymous: bool
    donation_date: datetime

    model_config = ConfigDict(from_attributes=True)
