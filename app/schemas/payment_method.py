"""Pydantic schemas for the payment method registry."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PaymentMethodCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class PaymentMethodUpdate(BaseModel):
    name: str = Field(min_length=1, max_length=100)


class PaymentMethodRead(BaseModel):
    id: int
    name: str

    model_config = ConfigDict(from_attributes=True)
