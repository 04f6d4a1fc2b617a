"""Pydantic schemas for reconciliation triggers."""
from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, field_validator


class ReconciliationRequest(BaseModel):
    """Optional cut-off; defaults to the current time when omitted."""

    as_of: datetime | None = None

    @field_validator("as_of")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ReconciliationResult(BaseModel):
    as_of: datetime
    affected: int
