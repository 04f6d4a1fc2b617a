"""Guardianship lifecycle routes."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.guardianship import Guardianship, GuardianshipStatus
from app.schemas.guardianship import (
    GuardianshipActivate,
    GuardianshipComplete,
    GuardianshipCreate,
    GuardianshipDetail,
    GuardianshipRead,
    GuardianshipRequirePayment,
    LinkedDonationRead,
)
from app.security import require_scope
from app.services import guardianships as guardianship_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.audit import actor_from_api_key
from app.utils.errors import InvalidRequestError
from app.utils.time import ensure_utc

router = APIRouter(prefix="/guardianships", tags=["guardianships"])

_donor = require_scope({ApiScope.donor, ApiScope.support})
_staff = require_scope({ApiScope.support})


def _detail(guardianship: Guardianship) -> GuardianshipDetail:
    base = GuardianshipRead.model_validate(guardianship)
    return GuardianshipDetail(
        **base.model_dump(),
        donations=[
            LinkedDonationRead(
                donation_id=link.donation.id,
                amount=link.donation.amount,
                currency=link.donation.currency,
                status=link.donation.status,
                donation_date=link.donation.donation_date,
            )
            for link in guardianship.donations
        ],
    )


@router.post("", response_model=GuardianshipRead, status_code=status.HTTP_201_CREATED)
def create_guardianship(
    payload: GuardianshipCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> Guardianship:
    """Open a guardianship awaiting its first payment."""

    return guardianship_service.create(
        db,
        user_id=payload.user_id,
        animal_id=payload.animal_id,
        grace_days=payload.grace_days,
        actor=actor_from_api_key(api_key),
    )


@router.get("", response_model=list[GuardianshipRead])
def list_guardianships(
    user_id: int | None = Query(default=None, gt=0),
    animal_id: int | None = Query(default=None, gt=0),
    status_filter: GuardianshipStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> list[Guardianship]:
    if user_id is not None:
        return guardianship_service.list_by_user(db, user_id, status=status_filter)
    if animal_id is not None:
        return guardianship_service.list_by_animal(db, animal_id, status=status_filter)
    raise InvalidRequestError("FILTER_REQUIRED", "Provide either user_id or animal_id.")


@router.get("/requires-payment", response_model=list[GuardianshipRead])
def list_requires_payment(
    start: datetime,
    end: datetime,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_staff),
) -> list[Guardianship]:
    """Guardianships whose grace deadline falls inside the window."""

    return guardianship_service.list_requires_payment_within(db, ensure_utc(start), ensure_utc(end))


@router.get("/{guardianship_id}", response_model=GuardianshipDetail)
def get_guardianship(
    guardianship_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> GuardianshipDetail:
    return _detail(guardianship_service.get_guardianship(db, guardianship_id))


@router.post("/{guardianship_id}/activate", response_model=GuardianshipRead)
def activate_guardianship(
    guardianship_id: int,
    payload: GuardianshipActivate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_staff),
) -> Guardianship:
    return guardianship_service.activate_with_first_payment(
        db, guardianship_id, payload.donation_id, actor=actor_from_api_key(api_key)
    )


@router.post("/{guardianship_id}/require-payment", response_model=GuardianshipRead)
def require_payment(
    guardianship_id: int,
    payload: GuardianshipRequirePayment,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_staff),
) -> Guardianship:
    return guardianship_service.require_payment(
        db, guardianship_id, grace_days=payload.grace_days, actor=actor_from_api_key(api_key)
    )


@router.post("/{guardianship_id}/complete", response_model=GuardianshipRead)
def complete_guardianship(
    guardianship_id: int,
    payload: GuardianshipComplete,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    api_key: ApiKey = Depends(_donor),
) -> Guardianship:
    """Finish a guardianship, optionally canceling the subscription funding it."""

    return guardianship_service.complete(
        db,
        guardianship_id,
        cancel_subscription=payload.cancel_subscription,
        gateway=gateway,
        actor=actor_from_api_key(api_key),
    )
