"""Donation ledger routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.models.donation import Donation, DonationStatus
from app.schemas.donation import DonationRead
from app.security import require_scope
from app.services import donations as donation_service

router = APIRouter(prefix="/donations", tags=["donations"])


@router.get(
    "/users/{user_id}",
    response_model=list[DonationRead],
    dependencies=[Depends(require_scope({ApiScope.donor, ApiScope.support}))],
)
def user_donations(user_id: int, db: Session = Depends(get_db)) -> list[Donation]:
    """Payment history of one donor, newest first."""

    return donation_service.list_user_donations(db, user_id)


@router.get(
    "",
    response_model=list[DonationRead],
    dependencies=[Depends(require_scope({ApiScope.support}))],
)
def all_donations(
    status_filter: DonationStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[Donation]:
    return donation_service.list_all_donations(db, status=status_filter, limit=limit, offset=offset)


@router.get(
    "/aid-requests/{aid_request_id}",
    response_model=list[DonationRead],
    dependencies=[Depends(require_scope({ApiScope.donor, ApiScope.support}))],
)
def aid_request_donations(aid_request_id: int, db: Session = Depends(get_db)) -> list[Donation]:
    return donation_service.list_aid_request_donations(db, aid_request_id)
