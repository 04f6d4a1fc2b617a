"""Admin triggers for the reconciliation sweeps."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiScope
from app.schemas.reconciliation import ReconciliationRequest, ReconciliationResult
from app.security import require_scope
from app.services import guardianships as guardianship_service
from app.services import subscriptions as subscription_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.time import utcnow

router = APIRouter(
    prefix="/reconciliation",
    tags=["reconciliation"],
    dependencies=[Depends(require_scope({ApiScope.admin}))],
)


@router.post("/guardianships", response_model=ReconciliationResult, status_code=status.HTTP_202_ACCEPTED)
def reconcile_guardianships(
    payload: ReconciliationRequest | None = None,
    db: Session = Depends(get_db),
) -> ReconciliationResult:
    """Complete guardianships whose grace period elapsed as of ``as_of``."""

    as_of = (payload.as_of if payload else None) or utcnow()
    return ReconciliationResult(as_of=as_of, affected=guardianship_service.auto_complete_expired(db, as_of))


@router.post("/subscriptions", response_model=ReconciliationResult, status_code=status.HTTP_202_ACCEPTED)
def reconcile_subscriptions(
    payload: ReconciliationRequest | None = None,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> ReconciliationResult:
    """Cancel subscriptions whose charge window lapsed as of ``as_of``."""

    as_of = (payload.as_of if payload else None) or utcnow()
    return ReconciliationResult(as_of=as_of, affected=subscription_service.cancel_expired(db, as_of, gateway))
