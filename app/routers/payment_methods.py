"""Payment method registry routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.payment_method import PaymentMethod
from app.schemas.payment_method import PaymentMethodCreate, PaymentMethodRead, PaymentMethodUpdate
from app.security import require_api_key, require_scope
from app.services import payment_methods as payment_method_service
from app.utils.audit import actor_from_api_key

router = APIRouter(prefix="/payment-methods", tags=["payment-methods"])

_admin = require_scope({ApiScope.admin})


@router.get("", response_model=list[PaymentMethodRead], dependencies=[Depends(require_api_key)])
def list_payment_methods(db: Session = Depends(get_db)) -> list[PaymentMethod]:
    return payment_method_service.list_payment_methods(db)


@router.get("/{payment_method_id}", response_model=PaymentMethodRead, dependencies=[Depends(require_api_key)])
def get_payment_method(payment_method_id: int, db: Session = Depends(get_db)) -> PaymentMethod:
    return payment_method_service.get_payment_method(db, payment_method_id)


@router.post("", response_model=PaymentMethodRead, status_code=status.HTTP_201_CREATED)
def create_payment_method(
    payload: PaymentMethodCreate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_admin),
) -> PaymentMethod:
    return payment_method_service.create_payment_method(db, payload.name, actor=actor_from_api_key(api_key))


@router.put("/{payment_method_id}", response_model=PaymentMethodRead)
def rename_payment_method(
    payment_method_id: int,
    payload: PaymentMethodUpdate,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_admin),
) -> PaymentMethod:
    return payment_method_service.rename_payment_method(
        db, payment_method_id, payload.name, actor=actor_from_api_key(api_key)
    )


@router.delete("/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment_method(
    payment_method_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_admin),
) -> Response:
    payment_method_service.delete_payment_method(db, payment_method_id, actor=actor_from_api_key(api_key))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
