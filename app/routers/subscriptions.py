"""Recurring payment subscription routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.api_key import ApiKey, ApiScope
from app.models.payment_subscription import PaymentSubscription, SubscriptionScope
from app.schemas.subscription import ExpectedPaymentRead, SubscriptionCreate, SubscriptionRead
from app.security import require_scope
from app.services import guardianships as guardianship_service
from app.services import subscriptions as subscription_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.audit import actor_from_api_key
from app.utils.errors import InvalidRequestError

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])

_donor = require_scope({ApiScope.donor, ApiScope.support})


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    api_key: ApiKey = Depends(_donor),
) -> PaymentSubscription:
    """Register a recurring pledge with the payment provider."""

    actor = actor_from_api_key(api_key)
    if payload.scope == SubscriptionScope.GLOBAL:
        return subscription_service.create_global(
            db, gateway, user_id=payload.user_id, amount=payload.amount, currency=payload.currency, actor=actor
        )
    if payload.scope_id is None:
        raise InvalidRequestError("SCOPE_ID_REQUIRED", "scope_id is required for this scope.")
    if payload.scope == SubscriptionScope.AID_REQUEST:
        return subscription_service.create_for_aid_request(
            db,
            gateway,
            user_id=payload.user_id,
            aid_request_id=payload.scope_id,
            amount=payload.amount,
            currency=payload.currency,
            actor=actor,
        )
    if payload.user_id is None:
        raise InvalidRequestError("USER_ID_REQUIRED", "user_id is required for guardianship subscriptions.")
    return subscription_service.create_for_guardianship(
        db,
        gateway,
        user_id=payload.user_id,
        guardianship_id=payload.scope_id,
        amount=payload.amount,
        currency=payload.currency,
        actor=actor,
    )


@router.get("/users/{user_id}", response_model=list[SubscriptionRead])
def list_user_subscriptions(
    user_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> list[PaymentSubscription]:
    return subscription_service.list_user_subscriptions(db, user_id)


@router.get("/users/{user_id}/expected-payments", response_model=list[ExpectedPaymentRead])
def expected_payments(
    user_id: int,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> list[ExpectedPaymentRead]:
    """Next charge date of each active subscription the user owns."""

    return [
        ExpectedPaymentRead(
            subscription_id=subscription.id,
            provider_subscription_id=subscription.provider_subscription_id,
            scope_type=subscription.scope_type,
            scope_id=subscription.scope_id,
            amount=subscription.amount,
            currency=subscription.currency,
            next_charge_at=next_charge_at,
        )
        for subscription, next_charge_at in subscription_service.get_my_expected_payments(db, user_id)
    ]


@router.post("/{provider_subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    provider_subscription_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    api_key: ApiKey = Depends(_donor),
) -> PaymentSubscription:
    """Cancel a subscription; a guardianship it funds is completed as well."""

    return guardianship_service.cancel_by_provider_subscription(
        db, gateway, provider_subscription_id, actor=actor_from_api_key(api_key)
    )


@router.post("/{provider_subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    provider_subscription_id: str,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> PaymentSubscription:
    return subscription_service.pause(db, provider_subscription_id, actor=actor_from_api_key(api_key))


@router.post("/{provider_subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    provider_subscription_id: str,
    db: Session = Depends(get_db),
    api_key: ApiKey = Depends(_donor),
) -> PaymentSubscription:
    return subscription_service.resume(db, provider_subscription_id, actor=actor_from_api_key(api_key))
