"""Recurring payment subscription services."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models import (
    Guardianship,
    GuardianshipStatus,
    PaymentSubscription,
    SubscriptionScope,
    SubscriptionStatus,
)
from app.services.payment_gateway import PaymentGateway
from app.services.payment_methods import require_payment_method_id
from app.utils.audit import log_audit
from app.utils.errors import (
    ConflictError,
    ExternalProviderError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def billing_period() -> timedelta:
    return timedelta(days=get_settings().SUBSCRIPTION_BILLING_PERIOD_DAYS)


def charge_tolerance() -> timedelta:
    return timedelta(days=get_settings().SUBSCRIPTION_CHARGE_TOLERANCE_DAYS)


def _validate_amount(amount: Decimal) -> Decimal:
    value = Decimal(str(amount))
    if value <= Decimal("0"):
        raise InvalidRequestError("INVALID_AMOUNT", "Amount must be greater than zero.", {"amount": str(amount)})
    return value.quantize(Decimal("0.01"))


def find_by_provider_subscription_id(db: Session, provider_subscription_id: str) -> PaymentSubscription | None:
    stmt = select(PaymentSubscription).where(
        PaymentSubscription.provider_subscription_id == provider_subscription_id
    )
    return db.scalars(stmt).first()


def _get_locked(db: Session, provider_subscription_id: str) -> PaymentSubscription:
    stmt = (
        select(PaymentSubscription)
        .where(PaymentSubscription.provider_subscription_id == provider_subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    subscription = db.scalars(stmt).first()
    if subscription is None:
        raise NotFoundError(
            "SUBSCRIPTION_NOT_FOUND",
            "Subscription not found.",
            {"provider_subscription_id": provider_subscription_id},
        )
    return subscription


LIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)


def _find_for_scope(
    db: Session,
    *,
    user_id: int | None,
    scope: SubscriptionScope,
    scope_id: int | None,
    statuses: tuple[SubscriptionStatus, ...] = LIVE_STATUSES,
    exclude_id: int | None = None,
) -> PaymentSubscription | None:
    """First subscription of a (user, scope, scope_id) target in one of ``statuses``."""

    stmt = select(PaymentSubscription).where(
        PaymentSubscription.user_id == user_id,
        PaymentSubscription.scope_type == scope,
        PaymentSubscription.status.in_(statuses),
    )
    if exclude_id is not None:
        stmt = stmt.where(PaymentSubscription.id != exclude_id)
    if scope_id is None:
        stmt = stmt.where(PaymentSubscription.scope_id.is_(None))
    else:
        stmt = stmt.where(PaymentSubscription.scope_id == scope_id)
    return db.scalars(stmt.order_by(PaymentSubscription.id)).first()


def _create(
    db: Session,
    gateway: PaymentGateway,
    *,
    user_id: int | None,
    scope: SubscriptionScope,
    scope_id: int | None,
    amount: Decimal,
    currency: str | None,
    now: datetime | None,
    actor: str,
) -> PaymentSubscription:
    settings = get_settings()
    amount = _validate_amount(amount)
    currency = (currency or settings.DEFAULT_CURRENCY).upper()
    now = now or utcnow()
    payment_method_id = require_payment_method_id(db, gateway.provider_name)

    # Anonymous pledges have no owner to deduplicate on; a paused pledge still counts
    if user_id is not None:
        existing = _find_for_scope(db, user_id=user_id, scope=scope, scope_id=scope_id)
        if existing is not None:
            raise ConflictError(
                "SUBSCRIPTION_ALREADY_ACTIVE",
                "An active subscription already exists for this target.",
                {
                    "scope": scope.value,
                    "scope_id": scope_id,
                    "subscription_id": existing.id,
                    "status": existing.status.value,
                },
            )

    provider_subscription_id = gateway.create_recurring_charge(
        user_id=user_id,
        scope=scope,
        scope_id=scope_id,
        amount=amount,
        currency=currency,
    )

    subscription = PaymentSubscription(
        user_id=user_id,
        payment_method_id=payment_method_id,
        scope_type=scope,
        scope_id=scope_id,
        amount=amount,
        currency=currency,
        provider=gateway.provider_name,
        provider_subscription_id=provider_subscription_id,
        status=SubscriptionStatus.ACTIVE,
        next_charge_at=now + billing_period(),
    )
    try:
        with db.begin_nested():
            db.add(subscription)
    except IntegrityError as exc:
        logger.warning(
            "Subscription persist failed; canceling provider charge",
            extra={"scope": scope.value, "scope_id": scope_id, "user_id": user_id},
        )
        try:
            gateway.cancel_recurring_charge(provider_subscription_id)
        except ExternalProviderError:
            logger.error(
                "Compensating provider cancel failed",
                exc_info=True,
                extra={"scope": scope.value, "scope_id": scope_id},
            )
        raise ConflictError(
            "SUBSCRIPTION_ALREADY_ACTIVE",
            "An active subscription already exists for this target.",
            {"scope": scope.value, "scope_id": scope_id},
        ) from exc

    log_audit(
        db,
        actor=actor,
        action="SUBSCRIPTION_CREATED",
        entity="PaymentSubscription",
        entity_id=subscription.id,
        data={
            "provider_subscription_id": provider_subscription_id,
            "scope": scope.value,
            "scope_id": scope_id,
            "amount": str(amount),
            "currency": currency,
        },
    )
    db.commit()
    db.refresh(subscription)
    logger.info(
        "Subscription created",
        extra={"subscription_id": subscription.id, "scope": scope.value, "scope_id": scope_id},
    )
    return subscription


def create_for_guardianship(
    db: Session,
    gateway: PaymentGateway,
    *,
    user_id: int,
    guardianship_id: int,
    amount: Decimal,
    currency: str | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> PaymentSubscription:
    guardianship = db.get(Guardianship, guardianship_id)
    if guardianship is None:
        raise NotFoundError("GUARDIANSHIP_NOT_FOUND", "Guardianship not found.")
    if guardianship.status == GuardianshipStatus.COMPLETED:
        raise InvalidStateError(
            "GUARDIANSHIP_COMPLETED",
            "Cannot subscribe to a completed guardianship.",
            {"guardianship_id": guardianship_id},
        )
    return _create(
        db,
        gateway,
        user_id=user_id,
        scope=SubscriptionScope.GUARDIANSHIP,
        scope_id=guardianship_id,
        amount=amount,
        currency=currency,
        now=now,
        actor=actor,
    )


def create_global(
    db: Session,
    gateway: PaymentGateway,
    *,
    user_id: int | None,
    amount: Decimal,
    currency: str | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> PaymentSubscription:
    return _create(
        db,
        gateway,
        user_id=user_id,
        scope=SubscriptionScope.GLOBAL,
        scope_id=None,
        amount=amount,
        currency=currency,
        now=now,
        actor=actor,
    )


def create_for_aid_request(
    db: Session,
    gateway: PaymentGateway,
    *,
    user_id: int | None,
    aid_request_id: int,
    amount: Decimal,
    currency: str | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> PaymentSubscription:
    return _create(
        db,
        gateway,
        user_id=user_id,
        scope=SubscriptionScope.AID_REQUEST,
        scope_id=aid_request_id,
        amount=amount,
        currency=currency,
        now=now,
        actor=actor,
    )


def cancel(
    db: Session,
    gateway: PaymentGateway,
    provider_subscription_id: str,
    *,
    now: datetime | None = None,
    actor: str = "system",
) -> PaymentSubscription:
    """Cancel a subscription at the provider, then locally. Already canceled is a no-op."""

    subscription = _get_locked(db, provider_subscription_id)
    if subscription.status == SubscriptionStatus.CANCELED:
        logger.info("Subscription already canceled", extra={"subscription_id": subscription.id})
        return subscription

    gateway.cancel_recurring_charge(provider_subscription_id)
    subscription.cancel(now or utcnow())
    log_audit(
        db,
        actor=actor,
        action="SUBSCRIPTION_CANCELED",
        entity="PaymentSubscription",
        entity_id=subscription.id,
        data={"provider_subscription_id": provider_subscription_id},
    )
    db.commit()
    db.refresh(subscription)
    logger.info("Subscription canceled", extra={"subscription_id": subscription.id})
    return subscription


def cancel_for_guardianship(
    db: Session,
    gateway: PaymentGateway,
    guardianship_id: int,
    *,
    now: datetime | None = None,
    actor: str = "system",
) -> int:
    """Cancel every live subscription funding a guardianship and return how many were canceled."""

    stmt = select(PaymentSubscription.provider_subscription_id).where(
        PaymentSubscription.scope_type == SubscriptionScope.GUARDIANSHIP,
        PaymentSubscription.scope_id == guardianship_id,
        PaymentSubscription.status != SubscriptionStatus.CANCELED,
    )
    canceled = 0
    for provider_subscription_id in db.scalars(stmt).all():
        cancel(db, gateway, provider_subscription_id, now=now, actor=actor)
        canceled += 1
    if not canceled:
        logger.info("No subscription to cancel", extra={"guardianship_id": guardianship_id})
    return canceled


def pause(db: Session, provider_subscription_id: str, *, actor: str = "system") -> PaymentSubscription:
    subscription = _get_locked(db, provider_subscription_id)
    subscription.pause()
    log_audit(
        db,
        actor=actor,
        action="SUBSCRIPTION_PAUSED",
        entity="PaymentSubscription",
        entity_id=subscription.id,
        data={"provider_subscription_id": provider_subscription_id},
    )
    db.commit()
    db.refresh(subscription)
    logger.info("Subscription paused", extra={"subscription_id": subscription.id})
    return subscription


def resume(db: Session, provider_subscription_id: str, *, actor: str = "system") -> PaymentSubscription:
    subscription = _get_locked(db, provider_subscription_id)
    conflict = {
        "scope": subscription.scope_type.value,
        "scope_id": subscription.scope_id,
        "subscription_id": subscription.id,
    }
    if subscription.status == SubscriptionStatus.PAUSED and subscription.user_id is not None:
        other = _find_for_scope(
            db,
            user_id=subscription.user_id,
            scope=subscription.scope_type,
            scope_id=subscription.scope_id,
            statuses=(SubscriptionStatus.ACTIVE,),
            exclude_id=subscription.id,
        )
        if other is not None:
            raise ConflictError(
                "SUBSCRIPTION_ALREADY_ACTIVE",
                "Another active subscription already exists for this target.",
                {**conflict, "active_subscription_id": other.id},
            )
    try:
        with db.begin_nested():
            subscription.resume()
    except IntegrityError as exc:
        raise ConflictError(
            "SUBSCRIPTION_ALREADY_ACTIVE",
            "Another active subscription already exists for this target.",
            conflict,
        ) from exc
    log_audit(
        db,
        actor=actor,
        action="SUBSCRIPTION_RESUMED",
        entity="PaymentSubscription",
        entity_id=subscription.id,
        data={"provider_subscription_id": provider_subscription_id},
    )
    db.commit()
    db.refresh(subscription)
    logger.info("Subscription resumed", extra={"subscription_id": subscription.id})
    return subscription


def record_recurring_charge(
    db: Session,
    *,
    user_id: int,
    provider: str,
    transaction_id: str | None,
    scope: SubscriptionScope,
    scope_id: int | None,
    amount: Decimal,
    currency: str,
    now: datetime | None = None,
) -> PaymentSubscription | None:
    """Advance the subscription a successful recurring charge belongs to.

    Provider-initiated pledges (the donor subscribed on the provider's page)
    have no local row yet; one is registered under the charge's transaction id.
    """

    now = now or utcnow()
    period = billing_period()
    subscription = _find_for_scope(db, user_id=user_id, scope=scope, scope_id=scope_id)
    if subscription is None and transaction_id:
        subscription = find_by_provider_subscription_id(db, transaction_id)
        if subscription is not None and subscription.status == SubscriptionStatus.CANCELED:
            logger.warning(
                "Recurring charge for canceled subscription",
                extra={"subscription_id": subscription.id},
            )
            return subscription

    if subscription is not None:
        subscription.mark_charged(now, period)
        db.commit()
        logger.info(
            "Subscription charge recorded",
            extra={"subscription_id": subscription.id, "next_charge_at": subscription.next_charge_at.isoformat()},
        )
        return subscription

    if not transaction_id:
        logger.warning(
            "Recurring charge without transaction id; subscription not registered",
            extra={"user_id": user_id, "scope": scope.value, "scope_id": scope_id},
        )
        return None

    subscription = PaymentSubscription(
        user_id=user_id,
        payment_method_id=require_payment_method_id(db, provider),
        scope_type=scope,
        scope_id=scope_id,
        amount=_validate_amount(amount),
        currency=currency.upper(),
        provider=provider,
        provider_subscription_id=transaction_id,
        status=SubscriptionStatus.ACTIVE,
        last_charge_at=now,
        next_charge_at=now + period,
    )
    try:
        with db.begin_nested():
            db.add(subscription)
    except IntegrityError:
        # Un autre webhook a gagné la course
        logger.warning(
            "Concurrent subscription registration; keeping existing row",
            extra={"user_id": user_id, "scope": scope.value, "scope_id": scope_id},
        )
        return _find_for_scope(db, user_id=user_id, scope=scope, scope_id=scope_id)

    log_audit(
        db,
        actor="psp",
        action="SUBSCRIPTION_REGISTERED",
        entity="PaymentSubscription",
        entity_id=subscription.id,
        data={"provider_subscription_id": transaction_id, "scope": scope.value, "scope_id": scope_id},
    )
    db.commit()
    db.refresh(subscription)
    logger.info("Subscription registered from provider charge", extra={"subscription_id": subscription.id})
    return subscription


def cancel_expired(db: Session, utc_now: datetime, gateway: PaymentGateway | None = None) -> int:
    """Cancel active subscriptions whose next charge is overdue beyond the tolerance."""

    cutoff = utc_now - charge_tolerance()
    candidates = db.execute(
        select(PaymentSubscription.id, PaymentSubscription.provider_subscription_id)
        .where(
            PaymentSubscription.status == SubscriptionStatus.ACTIVE,
            PaymentSubscription.next_charge_at.is_not(None),
            PaymentSubscription.next_charge_at < cutoff,
        )
        .order_by(PaymentSubscription.id)
    ).all()

    canceled = 0
    for subscription_id, provider_subscription_id in candidates:
        result = db.execute(
            update(PaymentSubscription)
            .where(
                PaymentSubscription.id == subscription_id,
                PaymentSubscription.status == SubscriptionStatus.ACTIVE,
                PaymentSubscription.next_charge_at < cutoff,
            )
            .values(
                status=SubscriptionStatus.CANCELED,
                canceled_at=utc_now,
                next_charge_at=None,
                updated_at=utc_now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            db.commit()
            continue
        log_audit(
            db,
            actor="system",
            action="SUBSCRIPTION_EXPIRED",
            entity="PaymentSubscription",
            entity_id=subscription_id,
            data={"provider_subscription_id": provider_subscription_id, "cutoff": cutoff.isoformat()},
        )
        db.commit()
        canceled += 1

        if gateway is not None:
            try:
                gateway.cancel_recurring_charge(provider_subscription_id)
            except ExternalProviderError:
                logger.warning(
                    "Provider cancel failed for expired subscription",
                    exc_info=True,
                    extra={"subscription_id": subscription_id},
                )

    logger.info("Expired subscriptions canceled", extra={"count": canceled, "as_of": utc_now.isoformat()})
    return canceled


def get_my_expected_payments(db: Session, user_id: int) -> list[tuple[PaymentSubscription, datetime | None]]:
    stmt = (
        select(PaymentSubscription)
        .where(
            PaymentSubscription.user_id == user_id,
            PaymentSubscription.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(PaymentSubscription.next_charge_at, PaymentSubscription.id)
    )
    return [(subscription, subscription.next_charge_at) for subscription in db.scalars(stmt).all()]


def list_user_subscriptions(
    db: Session, user_id: int, *, status: SubscriptionStatus | None = None
) -> list[PaymentSubscription]:
    stmt = select(PaymentSubscription).where(PaymentSubscription.user_id == user_id)
    if status is not None:
        stmt = stmt.where(PaymentSubscription.status == status)
    return list(db.scalars(stmt.order_by(PaymentSubscription.created_at.desc(), PaymentSubscription.id.desc())).all())


__all__ = [
    "billing_period",
    "charge_tolerance",
    "find_by_provider_subscription_id",
    "create_for_guardianship",
    "create_global",
    "create_for_aid_request",
    "cancel",
    "cancel_for_guardianship",
    "pause",
    "resume",
    "record_recurring_charge",
    "cancel_expired",
    "get_my_expected_payments",
    "list_user_subscriptions",
]
