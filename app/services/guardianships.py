"""Guardianship lifecycle services.

A guardianship moves ``REQUIRES_PAYMENT -> ACTIVE -> REQUIRES_PAYMENT ...`` as
charges succeed and lapse, and ends in ``COMPLETED`` either on request or when
the grace deadline passes unpaid. Every transition below is a single locked
read-modify-write with its guard clauses checked first.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.models import (
    Animal,
    Donation,
    DonationStatus,
    Guardianship,
    GuardianshipDonation,
    GuardianshipStatus,
    SubscriptionScope,
    User,
)
from app.services import donations as donations_service
from app.services import subscriptions as subscriptions_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.audit import log_audit
from app.utils.errors import (
    ConflictError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
)
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _grace_days(grace_days: int | None) -> int:
    if grace_days is None:
        return get_settings().GUARDIANSHIP_GRACE_DAYS
    if grace_days < 0:
        raise InvalidRequestError("INVALID_GRACE_DAYS", "grace_days must be zero or positive.", {"grace_days": grace_days})
    return grace_days


def _get_locked(db: Session, guardianship_id: int) -> Guardianship:
    stmt = (
        select(Guardianship)
        .where(Guardianship.id == guardianship_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    guardianship = db.scalars(stmt).first()
    if guardianship is None:
        raise NotFoundError("GUARDIANSHIP_NOT_FOUND", "Guardianship not found.", {"guardianship_id": guardianship_id})
    return guardianship


def _ensure_not_completed(guardianship: Guardianship) -> None:
    if guardianship.status == GuardianshipStatus.COMPLETED:
        raise InvalidStateError(
            "GUARDIANSHIP_COMPLETED",
            "Guardianship is already completed.",
            {"guardianship_id": guardianship.id},
        )


def _find_active_for_pair(
    db: Session, user_id: int, animal_id: int, *, exclude_id: int | None = None
) -> Guardianship | None:
    stmt = select(Guardianship).where(
        Guardianship.user_id == user_id,
        Guardianship.animal_id == animal_id,
        Guardianship.status == GuardianshipStatus.ACTIVE,
    )
    if exclude_id is not None:
        stmt = stmt.where(Guardianship.id != exclude_id)
    return db.scalars(stmt).first()


def _release_animal(db: Session, animal_id: int, guardianship_id: int) -> None:
    """Clear the under-care flag once no other active guardianship funds the animal."""

    other = db.scalars(
        select(Guardianship.id).where(
            Guardianship.animal_id == animal_id,
            Guardianship.status == GuardianshipStatus.ACTIVE,
            Guardianship.id != guardianship_id,
        )
    ).first()
    if other is not None:
        return
    animal = db.get(Animal, animal_id)
    if animal is not None and animal.is_under_care:
        animal.is_under_care = False


def create(
    db: Session,
    *,
    user_id: int,
    animal_id: int,
    grace_days: int | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> Guardianship:
    """Open a guardianship awaiting its first payment."""

    days = _grace_days(grace_days)
    now = now or utcnow()
    if db.get(User, user_id) is None:
        raise NotFoundError("USER_NOT_FOUND", "User not found.", {"user_id": user_id})
    if db.get(Animal, animal_id) is None:
        raise NotFoundError("ANIMAL_NOT_FOUND", "Animal not found.", {"animal_id": animal_id})

    existing = _find_active_for_pair(db, user_id, animal_id)
    if existing is not None:
        raise ConflictError(
            "GUARDIANSHIP_ALREADY_ACTIVE",
            "An active guardianship already exists for this user and animal.",
            {"guardianship_id": existing.id},
        )

    guardianship = Guardianship(
        user_id=user_id,
        animal_id=animal_id,
        start_date=now,
        status=GuardianshipStatus.REQUIRES_PAYMENT,
        grace_until=now + timedelta(days=days),
    )
    db.add(guardianship)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="GUARDIANSHIP_CREATED",
        entity="Guardianship",
        entity_id=guardianship.id,
        data={"user_id": user_id, "animal_id": animal_id, "grace_days": days},
    )
    db.commit()
    db.refresh(guardianship)
    logger.info(
        "Guardianship created",
        extra={"guardianship_id": guardianship.id, "user_id": user_id, "animal_id": animal_id},
    )
    return guardianship


def activate_with_first_payment(
    db: Session,
    guardianship_id: int,
    donation_id: int,
    *,
    now: datetime | None = None,
    actor: str = "system",
) -> Guardianship:
    """Link a completed donation and activate a guardianship awaiting payment.

    Re-linking the same donation, or paying an already active guardianship,
    leaves the status untouched.
    """

    guardianship = _get_locked(db, guardianship_id)
    _ensure_not_completed(guardianship)

    donation = db.get(Donation, donation_id)
    if donation is None:
        raise NotFoundError("DONATION_NOT_FOUND", "Donation not found.", {"donation_id": donation_id})
    if donation.status != DonationStatus.COMPLETED:
        raise InvalidStateError(
            "DONATION_NOT_COMPLETED",
            "Only a completed donation can activate a guardianship.",
            {"donation_id": donation_id, "status": donation.status.value},
        )

    if guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT:
        other = _find_active_for_pair(db, guardianship.user_id, guardianship.animal_id, exclude_id=guardianship.id)
        if other is not None:
            raise ConflictError(
                "GUARDIANSHIP_ALREADY_ACTIVE",
                "Another active guardianship exists for this user and animal.",
                {"guardianship_id": other.id},
            )

    donations_service.link_donation(db, guardianship.id, donation_id)

    if guardianship.status == GuardianshipStatus.ACTIVE:
        db.commit()
        logger.info(
            "Guardianship already active; donation linked",
            extra={"guardianship_id": guardianship.id, "donation_id": donation_id},
        )
        return guardianship

    try:
        with db.begin_nested():
            guardianship.status = GuardianshipStatus.ACTIVE
            guardianship.grace_until = None
            animal = db.get(Animal, guardianship.animal_id)
            if animal is not None:
                animal.is_under_care = True
    except IntegrityError as exc:
        raise ConflictError(
            "GUARDIANSHIP_ALREADY_ACTIVE",
            "Another active guardianship exists for this user and animal.",
            {"guardianship_id": guardianship.id},
        ) from exc

    log_audit(
        db,
        actor=actor,
        action="GUARDIANSHIP_ACTIVATED",
        entity="Guardianship",
        entity_id=guardianship.id,
        data={"donation_id": donation_id, "activated_at": (now or utcnow()).isoformat()},
    )
    db.commit()
    db.refresh(guardianship)
    logger.info("Guardianship activated", extra={"guardianship_id": guardianship.id, "donation_id": donation_id})
    return guardianship


def require_payment(
    db: Session,
    guardianship_id: int,
    *,
    grace_days: int | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> Guardianship:
    """Put a guardianship back into awaiting payment with a fresh grace deadline."""

    days = _grace_days(grace_days)
    now = now or utcnow()
    guardianship = _get_locked(db, guardianship_id)
    _ensure_not_completed(guardianship)

    previous = guardianship.status
    guardianship.status = GuardianshipStatus.REQUIRES_PAYMENT
    guardianship.grace_until = now + timedelta(days=days)
    log_audit(
        db,
        actor=actor,
        action="GUARDIANSHIP_PAYMENT_REQUIRED",
        entity="Guardianship",
        entity_id=guardianship.id,
        data={"from": previous.value, "grace_until": guardianship.grace_until.isoformat()},
    )
    db.commit()
    db.refresh(guardianship)
    logger.info(
        "Guardianship requires payment",
        extra={"guardianship_id": guardianship.id, "grace_days": days},
    )
    return guardianship


def complete(
    db: Session,
    guardianship_id: int,
    *,
    cancel_subscription: bool = False,
    gateway: PaymentGateway | None = None,
    now: datetime | None = None,
    actor: str = "system",
) -> Guardianship:
    """Finish a guardianship; optionally stop every subscription funding it first.

    Provider cancels run before the local transition, so a provider failure
    leaves the guardianship in its previous state.
    """

    now = now or utcnow()
    guardianship = _get_locked(db, guardianship_id)

    if cancel_subscription:
        subscriptions_service.cancel_for_guardianship(
            db, gateway or get_payment_gateway(), guardianship.id, now=now, actor=actor
        )
        # Les annulations ont commité; on reprend le verrou
        guardianship = _get_locked(db, guardianship_id)

    if guardianship.status == GuardianshipStatus.COMPLETED:
        logger.info("Guardianship already completed", extra={"guardianship_id": guardianship.id})
        return guardianship

    previous = guardianship.status
    guardianship.status = GuardianshipStatus.COMPLETED
    guardianship.grace_until = None
    _release_animal(db, guardianship.animal_id, guardianship.id)
    log_audit(
        db,
        actor=actor,
        action="GUARDIANSHIP_COMPLETED",
        entity="Guardianship",
        entity_id=guardianship.id,
        data={"from": previous.value, "cancel_subscription": cancel_subscription},
    )
    db.commit()
    db.refresh(guardianship)
    logger.info("Guardianship completed", extra={"guardianship_id": guardianship.id})
    return guardianship


def auto_complete_expired(db: Session, utc_now: datetime) -> int:
    """Complete guardianships whose grace deadline passed unpaid and return how many changed."""

    candidates = db.execute(
        select(Guardianship.id, Guardianship.animal_id)
        .where(
            Guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT,
            Guardianship.grace_until.is_not(None),
            Guardianship.grace_until <= utc_now,
        )
        .order_by(Guardianship.grace_until, Guardianship.id)
    ).all()

    completed = 0
    for guardianship_id, animal_id in candidates:
        # Re-check: la ligne a pu être activée entre-temps
        result = db.execute(
            update(Guardianship)
            .where(
                Guardianship.id == guardianship_id,
                Guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT,
                Guardianship.grace_until <= utc_now,
            )
            .values(status=GuardianshipStatus.COMPLETED, grace_until=None, updated_at=utc_now)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            db.commit()
            continue
        _release_animal(db, animal_id, guardianship_id)
        log_audit(
            db,
            actor="system",
            action="GUARDIANSHIP_EXPIRED",
            entity="Guardianship",
            entity_id=guardianship_id,
            data={"as_of": utc_now.isoformat()},
        )
        db.commit()
        completed += 1

    logger.info("Expired guardianships completed", extra={"count": completed, "as_of": utc_now.isoformat()})
    return completed


def cancel_by_provider_subscription(
    db: Session,
    gateway: PaymentGateway,
    provider_subscription_id: str,
    *,
    now: datetime | None = None,
    actor: str = "system",
):
    """Stop a subscription by provider id, completing the guardianship it funds if any."""

    subscription = subscriptions_service.find_by_provider_subscription_id(db, provider_subscription_id)
    if subscription is None:
        raise NotFoundError(
            "SUBSCRIPTION_NOT_FOUND",
            "Subscription not found.",
            {"provider_subscription_id": provider_subscription_id},
        )
    if subscription.scope_type == SubscriptionScope.GUARDIANSHIP and subscription.scope_id is not None:
        complete(db, subscription.scope_id, cancel_subscription=True, gateway=gateway, now=now, actor=actor)
        db.refresh(subscription)
        return subscription
    return subscriptions_service.cancel(db, gateway, provider_subscription_id, now=now, actor=actor)


def get_guardianship(db: Session, guardianship_id: int) -> Guardianship:
    stmt = (
        select(Guardianship)
        .where(Guardianship.id == guardianship_id)
        .options(selectinload(Guardianship.donations).selectinload(GuardianshipDonation.donation))
    )
    guardianship = db.scalars(stmt).first()
    if guardianship is None:
        raise NotFoundError("GUARDIANSHIP_NOT_FOUND", "Guardianship not found.", {"guardianship_id": guardianship_id})
    return guardianship


def list_by_user(db: Session, user_id: int, *, status: GuardianshipStatus | None = None) -> list[Guardianship]:
    stmt = select(Guardianship).where(Guardianship.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Guardianship.status == status)
    return list(db.scalars(stmt.order_by(Guardianship.start_date.desc(), Guardianship.id.desc())).all())


def list_by_animal(db: Session, animal_id: int, *, status: GuardianshipStatus | None = None) -> list[Guardianship]:
    stmt = select(Guardianship).where(Guardianship.animal_id == animal_id)
    if status is not None:
        stmt = stmt.where(Guardianship.status == status)
    return list(db.scalars(stmt.order_by(Guardianship.start_date.desc(), Guardianship.id.desc())).all())


def list_requires_payment_within(db: Session, start: datetime, end: datetime) -> list[Guardianship]:
    """Guardianships awaiting payment whose grace deadline falls in ``[start, end]``.

    Offset-aware bounds are converted to UTC; naive ones are taken as UTC.
    """

    start = ensure_utc(start)
    end = ensure_utc(end)

    stmt = (
        select(Guardianship)
        .where(
            Guardianship.status == GuardianshipStatus.REQUIRES_PAYMENT,
            Guardianship.grace_until >= start,
            Guardianship.grace_until <= end,
        )
        .order_by(Guardianship.grace_until, Guardianship.id)
    )
    return list(db.scalars(stmt).all())


__all__ = [
    "create",
    "activate_with_first_payment",
    "require_payment",
    "complete",
    "auto_complete_expired",
    "cancel_by_provider_subscription",
    "get_guardianship",
    "list_by_user",
    "list_by_animal",
    "list_requires_payment_within",
]
