"""Donation ledger services."""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models import (
    Donation,
    DonationStatus,
    DonationTarget,
    Guardianship,
    GuardianshipDonation,
    GuardianshipStatus,
    SubscriptionScope,
)
from app.services import guardianships as guardianships_service
from app.services import subscriptions as subscriptions_service
from app.services.idempotency import get_or_create
from app.services.payment_methods import require_payment_method_id
from app.utils.audit import log_audit
from app.utils.errors import InvalidRequestError, NotFoundError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def _validate_amount(amount: Decimal) -> Decimal:
    value = Decimal(str(amount))
    if value <= Decimal("0"):
        raise InvalidRequestError("INVALID_AMOUNT", "Amount must be greater than zero.", {"amount": str(amount)})
    return value.quantize(Decimal("0.01"))


def record_donation(
    db: Session,
    *,
    status: DonationStatus,
    provider: str,
    transaction_id: str | None,
    amount: Decimal,
    currency: str,
    target_entity: DonationTarget | None = None,
    target_entity_id: int | None = None,
    recurring: bool = False,
    anonymous: bool = False,
    user_id: int | None = None,
    purpose: str | None = None,
    now: datetime | None = None,
) -> Donation:
    """Append and commit a ledger row without touching guardianships or subscriptions."""

    now = now or utcnow()
    donation = Donation(
        user_id=user_id,
        payment_method_id=require_payment_method_id(db, provider),
        amount=_validate_amount(amount),
        currency=currency.upper(),
        status=status,
        transaction_id=transaction_id,
        target_entity=target_entity,
        target_entity_id=target_entity_id,
        purpose=purpose,
        recurring=recurring,
        anonymous=anonymous,
        donation_date=now,
    )
    db.add(donation)
    db.flush()
    log_audit(
        db,
        actor="psp",
        action=f"DONATION_{status.value}",
        entity="Donation",
        entity_id=donation.id,
        data={
            "transaction_id": transaction_id,
            "provider": provider,
            "amount": str(donation.amount),
            "currency": donation.currency,
            "target_entity": target_entity.value if target_entity else None,
            "target_entity_id": target_entity_id,
        },
    )
    db.commit()
    db.refresh(donation)
    logger.info(
        "Donation recorded",
        extra={
            "donation_id": donation.id,
            "status": status.value,
            "target_entity": target_entity.value if target_entity else None,
            "target_entity_id": target_entity_id,
        },
    )
    return donation


def apply_charge_success(db: Session, donation: Donation, *, provider: str, now: datetime | None = None) -> None:
    """Activate the guardianship a completed donation funds and advance the donor's subscription."""

    now = now or utcnow()
    target_entity = donation.target_entity
    target_entity_id = donation.target_entity_id

    if target_entity == DonationTarget.GUARDIANSHIP and target_entity_id is not None:
        guardianships_service.activate_with_first_payment(db, target_entity_id, donation.id, now=now, actor="psp")

    if donation.recurring and donation.user_id is not None:
        scope = SubscriptionScope(target_entity.value) if target_entity else SubscriptionScope.GLOBAL
        subscriptions_service.record_recurring_charge(
            db,
            user_id=donation.user_id,
            provider=provider,
            transaction_id=donation.transaction_id,
            scope=scope,
            scope_id=None if scope == SubscriptionScope.GLOBAL else target_entity_id,
            amount=donation.amount,
            currency=donation.currency,
            now=now,
        )


def apply_charge_failure(db: Session, donation: Donation, *, now: datetime | None = None) -> None:
    """Send the active guardianship a failed donation funded back to awaiting payment."""

    target_entity_id = donation.target_entity_id
    if donation.target_entity != DonationTarget.GUARDIANSHIP or target_entity_id is None:
        return

    guardianship = db.get(Guardianship, target_entity_id)
    if guardianship is None:
        logger.warning("Failed charge for unknown guardianship", extra={"guardianship_id": target_entity_id})
    elif guardianship.status == GuardianshipStatus.ACTIVE:
        guardianships_service.require_payment(
            db,
            target_entity_id,
            grace_days=get_settings().GUARDIANSHIP_GRACE_DAYS,
            now=now or utcnow(),
            actor="psp",
        )
    else:
        logger.info(
            "Failed charge left guardianship unchanged",
            extra={"guardianship_id": target_entity_id, "status": guardianship.status.value},
        )


def record_charge_success(
    db: Session,
    *,
    provider: str,
    transaction_id: str | None,
    amount: Decimal,
    currency: str,
    target_entity: DonationTarget | None = None,
    target_entity_id: int | None = None,
    recurring: bool = False,
    anonymous: bool = False,
    user_id: int | None = None,
    purpose: str | None = None,
    now: datetime | None = None,
) -> Donation:
    """Append a completed donation and apply its side effects.

    A guardianship target is linked and activated; a recurring charge advances
    (or registers) the donor's subscription for the same target. Domain errors
    raised by those follow-ups propagate after the donation row is committed.
    """

    now = now or utcnow()
    donation = record_donation(
        db,
        status=DonationStatus.COMPLETED,
        provider=provider,
        transaction_id=transaction_id,
        amount=amount,
        currency=currency,
        target_entity=target_entity,
        target_entity_id=target_entity_id,
        recurring=recurring,
        anonymous=anonymous,
        user_id=user_id,
        purpose=purpose,
        now=now,
    )
    apply_charge_success(db, donation, provider=provider, now=now)
    return donation


def record_charge_failed(
    db: Session,
    *,
    provider: str,
    transaction_id: str | None,
    amount: Decimal,
    currency: str,
    target_entity: DonationTarget | None = None,
    target_entity_id: int | None = None,
    recurring: bool = False,
    anonymous: bool = False,
    user_id: int | None = None,
    purpose: str | None = None,
    now: datetime | None = None,
) -> Donation:
    """Append a failed donation; an active guardianship it funded goes back to awaiting payment."""

    now = now or utcnow()
    donation = record_donation(
        db,
        status=DonationStatus.FAILED,
        provider=provider,
        transaction_id=transaction_id,
        amount=amount,
        currency=currency,
        target_entity=target_entity,
        target_entity_id=target_entity_id,
        recurring=recurring,
        anonymous=anonymous,
        user_id=user_id,
        purpose=purpose,
        now=now,
    )
    apply_charge_failure(db, donation, now=now)
    return donation


def link_donation(db: Session, guardianship_id: int, donation_id: int) -> tuple[GuardianshipDonation, bool]:
    """Attribute a donation to a guardianship; repeating the same pair returns the existing link.

    The caller commits.
    """

    if db.get(Guardianship, guardianship_id) is None:
        raise NotFoundError("GUARDIANSHIP_NOT_FOUND", "Guardianship not found.")
    if db.get(Donation, donation_id) is None:
        raise NotFoundError("DONATION_NOT_FOUND", "Donation not found.")

    link, created = get_or_create(
        db,
        GuardianshipDonation,
        {"guardianship_id": guardianship_id, "donation_id": donation_id},
        lambda: GuardianshipDonation(guardianship_id=guardianship_id, donation_id=donation_id),
    )
    if created:
        logger.info(
            "Donation linked to guardianship",
            extra={"guardianship_id": guardianship_id, "donation_id": donation_id},
        )
    return link, created


def list_user_donations(db: Session, user_id: int) -> list[Donation]:
    stmt = (
        select(Donation)
        .where(Donation.user_id == user_id)
        .order_by(Donation.donation_date.desc(), Donation.id.desc())
    )
    return list(db.scalars(stmt).all())


def list_all_donations(
    db: Session, *, status: DonationStatus | None = None, limit: int = 100, offset: int = 0
) -> list[Donation]:
    stmt = select(Donation)
    if status is not None:
        stmt = stmt.where(Donation.status == status)
    stmt = stmt.order_by(Donation.donation_date.desc(), Donation.id.desc()).offset(offset).limit(limit)
    return list(db.scalars(stmt).all())


def list_aid_request_donations(db: Session, aid_request_id: int) -> list[Donation]:
    stmt = (
        select(Donation)
        .where(
            Donation.target_entity == DonationTarget.AID_REQUEST,
            Donation.target_entity_id == aid_request_id,
        )
        .order_by(Donation.donation_date.desc(), Donation.id.desc())
    )
    return list(db.scalars(stmt).all())


__all__ = [
    "record_donation",
    "apply_charge_success",
    "apply_charge_failure",
    "record_charge_success",
    "record_charge_failed",
    "link_donation",
    "list_user_donations",
    "list_all_donations",
    "list_aid_request_donations",
]
