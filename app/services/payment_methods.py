"""Payment method registry services."""
from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import Donation, PaymentMethod, PaymentSubscription
from app.utils.audit import log_audit
from app.utils.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def _normalise_name(name: str) -> str:
    return " ".join(name.split())


def _ensure_name_available(db: Session, name: str, *, exclude_id: int | None = None) -> None:
    stmt = select(PaymentMethod).where(func.lower(PaymentMethod.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(PaymentMethod.id != exclude_id)
    if db.scalars(stmt).first() is not None:
        raise ConflictError("PAYMENT_METHOD_EXISTS", f"Payment method '{name}' already exists.")


def list_payment_methods(db: Session) -> list[PaymentMethod]:
    return list(db.scalars(select(PaymentMethod).order_by(PaymentMethod.name)).all())


def get_payment_method(db: Session, payment_method_id: int) -> PaymentMethod:
    method = db.get(PaymentMethod, payment_method_id)
    if method is None:
        raise NotFoundError("PAYMENT_METHOD_NOT_FOUND", "Payment method not found.")
    return method


def find_by_name(db: Session, name: str) -> PaymentMethod | None:
    stmt = select(PaymentMethod).where(func.lower(PaymentMethod.name) == _normalise_name(name).lower())
    return db.scalars(stmt).first()


def require_payment_method_id(db: Session, provider: str) -> int:
    """Return the registry id for ``provider`` or fail with ``NotFoundError``."""

    method = find_by_name(db, provider)
    if method is None:
        raise NotFoundError(
            "PAYMENT_METHOD_NOT_FOUND",
            f"Payment method '{provider}' is not registered.",
            {"provider": provider},
        )
    return method.id


def create_payment_method(db: Session, name: str, *, actor: str = "system") -> PaymentMethod:
    cleaned = _normalise_name(name)
    _ensure_name_available(db, cleaned)
    method = PaymentMethod(name=cleaned)
    db.add(method)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_METHOD_CREATED",
        entity="PaymentMethod",
        entity_id=method.id,
        data={"name": cleaned},
    )
    db.commit()
    db.refresh(method)
    logger.info("Payment method created", extra={"payment_method_id": method.id, "name": cleaned})
    return method


def rename_payment_method(
    db: Session, payment_method_id: int, name: str, *, actor: str = "system"
) -> PaymentMethod:
    method = get_payment_method(db, payment_method_id)
    cleaned = _normalise_name(name)
    if cleaned == method.name:
        return method
    _ensure_name_available(db, cleaned, exclude_id=method.id)
    previous = method.name
    method.name = cleaned
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_METHOD_RENAMED",
        entity="PaymentMethod",
        entity_id=method.id,
        data={"from": previous, "to": cleaned},
    )
    db.commit()
    db.refresh(method)
    return method


def delete_payment_method(db: Session, payment_method_id: int, *, actor: str = "system") -> None:
    """Delete a provider entry that no donation or subscription references."""

    method = get_payment_method(db, payment_method_id)
    donations = db.scalar(
        select(func.count(Donation.id)).where(Donation.payment_method_id == method.id)
    )
    subscriptions = db.scalar(
        select(func.count(PaymentSubscription.id)).where(
            PaymentSubscription.payment_method_id == method.id
        )
    )
    if donations or subscriptions:
        raise ConflictError(
            "PAYMENT_METHOD_IN_USE",
            "Payment method is referenced by donations or subscriptions.",
            {"donations": donations or 0, "subscriptions": subscriptions or 0},
        )
    log_audit(
        db,
        actor=actor,
        action="PAYMENT_METHOD_DELETED",
        entity="PaymentMethod",
        entity_id=method.id,
        data={"name": method.name},
    )
    db.delete(method)
    db.commit()
    logger.info("Payment method deleted", extra={"payment_method_id": payment_method_id})


__all__ = [
    "list_payment_methods",
    "get_payment_method",
    "find_by_name",
    "require_payment_method_id",
    "create_payment_method",
    "rename_payment_method",
    "delete_payment_method",
]
