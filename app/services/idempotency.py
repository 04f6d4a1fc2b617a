# app/services/idempotency.py
"""Idempotency helpers."""
from typing import Any, Callable, Mapping, Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

T = TypeVar("T")


def get_existing_by_fields(db: Session, model: Type[T], lookup: Mapping[str, Any]) -> Optional[T]:
    """Return the record matching every ``lookup`` column, if any."""

    if not lookup:
        raise ValueError("lookup must name at least one column")
    stmt = select(model)
    for field, value in lookup.items():
        if not hasattr(model, field):
            raise AttributeError(f"{model.__name__} has no field '{field}'")
        stmt = stmt.where(getattr(model, field) == value)
    return db.scalars(stmt.limit(1)).first()


def get_or_create(
    db: Session,
    model: Type[T],
    lookup: Mapping[str, Any],
    build_instance: Callable[[], T],  # → ex: lambda: GuardianshipDonation(...)
) -> tuple[T, bool]:
    """Return ``(instance, created)`` for the row identified by a unique ``lookup``.

    The insert runs inside a savepoint so that a concurrent writer hitting the
    same unique constraint only rolls back the savepoint; the winner's row is
    then re-read. Nothing is committed here.
    """

    existing = get_existing_by_fields(db, model, lookup)
    if existing is not None:
        return existing, False
    instance = build_instance()
    try:
        with db.begin_nested():
            db.add(instance)
    except IntegrityError:
        # Course condition → re-read existing
        existing = get_existing_by_fields(db, model, lookup)
        if existing is None:
            raise
        return existing, False
    return instance, True
