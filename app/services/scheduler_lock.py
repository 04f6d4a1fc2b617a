"""Simple DB-backed lock to ensure only one scheduler runs reconciliation."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.scheduler_lock import SchedulerLock
from app.utils.time import ensure_utc, utcnow


LOCK_NAME = "default"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _transaction(session: Session):
    return session.begin_nested() if session.in_transaction() else session.begin()


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
) -> bool:
    """Attempt to acquire the scheduler lock with owner + TTL safety."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        with _transaction(session):
            lock = session.execute(
                select(SchedulerLock)
                .where(SchedulerLock.name == name)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

            if lock is None:
                try:
                    with session.begin_nested():
                        session.add(
                            SchedulerLock(
                                name=name,
                                owner=owner,
                                acquired_at=now,
                                expires_at=expires,
                            )
                        )
                    return True
                except IntegrityError:
                    return False

            expires_at = ensure_utc(lock.expires_at)
            if expires_at is None or expires_at <= now:
                lock.owner = owner
                lock.acquired_at = now
                lock.expires_at = expires
                return True

            if lock.owner == owner:
                lock.expires_at = expires
                return True

            return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> None:
    """Refresh the TTL of the scheduler lock when owned by this runner."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    expires = utcnow() + timedelta(seconds=ttl_seconds)

    try:
        with _transaction(session):
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock and lock.owner == owner:
                lock.expires_at = expires
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    """Release the scheduler lock if held by this runner."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        with _transaction(session):
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock and lock.owner == owner:
                session.delete(lock)
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current scheduler lock state."""

    session, should_close = _session(db_session)
    owner = _owner_id()
    try:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = ensure_utc(lock.acquired_at)
        expires_at = ensure_utc(lock.expires_at)

        age_seconds = (now - acquired_at).total_seconds() if acquired_at else None
        expires_in = (expires_at - now).total_seconds() if expires_at else None

        status = "owned_by_self" if lock.owner == owner else "owned_by_other"
        return {
            "status": status,
            "owner": lock.owner,
            "present": True,
            "age_seconds": age_seconds,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < -60,
        }
    finally:
        if should_close:
            session.close()
