from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.models.scheduler_lock import SchedulerLock
from app.services.scheduler_lock import (
    describe_scheduler_lock,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from app.utils.time import ensure_utc


def test_scheduler_lock_enforces_single_owner(db_session):
    release_scheduler_lock(db_session=db_session)

    assert try_acquire_scheduler_lock(db_session=db_session) is True
    assert try_acquire_scheduler_lock(db_session=db_session) is True

    release_scheduler_lock(db_session=db_session)


def test_lock_cannot_be_taken_if_not_expired(monkeypatch, db_session):
    release_scheduler_lock(db_session=db_session)

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300)

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300) is False

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    release_scheduler_lock(db_session=db_session)


def test_lock_can_be_reacquired_after_expiry(monkeypatch, db_session):
    release_scheduler_lock(db_session=db_session)

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=60)

    # Expiration manuelle
    lock = db_session.execute(select(SchedulerLock).where(SchedulerLock.name == "default")).scalar_one()
    lock.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.flush()

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300)
    assert describe_scheduler_lock(db_session=db_session)["owner"] == "node-B"

    release_scheduler_lock(db_session=db_session)


def test_refresh_extends_only_own_lock(monkeypatch, db_session):
    release_scheduler_lock(db_session=db_session)

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=10)
    lock = db_session.execute(select(SchedulerLock).where(SchedulerLock.name == "default")).scalar_one()
    initial = ensure_utc(lock.expires_at)

    refresh_scheduler_lock(db_session=db_session, ttl_seconds=600)
    db_session.refresh(lock)
    extended = ensure_utc(lock.expires_at)
    assert extended > initial

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-B")
    refresh_scheduler_lock(db_session=db_session, ttl_seconds=6000)
    db_session.refresh(lock)
    assert ensure_utc(lock.expires_at) == extended

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    release_scheduler_lock(db_session=db_session)


def test_describe_scheduler_lock_contains_expiry(db_session, monkeypatch):
    release_scheduler_lock(db_session=db_session)
    assert describe_scheduler_lock(db_session=db_session)["present"] is False

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=60)

    info = describe_scheduler_lock(db_session=db_session)
    assert info.get("present") is True
    assert info["status"] == "owned_by_self"
    assert "age_seconds" in info
    assert "expires_in_seconds" in info

    release_scheduler_lock(db_session=db_session)
