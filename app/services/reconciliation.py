"""Reconciliation jobs forcing time-based guardianship and subscription transitions."""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app import db as db_module
from app.services import guardianships as guardianships_service
from app.services import subscriptions as subscriptions_service
from app.services.payment_gateway import PaymentGateway, get_payment_gateway
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def run_reconciliation(
    db: Session, utc_now: datetime, gateway: PaymentGateway | None = None
) -> dict[str, int]:
    """Run both sweeps as of ``utc_now`` and return the per-sweep counts."""

    completed = guardianships_service.auto_complete_expired(db, utc_now)
    canceled = subscriptions_service.cancel_expired(db, utc_now, gateway)
    return {"guardianships_completed": completed, "subscriptions_canceled": canceled}


def auto_complete_expired_guardianships_once() -> int:
    """Scheduler entry point: complete guardianships whose grace period elapsed."""

    session = db_module.get_sessionmaker()()
    try:
        count = guardianships_service.auto_complete_expired(session, utcnow())
    finally:
        session.close()
    logger.info("Guardianship reconciliation finished", extra={"count": count})
    return count


def cancel_expired_subscriptions_once() -> int:
    """Scheduler entry point: cancel subscriptions whose charge window lapsed."""

    session = db_module.get_sessionmaker()()
    try:
        count = subscriptions_service.cancel_expired(session, utcnow(), get_payment_gateway())
    finally:
        session.close()
    logger.info("Subscription reconciliation finished", extra={"count": count})
    return count


__all__ = [
    "run_reconciliation",
    "auto_complete_expired_guardianships_once",
    "cancel_expired_subscriptions_once",
]
