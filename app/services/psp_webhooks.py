"""Services handling PSP webhook callbacks."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Any, Mapping

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models import DonationStatus, DonationTarget
from app.models.psp_webhook import PSPWebhookEvent
from app.services import donations as donations_service
from app.services.payment_methods import require_payment_method_id
from app.utils.errors import DomainError, InvalidRequestError, error_response
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

_recent_psp_events: dict[str, int] = {}
_RECENT_PSP_EVENTS_TTL_SECONDS = 300

SUCCESS_STATUSES = {"success"}
FAILURE_STATUSES = {"failure", "error"}


@dataclass(frozen=True)
class ChargeNotification:
    """Provider-agnostic view of a single charge callback."""

    transaction_id: str | None
    amount: Decimal
    currency: str
    status: str
    target_entity: DonationTarget | None
    target_entity_id: int | None
    recurring: bool
    anonymous: bool
    user_id: int | None


def _current_settings():
    return get_settings()


def _current_secrets() -> tuple[str | None, str | None]:
    settings = _current_settings()
    return settings.psp_webhook_secret, settings.psp_webhook_secret_next


def _validate_psp_timestamp(ts_seconds: int, secrets_info: Mapping[str, str | None]) -> None:
    settings = _current_settings()
    max_drift = getattr(settings, "psp_webhook_max_drift_seconds", 180)
    now = int(time.time())
    age = abs(now - ts_seconds)

    if age > max_drift:
        logger.warning(
            "PSP webhook timestamp outside allowed window",
            extra={"psp_secret_status": _masked_secret_status(secrets_info), "age": age},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response(
                "WEBHOOK_TIMESTAMP_DRIFT",
                "Webhook timestamp is outside allowed window.",
                {"age_seconds": age, "max_drift_seconds": max_drift},
            ),
        )


def _is_recent_replay(event_id: str | None, ts_seconds: int) -> bool:
    if not event_id:
        return False

    now = ts_seconds or int(time.time())
    cutoff = now - _RECENT_PSP_EVENTS_TTL_SECONDS

    for eid, seen_ts in list(_recent_psp_events.items()):
        if seen_ts < cutoff:
            _recent_psp_events.pop(eid, None)

    if event_id in _recent_psp_events:
        return True

    _recent_psp_events[event_id] = now
    return False


def _masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def _get_header(headers: Mapping[str, str], key: str) -> str | None:
    for h_key, value in headers.items():
        if h_key.lower() == key.lower():
            return value
    return None


def _compute_webhook_signature(secret: str, body: bytes, timestamp: str) -> str:
    """Compute HMAC-SHA256 signature for the webhook payload."""

    msg = f"{timestamp}.{body.decode('utf-8')}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def _parse_timestamp(ts: str, secrets_info: Mapping[str, str | None]) -> int:
    try:
        return int(float(ts))
    except (TypeError, ValueError):
        pass
    try:
        return int(datetime.fromisoformat(ts.replace("Z", "+00:00")).timestamp())
    except ValueError:
        logger.warning(
            "Invalid PSP webhook timestamp format",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_TIMESTAMP_INVALID", "Invalid timestamp format."),
        )


def verify_psp_webhook_signature(raw_body: bytes, headers: Mapping[str, str]) -> int:
    """Validate PSP webhook signature and timestamp and raise on failure."""

    provided_sig = _get_header(headers, "X-PSP-Signature")
    ts = _get_header(headers, "X-PSP-Timestamp")

    primary_secret, secondary_secret = _current_secrets()
    secrets = [s for s in (primary_secret, secondary_secret) if s]
    secrets_info = {
        "primary": primary_secret,
        "secondary": secondary_secret,
    }
    if not secrets:
        logger.error(
            "PSP webhook secrets are not configured",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response(
                "WEBHOOK_SECRET_NOT_CONFIGURED",
                "PSP webhook secrets are not configured.",
            ),
        )

    if not provided_sig or not ts:
        logger.warning(
            "Missing PSP signature or timestamp",
            extra={"psp_secret_status": _masked_secret_status(secrets_info)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response(
                "WEBHOOK_SIGNATURE_MISSING",
                "Signature or timestamp header missing.",
            ),
        )

    ts_seconds = _parse_timestamp(ts, secrets_info)
    _validate_psp_timestamp(ts_seconds, secrets_info)

    for secret in secrets:
        expected = _compute_webhook_signature(secret, raw_body, ts)
        if hmac.compare_digest(expected, provided_sig):
            return ts_seconds

    logger.warning(
        "PSP webhook signature mismatch",
        extra={"psp_secret_status": _masked_secret_status(secrets_info)},
    )
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_response(
            "WEBHOOK_SIGNATURE_INVALID",
            "Invalid PSP webhook signature.",
        ),
    )


def ensure_not_recent_replay(event_id: str | None, ts_seconds: int) -> None:
    if _is_recent_replay(event_id, ts_seconds):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("WEBHOOK_REPLAY", "Duplicate PSP webhook event detected."),
        )


def register_psp_event_or_raise_replay(db: Session, provider: str, event_id: str) -> None:
    """Detect PSP webhook replay attempts using provider/event_id pairs."""

    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(
                "MISSING_EVENT_ID",
                "PSP webhook event_id is missing.",
            ),
        )

    existing = db.scalars(
        select(PSPWebhookEvent)
        .where(
            PSPWebhookEvent.provider == provider,
            PSPWebhookEvent.event_id == event_id,
        )
        .execution_options(populate_existing=True)
    ).first()
    if existing:
        logger.warning("Replay detected for PSP webhook", extra={"event_id": event_id, "provider": provider})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("WEBHOOK_REPLAY", "Duplicate PSP webhook event detected."),
        )


def _optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "" or value == "-":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidRequestError(
            "WEBHOOK_PAYLOAD_INVALID", f"Field '{field}' must be an integer.", {field: value}
        ) from exc


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


def _target(value: Any) -> DonationTarget | None:
    if value is None or value == "":
        return None
    try:
        return DonationTarget(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidRequestError(
            "WEBHOOK_PAYLOAD_INVALID", "Unknown donation target.", {"target_entity": value}
        ) from exc


def parse_order_reference(order_id: str) -> dict[str, Any]:
    """Decode ``scope|entity_id|recurring|user_id|anonymous|nonce`` order references."""

    parts = order_id.split("|")
    if len(parts) != 6:
        raise InvalidRequestError(
            "WEBHOOK_PAYLOAD_INVALID", "Malformed order reference.", {"order_id": order_id}
        )
    scope, entity_id, recurring, user_id, anonymous, _nonce = parts
    target = _target(scope)
    return {
        "target_entity": target,
        "target_entity_id": None if target == DonationTarget.GLOBAL else _optional_int(entity_id, "entity_id"),
        "recurring": _flag(recurring),
        "user_id": _optional_int(user_id, "user_id"),
        "anonymous": _flag(anonymous),
    }


def parse_charge_notification(payload: Mapping[str, Any]) -> ChargeNotification:
    """Extract the charge outcome from a verified webhook payload."""

    raw_amount = payload.get("amount")
    try:
        amount = Decimal(str(raw_amount))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequestError(
            "WEBHOOK_PAYLOAD_INVALID", "Webhook amount is missing or invalid.", {"amount": raw_amount}
        ) from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidRequestError(
            "WEBHOOK_PAYLOAD_INVALID", "Webhook amount is missing or invalid.", {"amount": raw_amount}
        )

    charge_status = str(payload.get("status") or "").strip().lower()
    if not charge_status:
        raise InvalidRequestError("WEBHOOK_PAYLOAD_INVALID", "Webhook status is missing.")

    order_id = payload.get("order_id")
    if isinstance(order_id, str) and "|" in order_id:
        target_fields = parse_order_reference(order_id)
    else:
        target_fields = {
            "target_entity": _target(payload.get("target_entity")),
            "target_entity_id": _optional_int(payload.get("target_entity_id"), "target_entity_id"),
            "recurring": _flag(payload.get("recurring", False)),
            "user_id": _optional_int(payload.get("user_id"), "user_id"),
            "anonymous": _flag(payload.get("anonymous", False)),
        }

    transaction_id = payload.get("transaction_id") or payload.get("payment_id")
    currency = str(payload.get("currency") or _current_settings().DEFAULT_CURRENCY).upper()
    return ChargeNotification(
        transaction_id=str(transaction_id) if transaction_id else None,
        amount=amount,
        currency=currency,
        status=charge_status,
        **target_fields,
    )


def handle_event(
    db: Session,
    *,
    provider: str,
    event_id: str,
    kind: str,
    payload: dict[str, Any],
) -> PSPWebhookEvent:
    """Persist a PSP callback once and record the charge it reports in the ledger."""

    notification = parse_charge_notification(payload)
    require_payment_method_id(db, provider)
    register_psp_event_or_raise_replay(db, provider, event_id)

    event = PSPWebhookEvent(
        provider=provider,
        event_id=event_id,
        transaction_id=notification.transaction_id,
        kind=kind,
        raw_json=payload,
        received_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(event)
    except IntegrityError:
        logger.warning("Replay detected for PSP webhook", extra={"event_id": event_id, "provider": provider})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("WEBHOOK_REPLAY", "Duplicate PSP webhook event detected."),
        )

    charge_kwargs = dict(
        provider=provider,
        transaction_id=notification.transaction_id,
        amount=notification.amount,
        currency=notification.currency,
        target_entity=notification.target_entity,
        target_entity_id=notification.target_entity_id,
        recurring=notification.recurring,
        anonymous=notification.anonymous,
        user_id=notification.user_id,
    )
    now = utcnow()
    if notification.status in SUCCESS_STATUSES:
        donation = donations_service.record_donation(db, status=DonationStatus.COMPLETED, now=now, **charge_kwargs)
        follow_up = partial(donations_service.apply_charge_success, provider=provider)
    elif notification.status in FAILURE_STATUSES:
        donation = donations_service.record_donation(db, status=DonationStatus.FAILED, now=now, **charge_kwargs)
        follow_up = donations_service.apply_charge_failure
    else:
        donation = None
        logger.info(
            "Non-final PSP charge status; nothing recorded",
            extra={"event_id": event_id, "status": notification.status},
        )

    if donation is not None:
        event.donation_id = donation.id
        try:
            follow_up(db, donation, now=now)
        except DomainError as exc:
            # Donation déjà enregistrée; on trace le refus de transition
            logger.warning(
                "PSP charge recorded but follow-up transition rejected",
                extra={"event_id": event_id, "provider": provider, "code": exc.code},
            )

    event.processed_at = utcnow()
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info(
        "PSP webhook processed",
        extra={
            "provider": provider,
            "event_id": event_id,
            "status": notification.status,
            "kind": kind,
            "donation_id": event.donation_id,
        },
    )
    return event


__all__ = [
    "ChargeNotification",
    "handle_event",
    "parse_charge_notification",
    "parse_order_reference",
    "verify_psp_webhook_signature",
    "register_psp_event_or_raise_replay",
    "ensure_not_recent_replay",
]
