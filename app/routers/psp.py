"""Routes for PSP webhook handling."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import get_db
from app.services import psp_webhooks
from app.utils.errors import error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/psp", tags=["psp"])


@router.post("/webhook", status_code=status.HTTP_200_OK)
async def psp_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> dict[str, str | int | None]:
    settings = get_settings()
    if not (settings.psp_webhook_secret or settings.psp_webhook_secret_next):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("WEBHOOK_SECRET_NOT_CONFIGURED", "PSP webhook secret not configured."),
        )

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}

    timestamp = psp_webhooks.verify_psp_webhook_signature(raw_body, headers)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body must be JSON."),
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("WEBHOOK_PAYLOAD_INVALID", "Webhook body must be a JSON object."),
        )
    event_id = (
        payload.get("event_id")
        or payload.get("id")
        or request.headers.get("X-PSP-Event-Id")
    )
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_EVENT_ID", "Webhook event_id is required."),
        )

    psp_webhooks.ensure_not_recent_replay(event_id, timestamp)

    kind = payload.get("type") or payload.get("event") or "charge"
    provider = payload.get("provider") or settings.PAYMENT_PROVIDER_NAME

    event = psp_webhooks.handle_event(
        db,
        provider=provider,
        event_id=event_id,
        kind=kind,
        payload=payload,
    )
    return {
        "ok": "true",
        "event_id": event.event_id,
        "donation_id": event.donation_id,
        "processed_at": event.processed_at.isoformat(),
    }


__all__ = ["router"]
