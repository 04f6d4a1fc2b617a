"""PSP webhook persistence models."""
from datetime import datetime

from sqlalchemy import DateTime, Index, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PSPWebhookEvent(Base):
    """Represents an incoming payment-provider callback, stored once per (provider, event_id)."""

    __tablename__ = "psp_webhook_events"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "event_id",
            name="uq_psp_webhook_events_provider_event_id",
        ),
        Index("ix_psp_webhook_events_received", "received_at"),
        Index("ix_psp_webhook_events_kind", "kind"),
    )

    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="default")
    event_id: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    donation_id: Mapped[int | None] = mapped_column(nullable=True)
    raw_json: Mapped[dict] = mapped_column(JSON, nullable=False)
