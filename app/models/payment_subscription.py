"""Recurring payment subscription model."""
from __future__ import annotations

import enum
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum as SqlEnum, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.utils.errors import InvalidStateError

from .base import Base


class SubscriptionScope(str, enum.Enum):
    """Entity a recurring charge is earmarked for."""

    GLOBAL = "GLOBAL"
    AID_REQUEST = "AID_REQUEST"
    GUARDIANSHIP = "GUARDIANSHIP"


class SubscriptionStatus(str, enum.Enum):
    """Statuses for a recurring charge agreement."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class PaymentSubscription(Base):
    """Recurring-charge agreement registered with the payment provider."""

    __tablename__ = "payment_subscriptions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_subscription_positive_amount"),
        Index("ix_payment_subscriptions_scope", "user_id", "scope_type", "scope_id"),
        Index("ix_payment_subscriptions_status_next_charge", "status", "next_charge_at"),
        Index(
            "uq_payment_subscriptions_active_scope",
            "user_id",
            "scope_type",
            "scope_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE' AND scope_type != 'GLOBAL'"),
            postgresql_where=text("status = 'ACTIVE' AND scope_type != 'GLOBAL'"),
        ),
    )

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey("payment_methods.id"), nullable=False)
    scope_type: Mapped[SubscriptionScope] = mapped_column(
        SqlEnum(SubscriptionScope, name="subscription_scope"), nullable=False
    )
    scope_id: Mapped[int | None] = mapped_column(nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="UAH")
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_subscription_id: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        SqlEnum(SubscriptionStatus, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    next_charge_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_charge_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_method = relationship("PaymentMethod")

    def cancel(self, now: datetime) -> bool:
        """Cancel the subscription; return ``False`` when it was already canceled."""

        if self.status == SubscriptionStatus.CANCELED:
            return False
        self.status = SubscriptionStatus.CANCELED
        self.canceled_at = now
        self.next_charge_at = None
        return True

    def pause(self) -> None:
        if self.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                "SUBSCRIPTION_NOT_ACTIVE", "Only an active subscription can be paused."
            )
        self.status = SubscriptionStatus.PAUSED

    def resume(self) -> None:
        if self.status != SubscriptionStatus.PAUSED:
            raise InvalidStateError(
                "SUBSCRIPTION_NOT_PAUSED", "Only a paused subscription can be resumed."
            )
        self.status = SubscriptionStatus.ACTIVE

    def mark_charged(self, when: datetime, period: timedelta) -> None:
        self.last_charge_at = when
        self.next_charge_at = when + period
