"""Donation ledger models."""
from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class DonationStatus(str, enum.Enum):
    """Outcome of a single charge attempt."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DonationTarget(str, enum.Enum):
    """What a charge was earmarked for."""

    GLOBAL = "GLOBAL"
    AID_REQUEST = "AID_REQUEST"
    GUARDIANSHIP = "GUARDIANSHIP"


class Donation(Base):
    """One charge attempt reported by the payment provider.

    Rows are append-only: retried or out-of-order provider callbacks each add a
    new row instead of updating an earlier one.
    """

    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_donation_positive_amount"),
        Index("ix_donations_target", "target_entity", "target_entity_id"),
        Index("ix_donations_donation_date", "donation_date"),
    )

    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    payment_method_id: Mapped[int] = mapped_column(ForeignKey("payment_methods.id"), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="UAH")
    status: Mapped[DonationStatus] = mapped_column(
        SqlEnum(DonationStatus, name="donation_status"), nullable=False, default=DonationStatus.PENDING
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    target_entity: Mapped[DonationTarget | None] = mapped_column(
        SqlEnum(DonationTarget, name="donation_target"), nullable=True
    )
    target_entity_id: Mapped[int | None] = mapped_column(nullable=True)
    purpose: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    anonymous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    donation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payment_method = relationship("PaymentMethod")
    guardianship_links = relationship("GuardianshipDonation", back_populates="donation")


class GuardianshipDonation(Base):
    """Explicit link attributing a donation to a guardianship."""

    __tablename__ = "guardianship_donations"
    __table_args__ = (
        UniqueConstraint("guardianship_id", "donation_id", name="uq_guardianship_donation_pair"),
    )

    guardianship_id: Mapped[int] = mapped_column(ForeignKey("guardianships.id"), nullable=False, index=True)
    donation_id: Mapped[int] = mapped_column(ForeignKey("donations.id"), nullable=False, index=True)

    guardianship = relationship("Guardianship", back_populates="donations")
    donation = relationship("Donation", back_populates="guardianship_links")
