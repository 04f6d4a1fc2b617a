"""Guardianship ORM model."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum as SqlEnum, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class GuardianshipStatus(str, enum.Enum):
    """Lifecycle statuses for a guardianship."""

    REQUIRES_PAYMENT = "REQUIRES_PAYMENT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class Guardianship(Base):
    """A user's ongoing sponsorship of one animal."""

    __tablename__ = "guardianships"
    __table_args__ = (
        Index("ix_guardianships_status", "status"),
        Index("ix_guardianships_status_grace", "status", "grace_until"),
        Index(
            "uq_guardianships_active_pair",
            "user_id",
            "animal_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    animal_id: Mapped[int] = mapped_column(
        ForeignKey("animals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[GuardianshipStatus] = mapped_column(
        SqlEnum(GuardianshipStatus, name="guardianship_status"),
        nullable=False,
        default=GuardianshipStatus.REQUIRES_PAYMENT,
    )
    grace_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="guardianships")
    animal = relationship("Animal")
    donations = relationship(
        "GuardianshipDonation",
        back_populates="guardianship",
        order_by="GuardianshipDonation.id",
    )
