"""Payment method registry model."""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PaymentMethod(Base):
    """Maps a payment provider name (``LiqPay``, ``Stripe``...) to an internal id."""

    __tablename__ = "payment_methods"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
