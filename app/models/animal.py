"""Animal model (only the fields the guardianship engine touches)."""
from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Animal(Base):
    """An animal hosted by a shelter that donors can sponsor."""

    __tablename__ = "animals"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    is_under_care: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
