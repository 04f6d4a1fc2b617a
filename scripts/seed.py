"""Seed reference data and a demo donor for local PetCare development."""
from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select

from app import models
from app.config import get_settings
from app.db import get_sessionmaker, init_engine

PAYMENT_METHODS = ("LiqPay", "Stripe", "Monobank")


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    init_engine()
    session = get_sessionmaker()()

    try:
        existing = set(session.scalars(select(models.PaymentMethod.name)).all())
        session.add_all(models.PaymentMethod(name=name) for name in PAYMENT_METHODS if name not in existing)

        if session.scalars(select(models.User).where(models.User.username == "olena")).first() is None:
            session.add(models.User(username="olena", email="olena@example.com"))
        if session.scalars(select(models.Animal).where(models.Animal.slug == "barsik")).first() is None:
            session.add(models.Animal(name="Barsik", slug="barsik"))
        session.commit()
        print("Seed data inserted.")
    finally:
        session.close()


if __name__ == "__main__":
    main()
