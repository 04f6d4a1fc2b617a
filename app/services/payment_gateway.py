"""Recurring-charge gateway abstraction and its Stripe / in-process implementations."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

import stripe

from app.config import Settings, get_settings
from app.models.payment_subscription import SubscriptionScope
from app.utils.errors import ExternalProviderError

logger = logging.getLogger(__name__)


def _to_cents(amount: Decimal) -> int:
    """Convert a decimal amount to the smallest currency unit expected by Stripe."""

    normalized = Decimal(str(amount)).quantize(Decimal("0.01"))
    return int((normalized * 100).to_integral_value())


class PaymentGateway(Protocol):
    """Operations the subscription manager needs from a payment provider."""

    provider_name: str

    def create_recurring_charge(
        self,
        *,
        user_id: int | None,
        scope: SubscriptionScope,
        scope_id: int | None,
        amount: Decimal,
        currency: str,
    ) -> str:
        """Register a recurring charge and return the provider subscription id."""

    def cancel_recurring_charge(self, provider_subscription_id: str) -> None:
        """Stop a recurring charge at the provider."""


class StubPaymentGateway:
    """In-process gateway for development and manual bookkeeping; it only logs."""

    def __init__(self, provider_name: str = "LiqPay") -> None:
        self.provider_name = provider_name

    def create_recurring_charge(
        self,
        *,
        user_id: int | None,
        scope: SubscriptionScope,
        scope_id: int | None,
        amount: Decimal,
        currency: str,
    ) -> str:
        provider_subscription_id = f"sub_{uuid4().hex}"
        logger.info(
            "Stub recurring charge created",
            extra={
                "scope": scope.value,
                "scope_id": scope_id,
                "user_id": user_id,
                "amount": str(amount),
                "currency": currency,
            },
        )
        return provider_subscription_id

    def cancel_recurring_charge(self, provider_subscription_id: str) -> None:
        logger.info("Stub recurring charge canceled", extra={"provider_subscription_id": provider_subscription_id})


class StripePaymentGateway:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    provider_name = "Stripe"

    def __init__(self, settings: Settings) -> None:
        """Initialise the client and set the API key when enabled."""

        self.settings = settings
        if not settings.STRIPE_ENABLED:
            raise RuntimeError("Stripe integration is disabled; enable STRIPE_ENABLED to proceed.")
        if not settings.STRIPE_SECRET_KEY:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")
        stripe.api_key = settings.STRIPE_SECRET_KEY

    def create_recurring_charge(
        self,
        *,
        user_id: int | None,
        scope: SubscriptionScope,
        scope_id: int | None,
        amount: Decimal,
        currency: str,
    ) -> str:
        metadata = {
            "scope": scope.value,
            "scope_id": "" if scope_id is None else str(scope_id),
            "user_id": "" if user_id is None else str(user_id),
        }
        try:
            customer = stripe.Customer.create(metadata=metadata)
            subscription = stripe.Subscription.create(
                customer=customer["id"],
                items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": _to_cents(amount),
                            "recurring": {"interval": "month"},
                            "product_data": {"name": f"PetCare {scope.value.lower()} donation"},
                        }
                    }
                ],
                metadata=metadata,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe subscription creation failed", exc_info=True, extra=metadata)
            raise ExternalProviderError(
                "PAYMENT_PROVIDER_ERROR",
                "Payment provider rejected the recurring charge.",
                {"provider": self.provider_name, "reason": str(exc)},
            ) from exc
        return subscription["id"]

    def cancel_recurring_charge(self, provider_subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(provider_subscription_id)
        except stripe.StripeError as exc:
            logger.error("Stripe subscription cancel failed", exc_info=True)
            raise ExternalProviderError(
                "PAYMENT_PROVIDER_ERROR",
                "Payment provider could not cancel the recurring charge.",
                {"provider": self.provider_name, "reason": str(exc)},
            ) from exc


_default_gateway: PaymentGateway | None = None


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    settings = settings or get_settings()
    if settings.PAYMENT_GATEWAY == "stripe":
        return StripePaymentGateway(settings)
    return StubPaymentGateway(settings.PAYMENT_PROVIDER_NAME)


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the process-wide payment gateway."""

    global _default_gateway
    if _default_gateway is None:
        _default_gateway = build_payment_gateway()
    return _default_gateway


__all__ = [
    "PaymentGateway",
    "StubPaymentGateway",
    "StripePaymentGateway",
    "build_payment_gateway",
    "get_payment_gateway",
]
