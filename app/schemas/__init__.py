"""Schema package exports."""
from .donation import DonationRead
from .guardianship import (
    GuardianshipActivate,
    GuardianshipComplete,
    GuardianshipCreate,
    GuardianshipDetail,
    GuardianshipRead,
    GuardianshipRequirePayment,
    LinkedDonationRead,
)
from .payment_method import PaymentMethodCreate, PaymentMethodRead, PaymentMethodUpdate
from .reconciliation import ReconciliationRequest, ReconciliationResult
from .subscription import ExpectedPaymentRead, SubscriptionCreate, SubscriptionRead

__all__ = [
    "DonationRead",
    "ExpectedPaymentRead",
    "GuardianshipActivate",
    "GuardianshipComplete",
    "GuardianshipCreate",
    "GuardianshipDetail",
    "GuardianshipRead",
    "GuardianshipRequirePayment",
    "LinkedDonationRead",
    "PaymentMethodCreate",
    "PaymentMethodRead",
    "PaymentMethodUpdate",
    "ReconciliationRequest",
    "ReconciliationResult",
    "SubscriptionCreate",
    "SubscriptionRead",
]
