"""ORM models package."""
from .animal import Animal
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .donation import Donation, DonationStatus, DonationTarget, GuardianshipDonation
from .guardianship import Guardianship, GuardianshipStatus
from .payment_method import PaymentMethod
from .payment_subscription import PaymentSubscription, SubscriptionScope, SubscriptionStatus
from .psp_webhook import PSPWebhookEvent
from .scheduler_lock import SchedulerLock
from .user import User

__all__ = [
    "Animal",
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "Donation",
    "DonationStatus",
    "DonationTarget",
    "Guardianship",
    "GuardianshipDonation",
    "GuardianshipStatus",
    "PaymentMethod",
    "PaymentSubscription",
    "PSPWebhookEvent",
    "SchedulerLock",
    "SubscriptionScope",
    "SubscriptionStatus",
    "User",
]
