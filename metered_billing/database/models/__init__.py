"""Database models."""

from .base import Base
from .billing import (
    CreditEntry,
    StripeCustomer,
    SubscriptionProduct,
    UsageDaily,
    UsageMonthly,
    UserSubscription,
)
from .enums import (
    CreditEntryType,
    PaymentStatus,
    PeriodType,
    RevenueEventType,
    SubscriptionStatus,
)
from .generation import Generation, PlatformCost
from .revenue import FinancialPeriodSnapshot, Payment, RevenueEvent, UserMetrics

__all__ = [
    "Base",
    "CreditEntry",
    "CreditEntryType",
    "FinancialPeriodSnapshot",
    "Generation",
    "Payment",
    "PaymentStatus",
    "PeriodType",
    "PlatformCost",
    "RevenueEvent",
    "RevenueEventType",
    "StripeCustomer",
    "SubscriptionProduct",
    "SubscriptionStatus",
    "UsageDaily",
    "UsageMonthly",
    "UserMetrics",
    "UserSubscription",
]
