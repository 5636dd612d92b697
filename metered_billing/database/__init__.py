"""Database module for the billing service."""

from metered_billing.database.connection import Database, get_db
from metered_billing.database.models import (
    Base,
    CreditEntry,
    FinancialPeriodSnapshot,
    Generation,
    Payment,
    PlatformCost,
    RevenueEvent,
    StripeCustomer,
    SubscriptionProduct,
    UsageDaily,
    UsageMonthly,
    UserMetrics,
    UserSubscription,
)

__all__ = [
    "Base",
    "CreditEntry",
    "Database",
    "FinancialPeriodSnapshot",
    "Generation",
    "Payment",
    "PlatformCost",
    "RevenueEvent",
    "StripeCustomer",
    "SubscriptionProduct",
    "UsageDaily",
    "UsageMonthly",
    "UserMetrics",
    "UserSubscription",
    "get_db",
]
