"""String enums for billing state stored in the database."""

from enum import Enum


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class CreditEntryType(str, Enum):
    """Types of credit ledger entries."""

    BONUS = "bonus"
    GRANT = "grant"
    PURCHASE = "purchase"
    USED = "used"
    ADJUSTMENT = "adjustment"


class PaymentStatus(str, Enum):
    """Outcome of a provider payment attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RevenueEventType(str, Enum):
    """Revenue event categories used by financial reporting."""

    SUBSCRIPTION = "subscription"
    OVERAGE = "overage"
    CREDIT_PURCHASE = "credit_purchase"
    CREDIT_USAGE = "credit_usage"


class PeriodType(str, Enum):
    """Reporting period granularity for snapshots and comparisons."""

    DAILY = "daily"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
