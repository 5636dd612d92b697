"""Billing models: products, subscriptions, credit ledger, usage counters."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class SubscriptionProduct(Base):
    """Plan definition with its quota limits and pricing.

    Limits are nullable; NULL means unlimited. Products are never deleted,
    only deactivated.
    """

    __tablename__ = "subscription_products"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)

    # Quota limits (NULL = unlimited)
    monthly_image_limit: Mapped[int | None] = mapped_column(Integer)
    monthly_cost_limit: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    daily_image_limit: Mapped[int | None] = mapped_column(Integer)

    # Credits granted when the product is assigned
    bonus_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Pricing (stored as cents to avoid floating point issues)
    price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    overage_price_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class UserSubscription(Base):
    """Time-boxed grant of a product to a user.

    A row is open while ends_at is NULL. The partial unique index keeps at most
    one open row per user no matter which code path writes it.
    """

    __tablename__ = "user_subscriptions"
    __table_args__ = (
        Index(
            "uq_user_subscriptions_open",
            "user_id",
            unique=True,
            postgresql_where=text("ends_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("subscription_products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    starts_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    status: Mapped[str] = mapped_column(
        String(50),
        default="active",
        nullable=False,
        index=True,
    )  # active, trialing, past_due, canceled

    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class CreditEntry(Base):
    """Append-only signed credit adjustment. Balance is SUM(amount)."""

    __tablename__ = "credit_entries"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False)  # bonus, grant, purchase, used
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class UsageMonthly(Base):
    """Monthly usage counter per user, keyed by YYYY-MM in UTC."""

    __tablename__ = "usage_monthly"
    __table_args__ = (UniqueConstraint("user_id", "year_month", name="uq_usage_monthly_user_month"),)

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Charge-time estimate, never the reconciled actual cost
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=Decimal(0), nullable=False)
    used_own_key: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class UsageDaily(Base):
    """Daily image counter per user, keyed by UTC calendar date."""

    __tablename__ = "usage_daily"
    __table_args__ = (UniqueConstraint("user_id", "usage_date", name="uq_usage_daily_user_date"),)

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    image_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class StripeCustomer(Base):
    """Mapping between a user and their Stripe customer."""

    __tablename__ = "stripe_customers"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    stripe_customer_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
