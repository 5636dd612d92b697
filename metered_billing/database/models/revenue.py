"""Revenue models: payments, revenue events, user metrics, period snapshots."""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, _generate_uuid


class Payment(Base):
    """One provider payment attempt. Append-only."""

    __tablename__ = "payments"
    __table_args__ = (
        # Redelivered invoice events collapse onto the same row
        UniqueConstraint("stripe_invoice_id", "status", name="uq_payments_invoice_status"),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd", nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    payment_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, default=dict, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class RevenueEvent(Base):
    """One billable event charged to a user, in cents. Append-only."""

    __tablename__ = "revenue_events"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        unique=True,
        index=True,
    )
    generation_id: Mapped[str | None] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("generations.id", ondelete="SET NULL"),
        index=True,
    )
    event_type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    period_start: Mapped[date | None] = mapped_column(Date)
    period_end: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )


class UserMetrics(Base):
    """Per-user lifetime figures for LTV and churn reporting only."""

    __tablename__ = "user_metrics"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    first_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    total_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    subscription_months: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    churned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)


class FinancialPeriodSnapshot(Base):
    """Denormalized rollup for one period. Derived, recomputed by upsert."""

    __tablename__ = "financial_periods"
    __table_args__ = (
        UniqueConstraint("period_type", "period_start", name="uq_financial_periods_type_start"),
    )

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_generate_uuid)
    period_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    period_start: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    total_revenue_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_platform_cost_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_generations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    new_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    churned_subscribers: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mrr_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
