"""Stripe-facing billing: customers, checkout, portal, payment records.

Payments, revenue events and user metrics are written with upserts keyed
on Stripe identifiers so a redelivered webhook lands on the same rows.
"""

from datetime import UTC, date, datetime
from typing import Any

import stripe
import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import settings
from metered_billing.database.models import (
    Payment,
    PaymentStatus,
    RevenueEvent,
    StripeCustomer,
    SubscriptionProduct,
    UserMetrics,
)
from metered_billing.exceptions import (
    InvalidBillingInputError,
    NotFoundError,
    PaymentProviderError,
    PaymentProviderNotConfiguredError,
)
from metered_billing.services.subscriptions import get_active_subscription
from metered_billing.services.usage import get_monthly_usage, year_month_for

logger = structlog.get_logger()

# Average month length for lifetime estimates
DAYS_PER_MONTH = 30.44
RECENT_PAYMENTS_LIMIT = 5


def _ensure_configured() -> None:
    if not settings.STRIPE_SECRET_KEY:
        raise PaymentProviderNotConfiguredError
    stripe.api_key = settings.STRIPE_SECRET_KEY


def timestamp_to_datetime(value: int | None) -> datetime | None:
    """Stripe epoch seconds to an aware UTC datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def timestamp_to_date(value: int | None) -> date | None:
    moment = timestamp_to_datetime(value)
    return moment.date() if moment else None


# =============================================================================
# CUSTOMERS
# =============================================================================


async def get_user_id_by_customer(db: AsyncSession, stripe_customer_id: str) -> str | None:
    result = await db.execute(
        select(StripeCustomer.user_id).where(
            StripeCustomer.stripe_customer_id == stripe_customer_id
        )
    )
    return result.scalar_one_or_none()


async def get_customer_id(db: AsyncSession, user_id: str) -> str | None:
    result = await db.execute(
        select(StripeCustomer.stripe_customer_id).where(StripeCustomer.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_stripe_customer(
    db: AsyncSession,
    user_id: str,
    email: str | None = None,
) -> str:
    """Stripe customer id for the user, creating the customer on first use."""
    existing = await get_customer_id(db, user_id)
    if existing:
        return existing

    _ensure_configured()
    try:
        customer = stripe.Customer.create(
            email=email,
            metadata={"user_id": user_id},
        )
    except stripe.StripeError as e:
        logger.exception("Failed to create Stripe customer", user_id=user_id)
        raise PaymentProviderError("create_customer", str(e)) from e

    await db.execute(
        pg_insert(StripeCustomer)
        .values(user_id=user_id, stripe_customer_id=str(customer.id))
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    # A concurrent request may have won the insert; its customer is the one we keep
    customer_id = await get_customer_id(db, user_id)
    logger.info("Stripe customer linked", user_id=user_id, stripe_customer_id=customer_id)
    return customer_id or str(customer.id)


async def create_checkout_session(
    db: AsyncSession,
    user_id: str,
    email: str | None,
    price_id: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> str:
    """Start a subscription checkout. Returns the hosted checkout URL."""
    result = await db.execute(
        select(SubscriptionProduct.id).where(
            SubscriptionProduct.stripe_price_id == price_id,
            SubscriptionProduct.is_active.is_(True),
        )
    )
    if result.scalar_one_or_none() is None:
        raise InvalidBillingInputError("price_id", "does not match an active product")

    customer_id = await get_or_create_stripe_customer(db, user_id, email)
    try:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url or f"{settings.FRONTEND_URL}/billing?checkout=success",
            cancel_url=cancel_url or f"{settings.FRONTEND_URL}/billing?checkout=canceled",
            metadata={"user_id": user_id},
            subscription_data={"metadata": {"user_id": user_id}},
        )
    except stripe.StripeError as e:
        logger.exception("Failed to create checkout session", user_id=user_id)
        raise PaymentProviderError("create_checkout_session", str(e)) from e

    logger.info("Checkout session created", user_id=user_id, price_id=price_id)
    return str(session.url)


async def create_portal_session(
    db: AsyncSession,
    user_id: str,
    return_url: str | None = None,
) -> str:
    """Customer portal URL for managing payment methods and plans."""
    customer_id = await get_customer_id(db, user_id)
    if not customer_id:
        raise NotFoundError("No billing account for this user")

    _ensure_configured()
    try:
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url or f"{settings.FRONTEND_URL}/billing",
        )
    except stripe.StripeError as e:
        logger.exception("Failed to create portal session", user_id=user_id)
        raise PaymentProviderError("create_portal_session", str(e)) from e
    return str(session.url)


def _live_period(subscription: Any) -> tuple[datetime | None, datetime | None]:
    start = getattr(subscription, "current_period_start", None)
    end = getattr(subscription, "current_period_end", None)
    if (start is None or end is None) and "items" in subscription:
        # Newer API versions carry the billing period on the subscription items
        items = subscription["items"].data
        if items:
            start = start or getattr(items[0], "current_period_start", None)
            end = end or getattr(items[0], "current_period_end", None)
    return timestamp_to_datetime(start), timestamp_to_datetime(end)


async def list_invoices(db: AsyncSession, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
    """The customer's most recent Stripe invoices. Empty without a customer."""
    _ensure_configured()
    customer_id = await get_customer_id(db, user_id)
    if not customer_id:
        return []

    try:
        invoices = stripe.Invoice.list(customer=customer_id, limit=limit)
    except stripe.StripeError as e:
        logger.exception("Failed to list invoices", user_id=user_id)
        raise PaymentProviderError("list_invoices", str(e)) from e

    return [
        {
            "id": invoice.id,
            "number": invoice.number,
            "amount": (invoice.amount_paid or 0) / 100,
            "currency": invoice.currency,
            "status": invoice.status,
            "date": timestamp_to_datetime(invoice.created),
            "pdf_url": invoice.invoice_pdf,
            "hosted_url": invoice.hosted_invoice_url,
        }
        for invoice in invoices.data
    ]


async def get_live_subscription(db: AsyncSession, user_id: str) -> dict[str, Any] | None:
    """The customer's active subscription as Stripe sees it, or None."""
    _ensure_configured()
    customer_id = await get_customer_id(db, user_id)
    if not customer_id:
        return None

    try:
        subscriptions = stripe.Subscription.list(customer=customer_id, status="active", limit=1)
    except stripe.StripeError as e:
        logger.exception("Failed to fetch Stripe subscription", user_id=user_id)
        raise PaymentProviderError("list_subscriptions", str(e)) from e

    if not subscriptions.data:
        return None
    subscription = subscriptions.data[0]
    period_start, period_end = _live_period(subscription)
    return {
        "id": subscription.id,
        "status": subscription.status,
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
        "current_period_start": period_start,
        "current_period_end": period_end,
    }


# =============================================================================
# PAYMENTS AND REVENUE
# =============================================================================


async def record_payment(
    db: AsyncSession,
    user_id: str,
    stripe_invoice_id: str | None,
    amount_cents: int,
    status: str,
    payment_type: str,
    stripe_payment_intent_id: str | None = None,
    currency: str = "usd",
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> tuple[str, bool]:
    """Insert the payment unless this (invoice, status) is already recorded.

    Returns (payment_id, inserted).
    """
    stmt = (
        pg_insert(Payment)
        .values(
            {
                Payment.user_id: user_id,
                Payment.stripe_invoice_id: stripe_invoice_id,
                Payment.stripe_payment_intent_id: stripe_payment_intent_id,
                Payment.amount_cents: amount_cents,
                Payment.currency: currency or "usd",
                Payment.status: status,
                Payment.payment_type: payment_type,
                Payment.description: description,
                # Attribute key, the column itself is named "metadata"
                Payment.payment_metadata: metadata or {},
            }
        )
        .on_conflict_do_nothing(constraint="uq_payments_invoice_status")
        .returning(Payment.id)
    )
    result = await db.execute(stmt)
    payment_id = result.scalar_one_or_none()
    if payment_id is not None:
        return payment_id, True

    existing = await db.execute(
        select(Payment.id).where(
            Payment.stripe_invoice_id == stripe_invoice_id,
            Payment.status == status,
        )
    )
    return existing.scalar_one(), False


async def record_revenue_event(
    db: AsyncSession,
    user_id: str,
    payment_id: str,
    event_type: str,
    amount_cents: int,
    description: str | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
) -> None:
    """One revenue event per payment."""
    await db.execute(
        pg_insert(RevenueEvent)
        .values(
            user_id=user_id,
            payment_id=payment_id,
            event_type=event_type,
            amount_cents=amount_cents,
            description=description,
            period_start=period_start,
            period_end=period_end,
        )
        .on_conflict_do_nothing(index_elements=["payment_id"])
    )


async def update_user_metrics(
    db: AsyncSession,
    user_id: str,
    amount_cents: int,
    paid_at: datetime,
) -> None:
    """Add a payment to the user's lifetime figures."""
    stmt = pg_insert(UserMetrics).values(
        user_id=user_id,
        first_payment_at=paid_at,
        last_payment_at=paid_at,
        total_paid_cents=amount_cents,
    )
    await db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={
                "first_payment_at": func.coalesce(
                    UserMetrics.first_payment_at, stmt.excluded.first_payment_at
                ),
                "last_payment_at": stmt.excluded.last_payment_at,
                "total_paid_cents": UserMetrics.total_paid_cents + stmt.excluded.total_paid_cents,
            },
        )
    )


def subscription_months(first_payment_at: datetime | None, churned_at: datetime) -> int:
    """Whole months between first payment and churn, at least 1 once paid."""
    if first_payment_at is None:
        return 0
    days = (churned_at - first_payment_at).total_seconds() / 86400
    return max(1, round(days / DAYS_PER_MONTH))


async def mark_churned(db: AsyncSession, user_id: str, churned_at: datetime) -> None:
    """Stamp churn and the lifetime it ended."""
    metrics = await db.get(UserMetrics, user_id, with_for_update=True)
    if metrics is None:
        metrics = UserMetrics(user_id=user_id, total_paid_cents=0, subscription_months=0)
        db.add(metrics)
    metrics.churned_at = churned_at
    metrics.subscription_months = subscription_months(metrics.first_payment_at, churned_at)
    await db.flush()


# =============================================================================
# SUMMARY
# =============================================================================


async def get_billing_summary(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Plan, this month's usage and payment history, all from local tables."""
    now = now or datetime.now(UTC)
    active = await get_active_subscription(db, user_id, now)
    usage = await get_monthly_usage(db, user_id, year_month_for(now))
    metrics = await db.get(UserMetrics, user_id)

    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id, Payment.status == PaymentStatus.SUCCEEDED.value)
        .order_by(Payment.created_at.desc())
        .limit(RECENT_PAYMENTS_LIMIT)
    )
    payments = result.scalars().all()

    subscription = None
    if active is not None:
        product = active.product
        subscription = {
            "id": active.subscription.id,
            "status": active.subscription.status,
            "plan_name": product.name,
            "price_cents": product.price_cents,
            "monthly_image_limit": product.monthly_image_limit,
            "monthly_cost_limit": (
                float(product.monthly_cost_limit)
                if product.monthly_cost_limit is not None
                else None
            ),
            "period_start": active.subscription.current_period_start,
            "period_end": active.subscription.current_period_end,
        }

    return {
        "subscription": subscription,
        "usage": {
            "image_count": usage.image_count if usage else 0,
            "total_cost": float(usage.total_cost) if usage else 0.0,
        },
        "total_spent_cents": metrics.total_paid_cents if metrics else 0,
        "recent_payments": [
            {
                "id": p.id,
                "amount": p.amount_cents / 100,
                "currency": p.currency,
                "status": p.status,
                "type": p.payment_type,
                "description": p.description,
                "date": p.created_at,
            }
            for p in payments
        ],
        "has_stripe_customer": await get_customer_id(db, user_id) is not None,
    }
