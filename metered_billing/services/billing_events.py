"""Stripe webhook event processing.

Signature verification runs first and fails closed. After that every
handler failure is logged and absorbed so Stripe always gets an
acknowledgement; upserts keyed on Stripe ids make redelivery harmless.
"""

import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import stripe
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import settings
from metered_billing.database.models import (
    PaymentStatus,
    RevenueEventType,
    SubscriptionStatus,
)
from metered_billing.exceptions import WebhookSignatureError
from metered_billing.services.stripe_billing import (
    get_user_id_by_customer,
    mark_churned,
    record_payment,
    record_revenue_event,
    timestamp_to_date,
    timestamp_to_datetime,
    update_user_metrics,
)
from metered_billing.services.subscriptions import (
    cancel_by_external_ref,
    get_product_by_price_id,
    mark_past_due,
    update_user_subscription,
)

logger = structlog.get_logger()

StripeEvent = dict[str, Any]
EventHandler = Callable[[AsyncSession, StripeEvent], Awaitable[None]]

# Stripe subscription statuses that have no direct local equivalent
_STATUS_MAP = {
    "unpaid": SubscriptionStatus.PAST_DUE.value,
    "incomplete": SubscriptionStatus.PAST_DUE.value,
    "paused": SubscriptionStatus.PAST_DUE.value,
    "incomplete_expired": SubscriptionStatus.CANCELED.value,
}
_KNOWN_STATUSES = {status.value for status in SubscriptionStatus}


def verify_event(payload: bytes, signature: str | None, secret: str | None = None) -> StripeEvent:
    """Verify the signature over the raw body and return the parsed event.

    Raises:
        WebhookSignatureError: missing or invalid signature, or unparseable body.
    """
    secret = secret or settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookSignatureError("webhook secret not configured")
    if not signature:
        raise WebhookSignatureError("missing signature header")
    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        raise WebhookSignatureError("invalid payload") from e
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError("signature mismatch") from e
    event: StripeEvent = json.loads(payload)
    return event


def map_subscription_status(stripe_status: str | None) -> str:
    if not stripe_status:
        return SubscriptionStatus.ACTIVE.value
    if stripe_status in _STATUS_MAP:
        return _STATUS_MAP[stripe_status]
    if stripe_status in _KNOWN_STATUSES:
        return stripe_status
    return SubscriptionStatus.ACTIVE.value


def payment_type_for(billing_reason: str | None) -> str:
    """Manual invoices are one-off credit purchases, the rest are subscription charges."""
    if billing_reason == "manual":
        return RevenueEventType.CREDIT_PURCHASE.value
    return RevenueEventType.SUBSCRIPTION.value


def _event_object(event: StripeEvent) -> dict[str, Any]:
    obj: dict[str, Any] = event["data"]["object"]
    return obj


async def _resolve_user(db: AsyncSession, obj: dict[str, Any]) -> str | None:
    customer_id = obj.get("customer")
    if not customer_id:
        return None
    user_id = await get_user_id_by_customer(db, customer_id)
    if user_id is None:
        logger.warning("No user for Stripe customer", customer_id=customer_id)
    return user_id


# =============================================================================
# EVENT HANDLERS
# =============================================================================


async def handle_invoice_paid(db: AsyncSession, event: StripeEvent) -> None:
    """Record the payment, its revenue event and the user's running totals."""
    invoice = _event_object(event)
    user_id = await _resolve_user(db, invoice)
    if user_id is None:
        return

    amount_cents = int(invoice.get("amount_paid") or 0)
    billing_reason = invoice.get("billing_reason")
    payment_type = payment_type_for(billing_reason)
    description = invoice.get("description") or f"Invoice {invoice.get('number')}"

    payment_id, inserted = await record_payment(
        db,
        user_id,
        stripe_invoice_id=invoice["id"],
        stripe_payment_intent_id=invoice.get("payment_intent"),
        amount_cents=amount_cents,
        currency=invoice.get("currency") or "usd",
        status=PaymentStatus.SUCCEEDED.value,
        payment_type=payment_type,
        description=description,
        metadata={"billing_reason": billing_reason},
    )
    await record_revenue_event(
        db,
        user_id,
        payment_id,
        event_type=payment_type,
        amount_cents=amount_cents,
        description=description,
        period_start=timestamp_to_date(invoice.get("period_start")),
        period_end=timestamp_to_date(invoice.get("period_end")),
    )

    if not inserted:
        logger.info("Invoice already recorded", invoice_id=invoice["id"], user_id=user_id)
        return

    paid_at = timestamp_to_datetime((invoice.get("status_transitions") or {}).get("paid_at"))
    await update_user_metrics(db, user_id, amount_cents, paid_at or datetime.now(UTC))
    logger.info(
        "Recorded payment",
        user_id=user_id,
        invoice_id=invoice["id"],
        amount_cents=amount_cents,
        payment_type=payment_type,
    )


async def handle_invoice_payment_failed(db: AsyncSession, event: StripeEvent) -> None:
    """Record the failed attempt and move the open subscription to past_due."""
    invoice = _event_object(event)
    user_id = await _resolve_user(db, invoice)
    if user_id is None:
        return

    _, inserted = await record_payment(
        db,
        user_id,
        stripe_invoice_id=invoice["id"],
        stripe_payment_intent_id=invoice.get("payment_intent"),
        amount_cents=int(invoice.get("amount_due") or 0),
        currency=invoice.get("currency") or "usd",
        status=PaymentStatus.FAILED.value,
        payment_type=payment_type_for(invoice.get("billing_reason")),
        description=f"Failed: Invoice {invoice.get('number')}",
        metadata={"billing_reason": invoice.get("billing_reason")},
    )
    updated = await mark_past_due(db, user_id)
    logger.warning(
        "Invoice payment failed",
        user_id=user_id,
        invoice_id=invoice["id"],
        new_failure=inserted,
        subscriptions_past_due=updated,
    )


def _period_bounds(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    # Newer API versions carry the billing period on the subscription items
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    items = (subscription.get("items") or {}).get("data") or []
    if items and start is None:
        start = items[0].get("current_period_start")
    if items and end is None:
        end = items[0].get("current_period_end")
    return timestamp_to_datetime(start), timestamp_to_datetime(end)


async def handle_subscription_upsert(db: AsyncSession, event: StripeEvent) -> None:
    """customer.subscription.created / updated."""
    subscription = _event_object(event)
    user_id = await _resolve_user(db, subscription)
    if user_id is None:
        return

    items = (subscription.get("items") or {}).get("data") or []
    price_id = items[0]["price"]["id"] if items else None
    if not price_id:
        logger.warning("Subscription has no price", stripe_subscription_id=subscription["id"])
        return

    product = await get_product_by_price_id(db, price_id)
    if product is None:
        logger.warning("No product for Stripe price", price_id=price_id)
        return

    period_start, period_end = _period_bounds(subscription)
    await update_user_subscription(
        db,
        user_id,
        product.id,
        external_ref=subscription["id"],
        status=map_subscription_status(subscription.get("status")),
        period_start=period_start,
        period_end=period_end,
    )


async def handle_subscription_deleted(db: AsyncSession, event: StripeEvent) -> None:
    """Cancel the local subscription and record churn."""
    stripe_subscription = _event_object(event)
    now = datetime.now(UTC)
    subscription = await cancel_by_external_ref(db, stripe_subscription["id"], now)
    if subscription is None:
        logger.warning(
            "Deleted subscription not found locally",
            stripe_subscription_id=stripe_subscription["id"],
        )
        return

    await mark_churned(db, subscription.user_id, now)
    logger.info(
        "Subscription canceled",
        user_id=subscription.user_id,
        stripe_subscription_id=stripe_subscription["id"],
    )


async def handle_checkout_session_completed(db: AsyncSession, event: StripeEvent) -> None:
    """Log only. The subscription arrives in its own created event."""
    session = _event_object(event)
    logger.info(
        "Checkout completed",
        user_id=(session.get("metadata") or {}).get("user_id"),
        checkout_session_id=session.get("id"),
        stripe_subscription_id=session.get("subscription"),
    )


# =============================================================================
# WEBHOOK HANDLER REGISTRY
# =============================================================================

WEBHOOK_HANDLERS: dict[str, EventHandler] = {
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.created": handle_subscription_upsert,
    "customer.subscription.updated": handle_subscription_upsert,
    "customer.subscription.deleted": handle_subscription_deleted,
    "checkout.session.completed": handle_checkout_session_completed,
}


async def process_event(db: AsyncSession, event: StripeEvent) -> bool:
    """Apply a verified event. Returns True when a handler ran to completion.

    Each handler runs in a savepoint; a failure rolls back only its own
    writes and is logged, never raised.
    """
    event_type = event.get("type", "")
    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Unhandled webhook event", event_type=event_type, event_id=event.get("id"))
        return False

    try:
        async with db.begin_nested():
            await handler(db, event)
    except Exception:
        logger.exception(
            "Webhook handler failed",
            event_type=event_type,
            event_id=event.get("id"),
        )
        return False
    return True
