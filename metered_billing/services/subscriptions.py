"""Subscription lifecycle with one open subscription per user.

Two paths write subscriptions:
- operator/user assignment (``assign_subscription``), which also backs
  default-plan provisioning of first-time users (``provision_user``)
- payment provider sync (``update_user_subscription``)

Both close every other open row for the user before inserting, and the
partial unique index ``uq_user_subscriptions_open`` rejects a second open
row whichever path produced it.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import ColumnElement, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import settings
from metered_billing.database.models import (
    CreditEntryType,
    SubscriptionProduct,
    SubscriptionStatus,
    UserSubscription,
)
from metered_billing.exceptions import ProductNotFoundError, SubscriptionConflictError
from metered_billing.services.credits import add_credits

logger = structlog.get_logger()

WELCOME_BONUS_REASON = "Subscription welcome bonus"


@dataclass
class ActiveSubscription:
    """An open subscription row together with its product."""

    subscription: UserSubscription
    product: SubscriptionProduct


def _is_open(now: datetime) -> ColumnElement[bool]:
    return or_(UserSubscription.ends_at.is_(None), UserSubscription.ends_at > now)


async def get_active_subscription(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> ActiveSubscription | None:
    """The user's open subscription, whatever its provider status."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(UserSubscription, SubscriptionProduct)
        .join(SubscriptionProduct, UserSubscription.product_id == SubscriptionProduct.id)
        .where(UserSubscription.user_id == user_id, _is_open(now))
        .order_by(UserSubscription.starts_at.desc())
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None
    return ActiveSubscription(subscription=row[0], product=row[1])


async def get_product(db: AsyncSession, product_id: str) -> SubscriptionProduct | None:
    result = await db.execute(
        select(SubscriptionProduct).where(SubscriptionProduct.id == product_id)
    )
    return result.scalar_one_or_none()


async def get_product_by_price_id(
    db: AsyncSession,
    stripe_price_id: str,
) -> SubscriptionProduct | None:
    result = await db.execute(
        select(SubscriptionProduct).where(SubscriptionProduct.stripe_price_id == stripe_price_id)
    )
    return result.scalar_one_or_none()


async def _close_open_subscriptions(
    db: AsyncSession,
    user_id: str,
    now: datetime,
) -> int:
    """Set ends_at = now on every open row for the user."""
    stmt = (
        update(UserSubscription)
        .where(UserSubscription.user_id == user_id, _is_open(now))
        .values(ends_at=now)
    )
    result = await db.execute(stmt)
    return result.rowcount or 0


async def _insert_subscription(
    db: AsyncSession,
    subscription: UserSubscription,
) -> UserSubscription:
    """Insert inside a savepoint so an open-row collision surfaces as a conflict."""
    try:
        async with db.begin_nested():
            db.add(subscription)
            await db.flush()
    except IntegrityError as e:
        logger.warning("Open subscription already exists", user_id=subscription.user_id)
        raise SubscriptionConflictError(subscription.user_id) from e
    return subscription


async def assign_subscription(
    db: AsyncSession,
    user_id: str,
    product_id: str,
    now: datetime | None = None,
) -> UserSubscription:
    """Close every open subscription for the user, then start the new one.

    Grants the product's bonus credits, if any, as a welcome bonus.
    Retired (inactive) products are treated as missing.
    """
    now = now or datetime.now(UTC)
    product = await get_product(db, product_id)
    if product is None or not product.is_active:
        raise ProductNotFoundError(product_id)

    closed = await _close_open_subscriptions(db, user_id, now)
    subscription = await _insert_subscription(
        db,
        UserSubscription(
            user_id=user_id,
            product_id=product.id,
            status=SubscriptionStatus.ACTIVE.value,
            starts_at=now,
            ends_at=None,
        ),
    )

    if product.bonus_credits > 0:
        await add_credits(
            db,
            user_id,
            CreditEntryType.BONUS,
            product.bonus_credits,
            WELCOME_BONUS_REASON,
        )

    logger.info(
        "Subscription assigned",
        user_id=user_id,
        product=product.name,
        closed_previous=closed,
        bonus_credits=product.bonus_credits,
    )
    return subscription


async def assign_default_subscription(
    db: AsyncSession,
    user_id: str,
    plan_name: str | None = None,
) -> UserSubscription | None:
    """Assign the zero-cost tier. No-op when it is missing or inactive."""
    plan_name = plan_name or settings.DEFAULT_PLAN_NAME
    result = await db.execute(
        select(SubscriptionProduct)
        .where(SubscriptionProduct.name == plan_name, SubscriptionProduct.is_active.is_(True))
        .limit(1)
    )
    product = result.scalar_one_or_none()
    if product is None:
        logger.warning("Default plan not available", plan_name=plan_name)
        return None
    return await assign_subscription(db, user_id, product.id)


async def provision_user(db: AsyncSession, user_id: str) -> UserSubscription | None:
    """Give a first-time user the default plan.

    Users who have held any subscription before, open or closed, are left
    alone so a lapsed or canceled plan is not silently replaced. Callers
    hold the user's usage lock.
    """
    result = await db.execute(
        select(UserSubscription.id).where(UserSubscription.user_id == user_id).limit(1)
    )
    if result.scalar_one_or_none() is not None:
        return None
    subscription = await assign_default_subscription(db, user_id)
    if subscription is not None:
        logger.info("Provisioned default subscription", user_id=user_id)
    return subscription


async def update_user_subscription(
    db: AsyncSession,
    user_id: str,
    product_id: str,
    external_ref: str,
    status: str,
    period_start: datetime | None,
    period_end: datetime | None,
    now: datetime | None = None,
) -> UserSubscription:
    """Provider-driven upsert keyed by the external subscription id.

    Updates product, status and billing period when the row exists. A new
    external subscription closes the user's other open rows first.
    """
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(UserSubscription)
        .where(UserSubscription.stripe_subscription_id == external_ref)
        .with_for_update()
    )
    subscription = result.scalar_one_or_none()

    if subscription is not None:
        subscription.product_id = product_id
        subscription.status = status
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        if status == SubscriptionStatus.CANCELED.value and subscription.ends_at is None:
            subscription.ends_at = now
        await db.flush()
        logger.info(
            "Subscription updated from provider",
            user_id=user_id,
            stripe_subscription_id=external_ref,
            status=status,
        )
        return subscription

    ends_at = now if status == SubscriptionStatus.CANCELED.value else None
    if ends_at is None:
        await _close_open_subscriptions(db, user_id, now)

    subscription = await _insert_subscription(
        db,
        UserSubscription(
            user_id=user_id,
            product_id=product_id,
            status=status,
            starts_at=now,
            ends_at=ends_at,
            stripe_subscription_id=external_ref,
            current_period_start=period_start,
            current_period_end=period_end,
        ),
    )
    logger.info(
        "Subscription created from provider",
        user_id=user_id,
        stripe_subscription_id=external_ref,
        status=status,
    )
    return subscription


async def mark_past_due(db: AsyncSession, user_id: str, now: datetime | None = None) -> int:
    """Move the user's open active subscription to past_due."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        update(UserSubscription)
        .where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            _is_open(now),
        )
        .values(status=SubscriptionStatus.PAST_DUE.value)
    )
    return result.rowcount or 0


async def cancel_by_external_ref(
    db: AsyncSession,
    external_ref: str,
    now: datetime | None = None,
) -> UserSubscription | None:
    """Mark the provider subscription canceled and close it."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(UserSubscription)
        .where(UserSubscription.stripe_subscription_id == external_ref)
        .with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        return None

    subscription.status = SubscriptionStatus.CANCELED.value
    if subscription.ends_at is None or subscription.ends_at > now:
        subscription.ends_at = now
    await db.flush()
    return subscription


async def list_subscription_history(
    db: AsyncSession, user_id: str
) -> list[tuple[UserSubscription, str]]:
    """Every subscription row for the user with its product name, newest first."""
    result = await db.execute(
        select(UserSubscription, SubscriptionProduct.name)
        .join(SubscriptionProduct, UserSubscription.product_id == SubscriptionProduct.id)
        .where(UserSubscription.user_id == user_id)
        .order_by(UserSubscription.starts_at.desc())
    )
    return [(row[0], row[1]) for row in result.all()]
