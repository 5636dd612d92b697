"""Quota enforcement for generation requests.

Resolution order:
1. No open subscription: allow only with a positive credit balance
2. Daily image limit: deny when breached unless credits cover it
3. Monthly image limit: deny when breached unless credits cover it
4. Monthly cost limit: hard cap, credits never override it

A denial is a normal outcome returned as a ``QuotaDecision``, not an error.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import SubscriptionProduct
from metered_billing.services.credits import get_credit_balance
from metered_billing.services.subscriptions import get_active_subscription
from metered_billing.services.usage import (
    get_daily_usage,
    get_monthly_usage,
    usage_date_for,
    year_month_for,
)

logger = structlog.get_logger()


# Error codes for clients to pick the right upgrade prompt
class QuotaErrorCode:
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
    MONTHLY_LIMIT_REACHED = "MONTHLY_LIMIT_REACHED"
    COST_LIMIT_REACHED = "COST_LIMIT_REACHED"


@dataclass
class UsageSnapshot:
    """Current monthly counters."""

    image_count: int = 0
    total_cost: Decimal = Decimal(0)
    used_own_key: int = 0


@dataclass
class PlanLimits:
    """Limits of the user's plan. None means unlimited."""

    monthly_image_limit: int | None = None
    monthly_cost_limit: Decimal | None = None
    daily_image_limit: int | None = None

    @classmethod
    def from_product(cls, product: SubscriptionProduct) -> "PlanLimits":
        return cls(
            monthly_image_limit=product.monthly_image_limit,
            monthly_cost_limit=product.monthly_cost_limit,
            daily_image_limit=product.daily_image_limit,
        )


@dataclass
class QuotaDecision:
    """Outcome of a quota check."""

    allowed: bool
    available_credits: int
    reason: str | None = None
    error_code: str | None = None
    plan_name: str | None = None
    usage: UsageSnapshot | None = None
    daily_image_count: int | None = None
    limits: PlanLimits | None = None
    # Set when a count limit is exceeded and the request rides on credits
    needs_credit: bool = False
    breached: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view for API responses."""
        data = asdict(self)
        if self.usage is not None:
            data["usage"]["total_cost"] = float(self.usage.total_cost)
        if self.limits is not None and self.limits.monthly_cost_limit is not None:
            data["limits"]["monthly_cost_limit"] = float(self.limits.monthly_cost_limit)
        return data


def evaluate_quota(
    product: SubscriptionProduct | None,
    usage: UsageSnapshot,
    daily_image_count: int,
    available_credits: int,
) -> QuotaDecision:
    """Pure decision over already-loaded state.

    Any credit-coverable breach sets ``needs_credit``, not only the monthly
    image limit: a daily-limit breach alone spends a credit, and so does
    every generation by a user without a subscription.
    """
    if product is None:
        if available_credits > 0:
            return QuotaDecision(
                allowed=True,
                available_credits=available_credits,
                needs_credit=True,
            )
        return QuotaDecision(
            allowed=False,
            available_credits=available_credits,
            reason="No active subscription. Please subscribe to continue generating images.",
            error_code=QuotaErrorCode.SUBSCRIPTION_REQUIRED,
        )

    limits = PlanLimits.from_product(product)
    context: dict[str, Any] = {
        "available_credits": available_credits,
        "plan_name": product.name,
        "usage": usage,
        "daily_image_count": daily_image_count,
        "limits": limits,
    }
    breached: list[str] = []

    if limits.daily_image_limit is not None and daily_image_count >= limits.daily_image_limit:
        if available_credits <= 0:
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Daily limit ({limits.daily_image_limit}) reached. "
                    "Come back tomorrow or upgrade your plan."
                ),
                error_code=QuotaErrorCode.DAILY_LIMIT_REACHED,
                breached=["daily_images"],
                **context,
            )
        breached.append("daily_images")

    if limits.monthly_image_limit is not None and usage.image_count >= limits.monthly_image_limit:
        if available_credits <= 0:
            return QuotaDecision(
                allowed=False,
                reason=(
                    f"Monthly image limit ({limits.monthly_image_limit}) reached. "
                    "Upgrade your plan or wait for next month."
                ),
                error_code=QuotaErrorCode.MONTHLY_LIMIT_REACHED,
                breached=[*breached, "monthly_images"],
                **context,
            )
        breached.append("monthly_images")

    if limits.monthly_cost_limit is not None and usage.total_cost >= limits.monthly_cost_limit:
        return QuotaDecision(
            allowed=False,
            reason=(
                f"Monthly cost limit (${limits.monthly_cost_limit:.2f}) reached. "
                "Upgrade your plan or wait for next month."
            ),
            error_code=QuotaErrorCode.COST_LIMIT_REACHED,
            breached=[*breached, "monthly_cost"],
            **context,
        )

    # One credit per generation however many count limits were exceeded
    return QuotaDecision(allowed=True, needs_credit=bool(breached), breached=breached, **context)


async def can_generate(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> QuotaDecision:
    """Whether the user may run one more generation right now."""
    now = now or datetime.now(UTC)
    active = await get_active_subscription(db, user_id, now)
    monthly = await get_monthly_usage(db, user_id, year_month_for(now))
    daily = await get_daily_usage(db, user_id, usage_date_for(now))
    available_credits = await get_credit_balance(db, user_id)

    usage = UsageSnapshot()
    if monthly is not None:
        usage = UsageSnapshot(
            image_count=monthly.image_count,
            total_cost=Decimal(monthly.total_cost),
            used_own_key=monthly.used_own_key,
        )

    decision = evaluate_quota(
        active.product if active else None,
        usage,
        daily.image_count if daily else 0,
        available_credits,
    )
    if not decision.allowed:
        logger.info(
            "Generation denied by quota",
            user_id=user_id,
            error_code=decision.error_code,
            image_count=usage.image_count,
        )
    return decision
