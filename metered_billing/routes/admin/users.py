"""Admin routes acting on a single user's billing state."""

from typing import Any
from uuid import UUID

import structlog
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from metered_billing.database.models import CreditEntryType, UserMetrics
from metered_billing.exceptions import NotFoundError
from metered_billing.middleware.admin import require_admin
from metered_billing.routes.dependencies import DbSession
from metered_billing.routes.user import CreditEntryResponse
from metered_billing.services.credits import (
    add_credits,
    get_credit_balance,
    list_credit_entries,
)
from metered_billing.services.subscriptions import (
    assign_subscription,
    list_subscription_history,
)
from metered_billing.services.usage import list_monthly_usage

logger = structlog.get_logger()

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    """Positive amounts grant credits, negative amounts deduct them."""

    amount: int
    entry_type: CreditEntryType = CreditEntryType.GRANT
    reason: str | None = Field(default=None, max_length=500)


class AssignSubscriptionRequest(BaseModel):
    product_id: UUID


@router.get("/{user_id}")
@require_admin
async def get_user_billing(
    user_id: str,
    request: Request,
    db: DbSession,
    credit_limit: int = Query(default=100, ge=1, le=500),
) -> dict[str, Any]:
    """One user's subscriptions, monthly usage, credits and payment totals."""
    subscriptions = await list_subscription_history(db, user_id)
    usage = await list_monthly_usage(db, user_id)
    entries = await list_credit_entries(db, user_id, credit_limit)
    metrics = await db.get(UserMetrics, user_id)
    if not (subscriptions or usage or entries or metrics):
        raise NotFoundError(f"No billing records for user {user_id}")

    return {
        "user_id": user_id,
        "credits": await get_credit_balance(db, user_id),
        "total_paid_cents": metrics.total_paid_cents if metrics else 0,
        "first_payment_at": metrics.first_payment_at if metrics else None,
        "churned_at": metrics.churned_at if metrics else None,
        "subscription_history": [
            {
                "id": sub.id,
                "product_id": sub.product_id,
                "product_name": product_name,
                "status": sub.status,
                "starts_at": sub.starts_at,
                "ends_at": sub.ends_at,
            }
            for sub, product_name in subscriptions
        ],
        "usage_history": [
            {
                "year_month": month.year_month,
                "image_count": month.image_count,
                "total_cost": float(month.total_cost),
                "used_own_key": month.used_own_key,
            }
            for month in usage
        ],
        "credit_history": [
            CreditEntryResponse.model_validate(entry).model_dump() for entry in entries
        ],
    }


@router.post("/{user_id}/credits")
@require_admin
async def adjust_credits(
    user_id: str,
    request: Request,
    data: AdjustCreditsRequest,
    db: DbSession,
) -> dict[str, int | str]:
    entry_type = CreditEntryType.ADJUSTMENT if data.amount < 0 else data.entry_type
    entry = await add_credits(db, user_id, entry_type, data.amount, data.reason)
    logger.info(
        "Admin credit adjustment",
        admin_id=request.state.user_id,
        user_id=user_id,
        amount=data.amount,
    )
    return {"entry_id": entry.id, "balance": await get_credit_balance(db, user_id)}


@router.post("/{user_id}/subscription")
@require_admin
async def set_subscription(
    user_id: str,
    request: Request,
    data: AssignSubscriptionRequest,
    db: DbSession,
) -> dict[str, str]:
    """Replace the user's open subscription with the given product."""
    product_id = str(data.product_id)
    subscription = await assign_subscription(db, user_id, product_id)
    logger.info(
        "Admin assigned subscription",
        admin_id=request.state.user_id,
        user_id=user_id,
        product_id=product_id,
    )
    return {"subscription_id": subscription.id, "product_id": subscription.product_id}
