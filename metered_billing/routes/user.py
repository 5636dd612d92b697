"""Quota, usage, credit and subscription routes for the signed-in user."""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from metered_billing.middleware.auth import get_current_user_id
from metered_billing.routes.dependencies import DbSession
from metered_billing.services.credits import get_credit_balance, list_credit_entries
from metered_billing.services.quota import QuotaDecision, can_generate
from metered_billing.services.subscriptions import get_active_subscription
from metered_billing.services.usage import get_usage_history, year_month_for

logger = structlog.get_logger()

router = APIRouter(prefix="/user", tags=["user"])


# ==================== Pydantic Models ====================


class ProductResponse(BaseModel):
    """Subscription product as exposed to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    monthly_image_limit: int | None
    monthly_cost_limit: float | None
    daily_image_limit: int | None
    bonus_credits: int
    price_cents: int
    overage_price_cents: int
    stripe_price_id: str | None
    is_active: bool


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    starts_at: datetime
    ends_at: datetime | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    product: ProductResponse


class CreditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    amount: int
    reason: str | None
    created_at: datetime


class CreditsResponse(BaseModel):
    balance: int
    entries: list[CreditEntryResponse]


# ==================== Helpers ====================


def quota_denied_response(decision: QuotaDecision) -> JSONResponse:
    """403 body a client can turn into an upgrade prompt."""
    data = decision.to_dict()
    return JSONResponse(
        status_code=403,
        content={
            "error": decision.reason,
            "error_code": decision.error_code,
            "limit_reached": True,
            "usage": data["usage"],
            "daily_usage": {"image_count": decision.daily_image_count or 0},
            "limits": data["limits"],
            "available_credits": decision.available_credits,
        },
    )


# ==================== Routes ====================


@router.get("/can-generate")
async def check_can_generate(request: Request, db: DbSession) -> dict[str, Any]:
    """Whether the user may generate right now, with usage and limits."""
    user_id = get_current_user_id(request)
    decision = await can_generate(db, user_id)
    return decision.to_dict()


@router.get("/usage")
async def get_usage(request: Request, db: DbSession) -> dict[str, Any]:
    """Current month and day counters against the plan limits."""
    user_id = get_current_user_id(request)
    decision = await can_generate(db, user_id)
    data = decision.to_dict()
    return {
        "year_month": year_month_for(),
        "plan_name": decision.plan_name,
        "usage": data["usage"] or {"image_count": 0, "total_cost": 0.0, "used_own_key": 0},
        "daily_usage": {"image_count": decision.daily_image_count or 0},
        "limits": data["limits"],
        "available_credits": decision.available_credits,
    }


@router.get("/usage/history")
async def get_history(
    request: Request,
    db: DbSession,
    days: int = Query(default=30, ge=1, le=90),
) -> list[dict[str, Any]]:
    """Daily image counts, oldest first."""
    user_id = get_current_user_id(request)
    return await get_usage_history(db, user_id, days)


@router.get("/credits", response_model=CreditsResponse)
async def get_credits(
    request: Request,
    db: DbSession,
    limit: int = Query(default=50, ge=1, le=200),
) -> CreditsResponse:
    """Credit balance and the most recent ledger entries."""
    user_id = get_current_user_id(request)
    entries = await list_credit_entries(db, user_id, limit)
    # Balance covers the whole ledger, not just the page returned
    return CreditsResponse(
        balance=await get_credit_balance(db, user_id),
        entries=[CreditEntryResponse.model_validate(e) for e in entries],
    )


@router.get("/subscription", response_model=SubscriptionResponse | None)
async def get_subscription(request: Request, db: DbSession) -> SubscriptionResponse | None:
    """The user's open subscription, or null."""
    user_id = get_current_user_id(request)
    active = await get_active_subscription(db, user_id)
    if active is None:
        return None
    sub = active.subscription
    return SubscriptionResponse(
        id=sub.id,
        status=sub.status,
        starts_at=sub.starts_at,
        ends_at=sub.ends_at,
        current_period_start=sub.current_period_start,
        current_period_end=sub.current_period_end,
        product=ProductResponse.model_validate(active.product),
    )
