"""Plan catalog, billing overview, checkout and customer portal routes."""

from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select

from metered_billing.config import settings
from metered_billing.database.models import SubscriptionProduct
from metered_billing.middleware.auth import get_current_user_email, get_current_user_id
from metered_billing.routes.dependencies import DbSession
from metered_billing.routes.user import ProductResponse
from metered_billing.services.stripe_billing import (
    create_checkout_session,
    create_portal_session,
    get_billing_summary,
    get_live_subscription,
    list_invoices,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1, max_length=255)
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(BaseModel):
    return_url: str | None = None


class RedirectResponse(BaseModel):
    url: str


@router.get("")
async def get_billing(request: Request, db: DbSession) -> dict[str, Any]:
    """Current plan, this month's usage and recent payments."""
    user_id = get_current_user_id(request)
    return await get_billing_summary(db, user_id)


@router.get("/status")
async def billing_status() -> dict[str, bool]:
    """Whether online payments are available. Public."""
    return {"enabled": settings.stripe_configured}


@router.get("/invoices")
async def get_invoices(
    request: Request,
    db: DbSession,
    limit: int = Query(default=10, ge=1, le=100),
) -> dict[str, list[dict[str, Any]]]:
    """Invoices from Stripe, newest first."""
    user_id = get_current_user_id(request)
    return {"invoices": await list_invoices(db, user_id, limit)}


@router.get("/subscription")
async def get_provider_subscription(request: Request, db: DbSession) -> dict[str, Any]:
    """The live Stripe subscription, including a pending cancellation."""
    user_id = get_current_user_id(request)
    return {"subscription": await get_live_subscription(db, user_id)}


@router.get("/products", response_model=list[ProductResponse])
async def list_products(db: DbSession) -> list[ProductResponse]:
    """Active plans, cheapest first. Public."""
    result = await db.execute(
        select(SubscriptionProduct)
        .where(SubscriptionProduct.is_active.is_(True))
        .order_by(SubscriptionProduct.price_cents, SubscriptionProduct.name)
    )
    return [ProductResponse.model_validate(p) for p in result.scalars().all()]


@router.post("/checkout", response_model=RedirectResponse)
async def start_checkout(
    body: CheckoutRequest,
    request: Request,
    db: DbSession,
) -> RedirectResponse:
    """Create a Stripe Checkout session for a subscription plan."""
    user_id = get_current_user_id(request)
    url = await create_checkout_session(
        db,
        user_id,
        get_current_user_email(request),
        body.price_id,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return RedirectResponse(url=url)


@router.post("/portal", response_model=RedirectResponse)
async def open_portal(
    request: Request,
    db: DbSession,
    body: PortalRequest | None = None,
) -> RedirectResponse:
    """Create a Stripe customer portal session."""
    user_id = get_current_user_id(request)
    url = await create_portal_session(db, user_id, body.return_url if body else None)
    return RedirectResponse(url=url)
