"""Admin subscription product management routes."""

from decimal import Decimal
from typing import Annotated

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import SubscriptionProduct
from metered_billing.middleware.admin import require_admin
from metered_billing.routes.dependencies import DbSession
from metered_billing.routes.user import ProductResponse

logger = structlog.get_logger()

router = APIRouter()


# ==================== Pydantic Models ====================


class CreateProductRequest(BaseModel):
    """Create subscription product request. Limits left null are unlimited."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    monthly_image_limit: int | None = Field(default=None, ge=0)
    monthly_cost_limit: Decimal | None = Field(default=None, ge=0)
    daily_image_limit: int | None = Field(default=None, ge=0)
    bonus_credits: int = Field(default=0, ge=0)
    price_cents: int = Field(default=0, ge=0)
    overage_price_cents: int = Field(default=0, ge=0)
    stripe_price_id: str | None = Field(default=None, max_length=255)
    is_active: bool = True


class UpdateProductRequest(BaseModel):
    """Partial update; only fields that are sent are changed."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    monthly_image_limit: int | None = Field(default=None, ge=0)
    monthly_cost_limit: Decimal | None = Field(default=None, ge=0)
    daily_image_limit: int | None = Field(default=None, ge=0)
    bonus_credits: int | None = Field(default=None, ge=0)
    price_cents: int | None = Field(default=None, ge=0)
    overage_price_cents: int | None = Field(default=None, ge=0)
    stripe_price_id: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None


async def _get_product_or_404(db: AsyncSession, product_id: str) -> SubscriptionProduct:
    product = await db.get(SubscriptionProduct, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


async def _flush_or_409(db: AsyncSession) -> None:
    try:
        async with db.begin_nested():
            await db.flush()
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail="Stripe price ID already in use") from e


# ==================== Routes ====================


@router.get("", response_model=list[ProductResponse])
@require_admin
async def list_products(
    request: Request,
    db: DbSession,
    include_inactive: Annotated[bool, Query()] = True,
) -> list[ProductResponse]:
    query = select(SubscriptionProduct).order_by(SubscriptionProduct.price_cents)
    if not include_inactive:
        query = query.where(SubscriptionProduct.is_active.is_(True))
    result = await db.execute(query)
    return [ProductResponse.model_validate(p) for p in result.scalars().all()]


@router.post("", response_model=ProductResponse, status_code=201)
@require_admin
async def create_product(
    request: Request,
    data: CreateProductRequest,
    db: DbSession,
) -> ProductResponse:
    """Create a new subscription product."""
    product = SubscriptionProduct(**data.model_dump())
    db.add(product)
    await _flush_or_409(db)
    logger.info("Product created", product_id=product.id, name=product.name)
    return ProductResponse.model_validate(product)


@router.patch("/{product_id}", response_model=ProductResponse)
@require_admin
async def update_product(
    product_id: str,
    request: Request,
    data: UpdateProductRequest,
    db: DbSession,
) -> ProductResponse:
    """Edit limits, prices or metadata of a product."""
    product = await _get_product_or_404(db, product_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(product, field, value)
    await _flush_or_409(db)
    logger.info("Product updated", product_id=product_id, fields=sorted(changes))
    return ProductResponse.model_validate(product)


@router.delete("/{product_id}", response_model=ProductResponse)
@require_admin
async def deactivate_product(
    product_id: str,
    request: Request,
    db: DbSession,
) -> ProductResponse:
    """Soft delete: products referenced by subscriptions are never removed."""
    product = await _get_product_or_404(db, product_id)
    product.is_active = False
    await db.flush()
    logger.info("Product deactivated", product_id=product_id)
    return ProductResponse.model_validate(product)
