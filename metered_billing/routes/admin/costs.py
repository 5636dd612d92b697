"""Admin cost tooling routes."""

from typing import Annotated, Any

from fastapi import APIRouter, Query, Request

from metered_billing.middleware.admin import require_admin
from metered_billing.routes.dependencies import DbSession
from metered_billing.services.cost_admin import pricing_samples, recalculate_costs

router = APIRouter()


@router.post("/recalculate")
@require_admin
async def recalculate(
    request: Request,
    db: DbSession,
    dry_run: Annotated[bool, Query()] = True,
) -> dict[str, Any]:
    """Re-price stored generations. Nothing is written unless dry_run=false."""
    return await recalculate_costs(db, dry_run=dry_run)


@router.get("/pricing")
@require_admin
async def get_pricing(request: Request) -> list[dict[str, Any]]:
    """Catalog prices with sample per-image costs at 1, 2 and 4 MP."""
    return pricing_samples()
