"""Admin financial reporting routes."""

from datetime import UTC, date, datetime
from typing import Annotated, Any, Literal

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from metered_billing.config import settings
from metered_billing.database.models import PeriodType
from metered_billing.middleware.admin import require_admin
from metered_billing.routes.dependencies import DbSession, Fetcher
from metered_billing.services.reconciliation import get_cost_summary, run_reconciliation
from metered_billing.services.reporting import (
    compute_snapshot,
    get_all_time_totals,
    get_churn_report,
    get_costs_by_model,
    get_date_range,
    get_financial_metrics,
    get_metrics_with_comparison,
    get_mrr_history,
    get_profit_loss,
    get_revenue_by_tier,
    get_revenue_trend,
    get_top_customers,
)

logger = structlog.get_logger()

router = APIRouter()

PeriodParam = Annotated[
    Literal["mtd", "qtd", "ytd", "last30", "last90", "custom"], Query()
]
DateParam = Annotated[date | None, Query()]


def _window(period: str, start_date: date | None, end_date: date | None) -> tuple[datetime, datetime]:
    return get_date_range(period, start_date, end_date)


@router.get("/overview")
@require_admin
async def overview(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
) -> dict[str, Any]:
    start, end = _window(period, start_date, end_date)
    metrics = await get_financial_metrics(db, start, end)
    return metrics.to_dict()


@router.get("/pnl")
@require_admin
async def profit_and_loss(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
) -> dict[str, Any]:
    return await get_profit_loss(db, *_window(period, start_date, end_date))


@router.get("/revenue/by-tier")
@require_admin
async def revenue_by_tier(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
) -> list[dict[str, Any]]:
    return await get_revenue_by_tier(db, *_window(period, start_date, end_date))


@router.get("/top-customers")
@require_admin
async def top_customers(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
    limit: Annotated[int, Query(ge=1, le=50)] = 10,
) -> list[dict[str, Any]]:
    start, end = _window(period, start_date, end_date)
    return await get_top_customers(db, start, end, limit)


@router.get("/costs/by-model")
@require_admin
async def costs_by_model(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
) -> list[dict[str, Any]]:
    return await get_costs_by_model(db, *_window(period, start_date, end_date))


@router.get("/costs/summary")
@require_admin
async def cost_summary(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
    user_id: Annotated[str | None, Query(max_length=64)] = None,
) -> dict[str, Any]:
    start, end = _window(period, start_date, end_date)
    return await get_cost_summary(db, start, end, user_id)


@router.get("/churn")
@require_admin
async def churn(
    request: Request,
    db: DbSession,
    period: PeriodParam = "mtd",
    start_date: DateParam = None,
    end_date: DateParam = None,
) -> dict[str, Any]:
    return await get_churn_report(db, *_window(period, start_date, end_date))


@router.get("/comparison/{period_type}")
@require_admin
async def comparison(
    period_type: PeriodType,
    request: Request,
    db: DbSession,
) -> dict[str, Any]:
    """Current period against the previous one, with percent changes."""
    return await get_metrics_with_comparison(db, period_type)


@router.get("/trend")
@require_admin
async def trend(
    request: Request,
    db: DbSession,
    trend_type: Annotated[
        Literal["daily", "weekly", "monthly"], Query(alias="type")
    ] = "monthly",
    count: Annotated[int, Query(ge=1, le=365)] = 12,
) -> list[dict[str, Any]]:
    return await get_revenue_trend(db, trend_type, count)


@router.get("/mrr-history")
@require_admin
async def mrr_history(request: Request, db: DbSession) -> list[dict[str, Any]]:
    return await get_mrr_history(db)


@router.get("/all-time")
@require_admin
async def all_time(request: Request, db: DbSession) -> dict[str, Any]:
    return await get_all_time_totals(db)


@router.post("/reconcile-costs")
@require_admin
async def reconcile_costs(request: Request, fetcher: Fetcher) -> dict[str, Any]:
    """Run a reconciliation batch now. 409 if one is already running."""
    result = await run_reconciliation(
        request.app.state.db, fetcher, settings.RECONCILE_ADMIN_LIMIT
    )
    if result is None:
        raise HTTPException(status_code=409, detail="Cost reconciliation already running")
    logger.info("Manual cost reconciliation", admin_id=request.state.user_id, **result.to_dict())
    return result.to_dict()


@router.post("/snapshot")
@require_admin
async def snapshot(
    request: Request,
    db: DbSession,
    period_type: Annotated[PeriodType, Query()] = PeriodType.MONTHLY,
    at: DateParam = None,
) -> dict[str, Any]:
    """Recompute the snapshot row for the period containing ``at`` (default today)."""
    moment = datetime(at.year, at.month, at.day, tzinfo=UTC) if at else None
    metrics = await compute_snapshot(db, period_type, moment)
    return {"period_type": period_type.value, **metrics.to_dict()}
