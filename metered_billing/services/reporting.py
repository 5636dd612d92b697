"""Financial reporting over revenue events, platform costs and subscriptions.

Read-only apart from the ``financial_periods`` snapshot table. Windows are
half-open ``[start, end)`` in UTC. Revenue is stored in cents and reported
in dollars; costs are stored and reported in dollars.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import (
    FinancialPeriodSnapshot,
    Generation,
    Payment,
    PaymentStatus,
    PeriodType,
    PlatformCost,
    RevenueEvent,
    RevenueEventType,
    SubscriptionProduct,
    SubscriptionStatus,
    UserMetrics,
    UserSubscription,
)
from metered_billing.exceptions import InvalidBillingInputError

if TYPE_CHECKING:
    from metered_billing.database import Database

logger = structlog.get_logger()

DEFAULT_LIFETIME_MONTHS = 12.0
MRR_HISTORY_MONTHS = 12

CREDIT_EVENT_TYPES = (
    RevenueEventType.CREDIT_PURCHASE.value,
    RevenueEventType.CREDIT_USAGE.value,
)


# =============================================================================
# PERIODS
# =============================================================================


def _day_start(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=UTC)


def _add_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def get_period_range(
    period_type: PeriodType | str,
    at: datetime | None = None,
) -> tuple[datetime, datetime]:
    """The calendar period of ``period_type`` containing ``at``."""
    period_type = PeriodType(period_type)
    day = (at or datetime.now(UTC)).astimezone(UTC).date()

    if period_type == PeriodType.DAILY:
        start = day
        end = day + timedelta(days=1)
    elif period_type == PeriodType.MONTHLY:
        start = day.replace(day=1)
        end = _add_months(start, 1)
    elif period_type == PeriodType.QUARTERLY:
        start = date(day.year, (day.month - 1) // 3 * 3 + 1, 1)
        end = _add_months(start, 3)
    else:
        start = date(day.year, 1, 1)
        end = date(day.year + 1, 1, 1)
    return _day_start(start), _day_start(end)


def get_previous_period_range(
    period_type: PeriodType | str,
    at: datetime | None = None,
) -> tuple[datetime, datetime]:
    """The period of the same type immediately before the one containing ``at``."""
    start, _ = get_period_range(period_type, at)
    return get_period_range(period_type, start - timedelta(microseconds=1))


def get_date_range(
    period: str = "mtd",
    start_date: date | None = None,
    end_date: date | None = None,
    now: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Dashboard window: mtd, qtd, ytd, last30, last90 or custom (end date inclusive).

    Unknown periods and incomplete custom ranges fall back to month-to-date.
    """
    now = now or datetime.now(UTC)
    if period == "custom" and start_date and end_date:
        if end_date < start_date:
            raise InvalidBillingInputError("end_date", "must not be before start_date")
        return _day_start(start_date), _day_start(end_date + timedelta(days=1))
    if period == "qtd":
        return get_period_range(PeriodType.QUARTERLY, now)[0], now
    if period == "ytd":
        return get_period_range(PeriodType.YEARLY, now)[0], now
    if period == "last30":
        return now - timedelta(days=30), now
    if period == "last90":
        return now - timedelta(days=90), now
    return get_period_range(PeriodType.MONTHLY, now)[0], now


def calc_change(current: float, previous: float) -> float:
    """Percent change from ``previous`` to ``current``."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 2)


def _dollars(cents: int | None) -> float:
    return round((cents or 0) / 100, 2)


def _cents(dollars: float | Decimal) -> int:
    return int(round(Decimal(str(dollars)) * 100))


# =============================================================================
# QUERY HELPERS
# =============================================================================


def _open_at(moment: datetime) -> Any:
    return and_(
        UserSubscription.starts_at <= moment,
        or_(UserSubscription.ends_at.is_(None), UserSubscription.ends_at > moment),
    )


async def _revenue_by_type(db: AsyncSession, start: datetime, end: datetime) -> dict[str, int]:
    result = await db.execute(
        select(RevenueEvent.event_type, func.coalesce(func.sum(RevenueEvent.amount_cents), 0))
        .where(RevenueEvent.created_at >= start, RevenueEvent.created_at < end)
        .group_by(RevenueEvent.event_type)
    )
    return {event_type: int(total) for event_type, total in result.all()}


async def _cost_totals(db: AsyncSession, start: datetime, end: datetime) -> tuple[Decimal, Decimal]:
    """(estimated, platform) where platform prefers reconciled actual cost."""
    result = await db.execute(
        select(
            func.coalesce(func.sum(PlatformCost.estimated_cost), 0),
            func.coalesce(
                func.sum(func.coalesce(PlatformCost.actual_cost, PlatformCost.estimated_cost)), 0
            ),
        ).where(PlatformCost.created_at >= start, PlatformCost.created_at < end)
    )
    estimated, platform = result.one()
    return Decimal(estimated), Decimal(platform)


async def _count_generations(db: AsyncSession, start: datetime, end: datetime) -> int:
    result = await db.execute(
        select(func.count(Generation.id)).where(
            Generation.created_at >= start, Generation.created_at < end
        )
    )
    return int(result.scalar_one())


async def _count_active_subscribers(db: AsyncSession, at: datetime) -> int:
    result = await db.execute(
        select(func.count(func.distinct(UserSubscription.user_id))).where(
            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            _open_at(at),
        )
    )
    return int(result.scalar_one())


async def _count_new_subscribers(db: AsyncSession, start: datetime, end: datetime) -> int:
    result = await db.execute(
        select(func.count(func.distinct(UserSubscription.user_id))).where(
            UserSubscription.created_at >= start, UserSubscription.created_at < end
        )
    )
    return int(result.scalar_one())


async def _count_churned(db: AsyncSession, start: datetime, end: datetime) -> int:
    result = await db.execute(
        select(func.count(UserMetrics.user_id)).where(
            UserMetrics.churned_at >= start, UserMetrics.churned_at < end
        )
    )
    return int(result.scalar_one())


async def _current_mrr_cents(db: AsyncSession, now: datetime) -> int:
    """Sum of plan prices over subscriptions active right now."""
    result = await db.execute(
        select(func.coalesce(func.sum(SubscriptionProduct.price_cents), 0))
        .select_from(UserSubscription)
        .join(SubscriptionProduct, SubscriptionProduct.id == UserSubscription.product_id)
        .where(UserSubscription.status == SubscriptionStatus.ACTIVE.value, _open_at(now))
    )
    return int(result.scalar_one())


async def _average_lifetime_months(db: AsyncSession) -> float:
    result = await db.execute(
        select(func.avg(UserMetrics.subscription_months)).where(
            UserMetrics.subscription_months > 0
        )
    )
    value = result.scalar_one_or_none()
    return float(value) if value else DEFAULT_LIFETIME_MONTHS


# =============================================================================
# METRICS
# =============================================================================


@dataclass
class FinancialMetrics:
    """Headline figures for one window. Money in dollars."""

    period_start: datetime
    period_end: datetime
    subscription_revenue: float
    overage_revenue: float
    credit_revenue: float
    total_revenue: float
    estimated_costs: float
    actual_costs: float
    platform_costs: float
    gross_profit: float
    gross_margin: float
    active_subscribers: int
    new_subscribers: int
    churned_subscribers: int
    churn_rate: float
    mrr: float
    arr: float
    arpu: float
    ltv: float
    total_generations: int
    avg_cost_per_generation: float

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["period_end"] = self.period_end.isoformat()
        return data


def build_metrics(
    start: datetime,
    end: datetime,
    revenue_by_type: dict[str, int],
    estimated_cost: Decimal,
    platform_cost: Decimal,
    generations: int,
    active: int,
    new: int,
    churned: int,
    mrr_cents: int,
    lifetime_months: float,
) -> FinancialMetrics:
    """Derive the headline figures from raw aggregates."""
    subscription = _dollars(revenue_by_type.get(RevenueEventType.SUBSCRIPTION.value, 0))
    overage = _dollars(revenue_by_type.get(RevenueEventType.OVERAGE.value, 0))
    credits = _dollars(sum(revenue_by_type.get(t, 0) for t in CREDIT_EVENT_TYPES))
    revenue = _dollars(sum(revenue_by_type.values()))

    platform = float(platform_cost)
    gross_profit = revenue - platform
    gross_margin = gross_profit / revenue * 100 if revenue > 0 else 0.0
    churn_rate = churned / (active + churned) * 100 if active + churned > 0 else 0.0
    mrr = _dollars(mrr_cents)
    arpu = revenue / active if active > 0 else 0.0

    return FinancialMetrics(
        period_start=start,
        period_end=end,
        subscription_revenue=subscription,
        overage_revenue=overage,
        credit_revenue=credits,
        total_revenue=revenue,
        estimated_costs=round(float(estimated_cost), 4),
        actual_costs=round(platform, 4),
        platform_costs=round(platform, 4),
        gross_profit=round(gross_profit, 2),
        gross_margin=round(gross_margin, 2),
        active_subscribers=active,
        new_subscribers=new,
        churned_subscribers=churned,
        churn_rate=round(churn_rate, 2),
        mrr=mrr,
        arr=round(mrr * 12, 2),
        arpu=round(arpu, 2),
        ltv=round(arpu * lifetime_months, 2),
        total_generations=generations,
        avg_cost_per_generation=round(platform / generations, 4) if generations else 0.0,
    )


async def get_financial_metrics(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> FinancialMetrics:
    """Metrics for ``[start, end)``. MRR is as of ``now`` whatever the window."""
    now = now or datetime.now(UTC)
    estimated, platform = await _cost_totals(db, start, end)
    return build_metrics(
        start,
        end,
        revenue_by_type=await _revenue_by_type(db, start, end),
        estimated_cost=estimated,
        platform_cost=platform,
        generations=await _count_generations(db, start, end),
        active=await _count_active_subscribers(db, end),
        new=await _count_new_subscribers(db, start, end),
        churned=await _count_churned(db, start, end),
        mrr_cents=await _current_mrr_cents(db, now),
        lifetime_months=await _average_lifetime_months(db),
    )


async def get_metrics_with_comparison(
    db: AsyncSession,
    period_type: PeriodType | str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Current period against the previous period of the same type."""
    now = now or datetime.now(UTC)
    current = await get_financial_metrics(db, *get_period_range(period_type, now), now=now)
    previous = await get_financial_metrics(
        db, *get_previous_period_range(period_type, now), now=now
    )
    return {
        "current": current.to_dict(),
        "previous": previous.to_dict(),
        "changes": {
            "revenue": calc_change(current.total_revenue, previous.total_revenue),
            "profit": calc_change(current.gross_profit, previous.gross_profit),
            "subscribers": calc_change(current.active_subscribers, previous.active_subscribers),
            "mrr": calc_change(current.mrr, previous.mrr),
            "generations": calc_change(current.total_generations, previous.total_generations),
        },
    }


async def get_profit_loss(db: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
    metrics = await get_financial_metrics(db, start, end)
    return {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "revenue": {
            "subscriptions": metrics.subscription_revenue,
            "overage": metrics.overage_revenue,
            "credits": metrics.credit_revenue,
            "total": metrics.total_revenue,
        },
        "cost_of_revenue": {
            "platform_costs": metrics.platform_costs,
            "total": metrics.platform_costs,
        },
        "gross_profit": metrics.gross_profit,
        "gross_margin": metrics.gross_margin,
        "metrics": {
            "generations": metrics.total_generations,
            "active_subscribers": metrics.active_subscribers,
            "avg_revenue_per_user": metrics.arpu,
        },
    }


# =============================================================================
# BREAKDOWNS
# =============================================================================


async def get_revenue_by_tier(
    db: AsyncSession,
    start: datetime,
    end: datetime,
) -> list[dict[str, Any]]:
    """Subscription revenue grouped by the plan the user held when charged."""
    result = await db.execute(
        select(
            SubscriptionProduct.name,
            func.sum(RevenueEvent.amount_cents).label("revenue_cents"),
            func.count(func.distinct(RevenueEvent.user_id)).label("subscribers"),
        )
        .select_from(RevenueEvent)
        .join(
            UserSubscription,
            and_(
                UserSubscription.user_id == RevenueEvent.user_id,
                UserSubscription.starts_at <= RevenueEvent.created_at,
                or_(
                    UserSubscription.ends_at.is_(None),
                    UserSubscription.ends_at > RevenueEvent.created_at,
                ),
            ),
        )
        .join(SubscriptionProduct, SubscriptionProduct.id == UserSubscription.product_id)
        .where(
            RevenueEvent.event_type == RevenueEventType.SUBSCRIPTION.value,
            RevenueEvent.created_at >= start,
            RevenueEvent.created_at < end,
        )
        .group_by(SubscriptionProduct.name)
        .order_by(func.sum(RevenueEvent.amount_cents).desc())
    )
    return [
        {"tier": row.name, "revenue": _dollars(row.revenue_cents), "subscribers": row.subscribers}
        for row in result.all()
    ]


async def get_top_customers(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    limit: int = 10,
) -> list[dict[str, Any]]:
    """Users ranked by revenue in the window, with their generation counts."""
    generations = (
        select(Generation.user_id, func.count(Generation.id).label("generations"))
        .where(Generation.created_at >= start, Generation.created_at < end)
        .group_by(Generation.user_id)
        .subquery()
    )
    result = await db.execute(
        select(
            RevenueEvent.user_id,
            func.sum(RevenueEvent.amount_cents).label("revenue_cents"),
            func.coalesce(func.max(generations.c.generations), 0).label("generations"),
        )
        .outerjoin(generations, generations.c.user_id == RevenueEvent.user_id)
        .where(RevenueEvent.created_at >= start, RevenueEvent.created_at < end)
        .group_by(RevenueEvent.user_id)
        .order_by(func.sum(RevenueEvent.amount_cents).desc())
        .limit(limit)
    )
    return [
        {
            "user_id": row.user_id,
            "revenue": _dollars(row.revenue_cents),
            "generations": int(row.generations),
        }
        for row in result.all()
    ]


async def get_costs_by_model(
    db: AsyncSession,
    start: datetime,
    end: datetime,
) -> list[dict[str, Any]]:
    actual = func.coalesce(PlatformCost.actual_cost, PlatformCost.estimated_cost)
    result = await db.execute(
        select(
            PlatformCost.model,
            func.count(PlatformCost.id).label("generations"),
            func.sum(PlatformCost.estimated_cost).label("estimated"),
            func.sum(actual).label("actual"),
        )
        .where(PlatformCost.created_at >= start, PlatformCost.created_at < end)
        .group_by(PlatformCost.model)
        .order_by(func.sum(actual).desc())
    )
    return [
        {
            "model": row.model,
            "generations": row.generations,
            "estimated_cost": round(float(row.estimated or 0), 4),
            "actual_cost": round(float(row.actual or 0), 4),
            "avg_cost": round(float(row.actual or 0) / row.generations, 4)
            if row.generations
            else 0.0,
        }
        for row in result.all()
    ]


@dataclass
class TrendBucket:
    label: str
    start: datetime
    end: datetime


def trend_buckets(kind: str, count: int, today: date) -> list[TrendBucket]:
    """``count`` consecutive buckets ending with the one containing ``today``, oldest first.

    Weeks start on Sunday.
    """
    buckets: list[TrendBucket] = []
    if kind == "daily":
        for offset in range(count - 1, -1, -1):
            day = today - timedelta(days=offset)
            buckets.append(
                TrendBucket(day.isoformat(), _day_start(day), _day_start(day + timedelta(days=1)))
            )
    elif kind == "weekly":
        this_week = today - timedelta(days=(today.weekday() + 1) % 7)
        for offset in range(count - 1, -1, -1):
            week = this_week - timedelta(weeks=offset)
            buckets.append(
                TrendBucket(
                    f"Week of {week.isoformat()}",
                    _day_start(week),
                    _day_start(week + timedelta(days=7)),
                )
            )
    elif kind == "monthly":
        this_month = today.replace(day=1)
        for offset in range(count - 1, -1, -1):
            month = _add_months(this_month, -offset)
            buckets.append(
                TrendBucket(
                    month.strftime("%Y-%m"),
                    _day_start(month),
                    _day_start(_add_months(month, 1)),
                )
            )
    else:
        raise InvalidBillingInputError("type", "must be daily, weekly or monthly")
    return buckets


async def get_revenue_trend(
    db: AsyncSession,
    kind: str = "monthly",
    count: int = 12,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Revenue, cost, profit and active subscribers per bucket."""
    now = now or datetime.now(UTC)
    series = []
    for bucket in trend_buckets(kind, count, now.astimezone(UTC).date()):
        revenue = _dollars(sum((await _revenue_by_type(db, bucket.start, bucket.end)).values()))
        _, platform = await _cost_totals(db, bucket.start, bucket.end)
        costs = round(float(platform), 4)
        series.append(
            {
                "period": bucket.label,
                "revenue": revenue,
                "costs": costs,
                "profit": round(revenue - costs, 2),
                "subscribers": await _count_active_subscribers(db, min(bucket.end, now)),
            }
        )
    return series


async def get_churn_report(db: AsyncSession, start: datetime, end: datetime) -> dict[str, Any]:
    result = await db.execute(
        select(UserMetrics)
        .where(UserMetrics.churned_at >= start, UserMetrics.churned_at < end)
        .order_by(UserMetrics.churned_at.desc())
    )
    churned = [
        {
            "user_id": m.user_id,
            "churned_at": m.churned_at.isoformat() if m.churned_at else None,
            "total_paid": _dollars(m.total_paid_cents),
            "subscription_months": m.subscription_months,
        }
        for m in result.scalars().all()
    ]
    active = await _count_active_subscribers(db, end)
    total = len(churned)
    return {
        "period_start": start.isoformat(),
        "period_end": end.isoformat(),
        "churned_count": total,
        "churn_rate": round(total / (active + total) * 100, 2) if active + total else 0.0,
        "lost_revenue": round(sum(c["total_paid"] for c in churned), 2),
        "users": churned,
    }


async def get_all_time_totals(db: AsyncSession) -> dict[str, Any]:
    revenue = await db.execute(
        select(func.coalesce(func.sum(RevenueEvent.amount_cents), 0)).where(
            RevenueEvent.amount_cents > 0
        )
    )
    costs = await db.execute(
        select(
            func.coalesce(
                func.sum(func.coalesce(PlatformCost.actual_cost, PlatformCost.estimated_cost)), 0
            )
        )
    )
    generations = await db.execute(select(func.count(Generation.id)))
    customers = await db.execute(
        select(func.count(func.distinct(Payment.user_id))).where(
            Payment.status == PaymentStatus.SUCCEEDED.value
        )
    )

    total_revenue = _dollars(int(revenue.scalar_one()))
    total_costs = round(float(costs.scalar_one()), 4)
    return {
        "total_revenue": total_revenue,
        "total_costs": total_costs,
        "total_profit": round(total_revenue - total_costs, 2),
        "total_generations": int(generations.scalar_one()),
        "paying_customers": int(customers.scalar_one()),
    }


# =============================================================================
# SNAPSHOTS
# =============================================================================


async def compute_snapshot(
    db: AsyncSession,
    period_type: PeriodType | str,
    at: datetime | None = None,
) -> FinancialMetrics:
    """Upsert the snapshot row for the period containing ``at``."""
    period_type = PeriodType(period_type)
    start, end = get_period_range(period_type, at)
    metrics = await get_financial_metrics(db, start, end)

    values = {
        "total_revenue_cents": _cents(metrics.total_revenue),
        "total_platform_cost_cents": _cents(metrics.platform_costs),
        "total_generations": metrics.total_generations,
        "active_subscribers": metrics.active_subscribers,
        "new_subscribers": metrics.new_subscribers,
        "churned_subscribers": metrics.churned_subscribers,
        "mrr_cents": _cents(metrics.mrr),
    }
    stmt = pg_insert(FinancialPeriodSnapshot).values(
        period_type=period_type.value,
        period_start=start.date(),
        period_end=end.date(),
        **values,
    )
    await db.execute(
        stmt.on_conflict_do_update(
            constraint="uq_financial_periods_type_start",
            set_={**values, "period_end": stmt.excluded.period_end, "computed_at": func.now()},
        )
    )
    logger.info(
        "Financial snapshot computed",
        period_type=period_type.value,
        period_start=start.date().isoformat(),
    )
    return metrics


async def get_mrr_history(db: AsyncSession) -> list[dict[str, Any]]:
    """Last monthly snapshots, oldest first."""
    result = await db.execute(
        select(FinancialPeriodSnapshot)
        .where(FinancialPeriodSnapshot.period_type == PeriodType.MONTHLY.value)
        .order_by(FinancialPeriodSnapshot.period_start.desc())
        .limit(MRR_HISTORY_MONTHS)
    )
    snapshots = list(result.scalars().all())
    snapshots.reverse()
    return [
        {
            "period": s.period_start.strftime("%Y-%m"),
            "mrr": _dollars(s.mrr_cents),
            "active_subscribers": s.active_subscribers,
        }
        for s in snapshots
    ]


_snapshot_lock = asyncio.Lock()


async def run_snapshots(database: "Database", at: datetime | None = None) -> bool:
    """Refresh today's daily and this month's monthly snapshot.

    Returns False without doing anything when a run is already in progress.
    """
    if _snapshot_lock.locked():
        logger.info("Financial snapshot already running, skipping")
        return False
    async with _snapshot_lock:
        async with database.session() as db:
            await compute_snapshot(db, PeriodType.DAILY, at)
            await compute_snapshot(db, PeriodType.MONTHLY, at)
    return True
