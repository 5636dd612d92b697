"""Usage ledger: monthly and daily per-user counters.

Buckets are UTC. Monthly rows carry image count, charge-time cost and the
bring-your-own-key count; daily rows carry the image count only. Counters
only grow, and daily limits reset by bucket rollover with no reset job.
"""

from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import UsageDaily, UsageMonthly

logger = structlog.get_logger()


def year_month_for(moment: datetime | None = None) -> str:
    """Monthly bucket key (YYYY-MM) in UTC."""
    moment = moment or datetime.now(UTC)
    return moment.astimezone(UTC).strftime("%Y-%m")


def usage_date_for(moment: datetime | None = None) -> date:
    """Daily bucket key: the UTC calendar date."""
    moment = moment or datetime.now(UTC)
    return moment.astimezone(UTC).date()


async def lock_monthly_usage(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> UsageMonthly:
    """Create the current monthly row if needed and lock it FOR UPDATE.

    The row lock is the per-user critical section for check, generate,
    record and debit. It is held until the surrounding transaction ends.
    """
    year_month = year_month_for(now)
    await db.execute(
        pg_insert(UsageMonthly)
        .values(user_id=user_id, year_month=year_month, image_count=0, total_cost=0)
        .on_conflict_do_nothing(index_elements=["user_id", "year_month"])
    )
    result = await db.execute(
        select(UsageMonthly)
        .where(UsageMonthly.user_id == user_id, UsageMonthly.year_month == year_month)
        .with_for_update()
    )
    return result.scalar_one()


async def get_monthly_usage(
    db: AsyncSession,
    user_id: str,
    year_month: str | None = None,
) -> UsageMonthly | None:
    result = await db.execute(
        select(UsageMonthly).where(
            UsageMonthly.user_id == user_id,
            UsageMonthly.year_month == (year_month or year_month_for()),
        )
    )
    return result.scalar_one_or_none()


async def get_daily_usage(
    db: AsyncSession,
    user_id: str,
    day: date | None = None,
) -> UsageDaily | None:
    result = await db.execute(
        select(UsageDaily).where(
            UsageDaily.user_id == user_id,
            UsageDaily.usage_date == (day or usage_date_for()),
        )
    )
    return result.scalar_one_or_none()


async def record_usage(
    db: AsyncSession,
    user_id: str,
    cost: Decimal,
    used_own_key: bool = False,
    now: datetime | None = None,
) -> None:
    """Count one generation in the monthly bucket, then the daily bucket."""
    now = now or datetime.now(UTC)
    own_key = 1 if used_own_key else 0

    stmt = pg_insert(UsageMonthly).values(
        user_id=user_id,
        year_month=year_month_for(now),
        image_count=1,
        total_cost=cost,
        used_own_key=own_key,
    )
    await db.execute(
        stmt.on_conflict_do_update(
            index_elements=["user_id", "year_month"],
            set_={
                "image_count": UsageMonthly.image_count + 1,
                "total_cost": UsageMonthly.total_cost + stmt.excluded.total_cost,
                "used_own_key": UsageMonthly.used_own_key + stmt.excluded.used_own_key,
                "updated_at": func.now(),
            },
        )
    )
    await record_daily_usage(db, user_id, now)

    logger.debug(
        "Usage recorded",
        user_id=user_id,
        cost=str(cost),
        used_own_key=used_own_key,
    )


async def record_daily_usage(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> None:
    """Count one generation in the UTC-day bucket. No cost at this granularity."""
    await db.execute(
        pg_insert(UsageDaily)
        .values(user_id=user_id, usage_date=usage_date_for(now), image_count=1)
        .on_conflict_do_update(
            index_elements=["user_id", "usage_date"],
            set_={"image_count": UsageDaily.image_count + 1},
        )
    )


async def get_usage_history(
    db: AsyncSession,
    user_id: str,
    days: int = 30,
    today: date | None = None,
) -> list[dict[str, Any]]:
    """Daily image counts for the last ``days`` days, oldest first, zero-filled."""
    end = today or usage_date_for()
    start = end - timedelta(days=days - 1)

    result = await db.execute(
        select(UsageDaily.usage_date, UsageDaily.image_count).where(
            UsageDaily.user_id == user_id,
            UsageDaily.usage_date >= start,
            UsageDaily.usage_date <= end,
        )
    )
    counts = {row.usage_date: row.image_count for row in result.all()}

    return [
        {
            "date": (start + timedelta(days=offset)).isoformat(),
            "image_count": counts.get(start + timedelta(days=offset), 0),
        }
        for offset in range(days)
    ]


async def list_monthly_usage(db: AsyncSession, user_id: str) -> Sequence[UsageMonthly]:
    """Every month the user has counters for, newest first."""
    result = await db.execute(
        select(UsageMonthly)
        .where(UsageMonthly.user_id == user_id)
        .order_by(UsageMonthly.year_month.desc())
    )
    return result.scalars().all()
