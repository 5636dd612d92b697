"""Cost reconciliation against provider-reported compute time.

Actual cost is duration x per-second hardware rate. This is a separate
model from the catalog estimate charged at generation time, and it is
informational only: reconciliation never rewrites ``Generation.cost`` or
the monthly usage totals that quota enforcement reads.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import settings
from metered_billing.database.models import Generation, PlatformCost
from metered_billing.exceptions import GenerationNotFoundError
from metered_billing.services.subscriptions import get_active_subscription
from metered_billing.services.usage import get_monthly_usage, year_month_for

if TYPE_CHECKING:
    from metered_billing.database import Database

logger = structlog.get_logger()

# Dollars per second of provider hardware time
HARDWARE_RATES: dict[str, Decimal] = {
    "gpu-a40-large": Decimal("0.000725"),
    "gpu-a100-40gb": Decimal("0.00115"),
}
DEFAULT_HARDWARE = "gpu-a40-large"
DEFAULT_RATE = HARDWARE_RATES[DEFAULT_HARDWARE]

MODEL_HARDWARE: dict[str, str] = {
    "black-forest-labs/flux-schnell": "gpu-a40-large",
    "black-forest-labs/flux-dev": "gpu-a40-large",
    "black-forest-labs/flux-2-dev": "gpu-a40-large",
    "black-forest-labs/flux-1.1-pro": "gpu-a40-large",
    "black-forest-labs/flux-2-pro": "gpu-a40-large",
    "black-forest-labs/flux-1.1-pro-ultra": "gpu-a40-large",
    "black-forest-labs/flux-redux-schnell": "gpu-a40-large",
    "black-forest-labs/flux-redux-dev": "gpu-a40-large",
    "black-forest-labs/flux-kontext-pro": "gpu-a40-large",
    "google/nano-banana-pro": "gpu-a40-large",
}


class ComputeTimeFetcher(Protocol):
    """Source of provider-measured compute seconds for a job."""

    async def fetch_predict_time(self, prediction_id: str) -> float | None: ...


def rate_for_model(model: str) -> Decimal:
    hardware = MODEL_HARDWARE.get(model, DEFAULT_HARDWARE)
    return HARDWARE_RATES.get(hardware, DEFAULT_RATE)


def duration_cost(model: str, seconds: float | Decimal) -> Decimal:
    """Actual cost for ``seconds`` of compute on the model's hardware."""
    return Decimal(str(seconds)) * rate_for_model(model)


@dataclass
class ReconcileResult:
    processed: int = 0
    reconciled: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "reconciled": self.reconciled, "errors": self.errors}


class CostReconciler:
    """Walks generations with a provider job id and records actual cost."""

    def __init__(self, fetcher: ComputeTimeFetcher, delay: float | None = None) -> None:
        self.fetcher = fetcher
        self.delay = delay if delay is not None else settings.RECONCILE_DELAY

    async def reconcile_one(
        self,
        db: AsyncSession,
        generation_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Reconcile a single generation.

        Returns False when there is nothing to reconcile: no provider job id,
        a job run on the user's own provider key, or no reported compute time.
        The last case counts as an attempt. Provider errors propagate.
        """
        generation = await db.get(Generation, generation_id)
        if generation is None:
            raise GenerationNotFoundError(generation_id)
        if not generation.external_job_id or generation.used_own_key:
            return False

        seconds = await self.fetcher.fetch_predict_time(generation.external_job_id)
        if seconds is None:
            generation.reconcile_attempts = (generation.reconcile_attempts or 0) + 1
            await db.flush()
            logger.debug(
                "No compute time reported",
                generation_id=generation_id,
                attempts=generation.reconcile_attempts,
            )
            return False

        now = now or datetime.now(UTC)
        compute_time = Decimal(str(seconds))
        actual = duration_cost(generation.model, compute_time)

        result = await db.execute(
            select(PlatformCost).where(PlatformCost.generation_id == generation.id)
        )
        platform_cost = result.scalar_one_or_none()
        if platform_cost is None:
            platform_cost = PlatformCost(
                generation_id=generation.id,
                external_job_id=generation.external_job_id,
                model=generation.model,
                estimated_cost=generation.cost,
            )
            db.add(platform_cost)

        platform_cost.actual_cost = actual
        platform_cost.compute_time_seconds = compute_time
        platform_cost.cost_reconciled_at = now
        generation.actual_cost = actual
        generation.predict_time = compute_time
        await db.flush()

        logger.debug(
            "Generation reconciled",
            generation_id=generation_id,
            estimated=str(generation.cost),
            actual=str(actual),
        )
        return True

    async def reconcile_batch(self, db: AsyncSession, limit: int = 100) -> ReconcileResult:
        """Reconcile up to ``limit`` unreconciled generations, newest first.

        Own-key generations and ones that have used up
        ``RECONCILE_MAX_ATTEMPTS`` empty lookups are not selected.
        One provider call at a time with a pause between them. Item failures
        are counted and never abort the batch.
        """
        result = await db.execute(
            select(Generation.id)
            .where(
                Generation.external_job_id.is_not(None),
                Generation.actual_cost.is_(None),
                Generation.used_own_key.is_(False),
                Generation.reconcile_attempts < settings.RECONCILE_MAX_ATTEMPTS,
            )
            .order_by(Generation.created_at.desc())
            .limit(limit)
        )
        generation_ids = list(result.scalars().all())

        outcome = ReconcileResult()
        for index, generation_id in enumerate(generation_ids):
            outcome.processed += 1
            try:
                async with db.begin_nested():
                    if await self.reconcile_one(db, generation_id):
                        outcome.reconciled += 1
            except Exception:
                outcome.errors += 1
                logger.exception("Failed to reconcile generation", generation_id=generation_id)
            if self.delay and index < len(generation_ids) - 1:
                await asyncio.sleep(self.delay)

        logger.info("Cost reconciliation batch finished", **outcome.to_dict())
        return outcome


# Shared by the periodic job and the operator trigger
_reconcile_lock = asyncio.Lock()


def reconciliation_running() -> bool:
    return _reconcile_lock.locked()


async def run_reconciliation(
    database: "Database",
    fetcher: ComputeTimeFetcher,
    limit: int | None = None,
) -> ReconcileResult | None:
    """Run one batch in its own session. Returns None if a batch is already running."""
    if _reconcile_lock.locked():
        logger.info("Cost reconciliation already running, skipping")
        return None
    async with _reconcile_lock:
        async with database.session() as db:
            return await CostReconciler(fetcher).reconcile_batch(
                db, limit or settings.RECONCILE_BATCH_LIMIT
            )


async def get_cost_summary(
    db: AsyncSession,
    start: datetime,
    end: datetime,
    user_id: str | None = None,
) -> dict[str, Any]:
    """Estimated vs actual cost per model in ``[start, end)``.

    Unreconciled rows count their estimate as actual.
    """
    actual = func.coalesce(PlatformCost.actual_cost, PlatformCost.estimated_cost)
    query = (
        select(
            PlatformCost.model,
            func.count(PlatformCost.id).label("generations"),
            func.count(PlatformCost.actual_cost).label("reconciled"),
            func.coalesce(func.sum(PlatformCost.estimated_cost), 0).label("estimated"),
            func.coalesce(func.sum(actual), 0).label("actual"),
        )
        .join(Generation, Generation.id == PlatformCost.generation_id)
        .where(PlatformCost.created_at >= start, PlatformCost.created_at < end)
        .group_by(PlatformCost.model)
        .order_by(func.sum(actual).desc())
    )
    if user_id:
        query = query.where(Generation.user_id == user_id)

    result = await db.execute(query)
    by_model = [
        {
            "model": row.model,
            "generations": row.generations,
            "reconciled": row.reconciled,
            "estimated_cost": round(float(row.estimated), 4),
            "actual_cost": round(float(row.actual), 4),
        }
        for row in result.all()
    ]
    return {
        "total_generations": sum(m["generations"] for m in by_model),
        "total_reconciled": sum(m["reconciled"] for m in by_model),
        "total_estimated_cost": round(sum(m["estimated_cost"] for m in by_model), 4),
        "total_actual_cost": round(sum(m["actual_cost"] for m in by_model), 4),
        "by_model": by_model,
    }


@dataclass
class UserCharge:
    amount_cents: int
    is_overage: bool


async def calculate_user_charge(
    db: AsyncSession,
    user_id: str,
    platform_cost: Decimal,
    now: datetime | None = None,
) -> UserCharge:
    """What to bill the user for one generation costing ``platform_cost``.

    Non-subscribers pay cost x NON_SUBSCRIBER_MARKUP. Subscribers pay only
    for the part above their monthly cost limit, at the overage price.
    """
    now = now or datetime.now(UTC)
    active = await get_active_subscription(db, user_id, now)
    if active is None:
        cents = math.ceil(platform_cost * settings.NON_SUBSCRIBER_MARKUP * 100)
        return UserCharge(amount_cents=cents, is_overage=True)

    product = active.product
    if not product.monthly_cost_limit or product.monthly_cost_limit <= 0:
        return UserCharge(amount_cents=0, is_overage=False)

    usage = await get_monthly_usage(db, user_id, year_month_for(now))
    used = Decimal(usage.total_cost) if usage else Decimal(0)
    limit = Decimal(product.monthly_cost_limit)
    if used + platform_cost <= limit:
        return UserCharge(amount_cents=0, is_overage=False)

    overage = platform_cost - max(Decimal(0), limit - used)
    cents = math.ceil(overage * product.overage_price_cents)
    return UserCharge(amount_cents=cents, is_overage=True)
