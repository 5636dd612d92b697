"""Operator tooling for generation costs.

Recalculation re-prices stored generations with the current catalog. It is
the only path allowed to rewrite ``Generation.cost`` and re-sum monthly
usage cost totals.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.database.models import Generation, UsageMonthly
from metered_billing.services.pricing import (
    MODEL_PRICING,
    CostEstimator,
    GenerationShape,
    get_cost_estimator,
)
from metered_billing.services.usage import year_month_for

logger = structlog.get_logger()

COST_EPSILON = Decimal("0.0001")
SAMPLE_MEGAPIXELS = ("1 MP", "2 MP", "4 MP")


def _stored_shape(generation: Generation) -> GenerationShape:
    shape = GenerationShape.from_parameters(generation.parameters or {})
    shape.num_outputs = generation.num_outputs or 1
    shape.width = shape.width or generation.width
    shape.height = shape.height or generation.height
    return shape


async def _resum_monthly_costs(db: AsyncSession, pairs: set[tuple[str, str]]) -> None:
    """Set usage_monthly.total_cost from the generations of each (user, YYYY-MM)."""
    month = func.to_char(func.timezone("UTC", Generation.created_at), "YYYY-MM")
    for user_id, year_month in pairs:
        result = await db.execute(
            select(func.coalesce(func.sum(Generation.cost), 0)).where(
                Generation.user_id == user_id, month == year_month
            )
        )
        await db.execute(
            update(UsageMonthly)
            .where(UsageMonthly.user_id == user_id, UsageMonthly.year_month == year_month)
            .values(total_cost=result.scalar_one())
        )


async def recalculate_costs(
    db: AsyncSession,
    dry_run: bool = True,
    estimator: CostEstimator | None = None,
) -> dict[str, Any]:
    """Re-price every generation and report the differences per model.

    With ``dry_run`` False, changed costs are written back and the affected
    monthly usage totals are re-summed.
    """
    estimator = estimator or get_cost_estimator()
    result = await db.execute(select(Generation).order_by(Generation.created_at))
    generations = list(result.scalars().all())

    by_model: dict[str, dict[str, Any]] = defaultdict(
        lambda: {"count": 0, "old_total": Decimal(0), "new_total": Decimal(0)}
    )
    old_total = Decimal(0)
    new_total = Decimal(0)
    updated = 0
    touched: set[tuple[str, str]] = set()

    for generation in generations:
        old_cost = Decimal(generation.cost or 0)
        new_cost = estimator.estimate(generation.model, _stored_shape(generation))
        old_total += old_cost
        new_total += new_cost

        summary = by_model[generation.model]
        summary["count"] += 1
        summary["old_total"] += old_cost
        summary["new_total"] += new_cost

        if abs(old_cost - new_cost) > COST_EPSILON:
            updated += 1
            if not dry_run:
                generation.cost = new_cost
                touched.add((generation.user_id, year_month_for(generation.created_at)))

    if not dry_run and touched:
        await db.flush()
        await _resum_monthly_costs(db, touched)

    logger.info(
        "Cost recalculation finished",
        dry_run=dry_run,
        total=len(generations),
        updated=updated,
    )
    return {
        "dry_run": dry_run,
        "total_generations": len(generations),
        "generations_updated": updated,
        "old_total_cost": round(float(old_total), 4),
        "new_total_cost": round(float(new_total), 4),
        "cost_difference": round(float(new_total - old_total), 4),
        "summary_by_model": [
            {
                "model": model,
                "count": s["count"],
                "old_total": round(float(s["old_total"]), 4),
                "new_total": round(float(s["new_total"]), 4),
                "difference": round(float(s["new_total"] - s["old_total"]), 4),
            }
            for model, s in sorted(by_model.items())
        ],
    }


def pricing_samples(estimator: CostEstimator | None = None) -> list[dict[str, Any]]:
    """Per-image cost at 1, 2 and 4 MP for every catalog model."""
    estimator = estimator or get_cost_estimator()
    samples = []
    for model_id, pricing in MODEL_PRICING.items():
        costs = [
            float(estimator.estimate(model_id, GenerationShape(resolution=resolution)))
            for resolution in SAMPLE_MEGAPIXELS
        ]
        samples.append(
            {
                **pricing.to_dict(),
                "cost_per_image_1mp": costs[0],
                "cost_per_image_2mp": costs[1],
                "cost_per_image_4mp": costs[2],
            }
        )
    return samples
