"""Generation orchestration: quota check, provider call, then billing.

Everything runs inside the caller's transaction while the user's monthly
usage row is locked, so concurrent requests from one user serialize.
Nothing billable is written until the adapter has returned successfully.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from metered_billing.config import settings
from metered_billing.database.models import Generation, PlatformCost
from metered_billing.exceptions import GenerationProviderError, InvalidBillingInputError
from metered_billing.services.credits import deduct_credit
from metered_billing.services.pricing import CostEstimator, GenerationShape, get_cost_estimator
from metered_billing.services.quota import QuotaDecision, can_generate
from metered_billing.services.subscriptions import provision_user
from metered_billing.services.usage import lock_monthly_usage, record_usage

logger = structlog.get_logger()

MAX_OUTPUTS_PER_REQUEST = 4

# Each slot holds a pooled connection for the whole provider call
_generation_slots = asyncio.Semaphore(settings.MAX_CONCURRENT_GENERATIONS)

# Provider inputs that change what is billed; only the typed request fields may set them
RESERVED_INPUT_KEYS = frozenset(
    {
        "prompt",
        "num_outputs",
        "resolution",
        "width",
        "height",
        "aspect_ratio",
        "image_input",
        "input_images",
    }
)


@dataclass
class GenerationRequest:
    """What the caller asked for."""

    model: str
    prompt: str
    num_outputs: int = 1
    resolution: str | None = None
    width: int | None = None
    height: int | None = None
    input_images: list[str] = field(default_factory=list)
    extra_input: dict[str, Any] = field(default_factory=dict)
    # Bring-your-own provider token; still counts toward quota
    api_key: str | None = None

    @property
    def used_own_key(self) -> bool:
        return bool(self.api_key)

    def shape(self) -> GenerationShape:
        return GenerationShape(
            num_outputs=self.num_outputs,
            resolution=self.resolution,
            width=self.width,
            height=self.height,
            has_image_input=bool(self.input_images),
            input_image_count=len(self.input_images),
        )

    def parameters(self) -> dict[str, Any]:
        """Stored alongside the generation so costs can be recomputed later."""
        return {
            **self.extra_input,
            "num_outputs": self.num_outputs,
            "resolution": self.resolution,
            "width": self.width,
            "height": self.height,
            "has_image_input": bool(self.input_images),
            "input_image_count": len(self.input_images),
        }


@dataclass
class AdapterResult:
    """Provider response for a finished job."""

    external_job_id: str | None
    outputs: list[str]
    compute_duration_seconds: float | None = None


class GenerationAdapter(Protocol):
    """Anything that can turn a request into images."""

    async def submit(self, request: GenerationRequest) -> AdapterResult: ...


@dataclass
class GenerationOutcome:
    """Result of ``run_generation``. ``generation`` is None on quota denial."""

    decision: QuotaDecision
    generation: Generation | None = None
    cost: Decimal | None = None
    credit_used: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


def validate_request(request: GenerationRequest) -> None:
    """Reject malformed requests before any side effect."""
    if not request.model:
        raise InvalidBillingInputError("model", "is required")
    if not request.prompt or not request.prompt.strip():
        raise InvalidBillingInputError("prompt", "is required")
    if not 1 <= request.num_outputs <= MAX_OUTPUTS_PER_REQUEST:
        raise InvalidBillingInputError(
            "num_outputs", f"must be between 1 and {MAX_OUTPUTS_PER_REQUEST}"
        )
    reserved = sorted(RESERVED_INPUT_KEYS.intersection(request.extra_input))
    if reserved:
        raise InvalidBillingInputError(
            "parameters", f"cannot set {', '.join(reserved)}; use the request fields"
        )


async def run_generation(
    db: AsyncSession,
    user_id: str,
    request: GenerationRequest,
    adapter: GenerationAdapter,
    estimator: CostEstimator | None = None,
    now: datetime | None = None,
) -> GenerationOutcome:
    """Check quota, generate, then record usage, credit debit and cost rows.

    At most ``MAX_CONCURRENT_GENERATIONS`` run at once per process. Callers
    beyond that wait here before their session touches the database.

    Raises:
        InvalidBillingInputError: malformed request.
        GenerationProviderError: the adapter failed; nothing was billed.
    """
    validate_request(request)
    async with _generation_slots:
        return await _generate(
            db,
            user_id,
            request,
            adapter,
            estimator or get_cost_estimator(),
            now or datetime.now(UTC),
        )


async def _generate(
    db: AsyncSession,
    user_id: str,
    request: GenerationRequest,
    adapter: GenerationAdapter,
    estimator: CostEstimator,
    now: datetime,
) -> GenerationOutcome:
    await lock_monthly_usage(db, user_id, now)
    await provision_user(db, user_id)

    decision = await can_generate(db, user_id, now)
    if not decision.allowed:
        return GenerationOutcome(decision=decision)

    try:
        result = await adapter.submit(request)
    except GenerationProviderError:
        logger.warning("Generation provider failed", user_id=user_id, model=request.model)
        raise
    except Exception as e:
        logger.exception("Generation adapter error", user_id=user_id, model=request.model)
        raise GenerationProviderError(str(e)) from e

    cost = estimator.estimate(request.model, request.shape())
    await record_usage(db, user_id, cost, used_own_key=request.used_own_key, now=now)

    credit_used = False
    if decision.needs_credit:
        credit_used = await deduct_credit(
            db, user_id, f"Generation beyond plan limits ({request.model})"
        )
        if not credit_used:
            # Balance was checked under the same lock, so this indicates drift
            logger.error("Credit debit failed after allowed generation", user_id=user_id)

    generation = Generation(
        user_id=user_id,
        model=request.model,
        prompt=request.prompt,
        parameters=request.parameters(),
        width=request.width,
        height=request.height,
        num_outputs=request.num_outputs,
        output_urls=result.outputs,
        external_job_id=result.external_job_id,
        predict_time=(
            Decimal(str(result.compute_duration_seconds))
            if result.compute_duration_seconds is not None
            else None
        ),
        used_own_key=request.used_own_key,
        cost=cost,
    )
    db.add(generation)
    await db.flush()

    # Own-key runs are paid by the user at the provider
    if not request.used_own_key:
        db.add(
            PlatformCost(
                generation_id=generation.id,
                external_job_id=result.external_job_id,
                model=request.model,
                estimated_cost=cost,
            )
        )
        await db.flush()

    logger.info(
        "Generation recorded",
        user_id=user_id,
        generation_id=generation.id,
        model=request.model,
        cost=str(cost),
        credit_used=credit_used,
        used_own_key=request.used_own_key,
    )
    return GenerationOutcome(
        decision=decision,
        generation=generation,
        cost=cost,
        credit_used=credit_used,
    )
