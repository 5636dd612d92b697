"""Generation route: quota-checked, billed image generation."""

from typing import Any

import structlog
from fastapi import APIRouter, Request, Response
from pydantic import BaseModel, Field

from metered_billing.middleware.auth import get_current_user_id
from metered_billing.routes.dependencies import Adapter, DbSession
from metered_billing.routes.user import quota_denied_response
from metered_billing.services.generation import (
    MAX_OUTPUTS_PER_REQUEST,
    GenerationRequest,
    run_generation,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/generations", tags=["generations"])


class GenerationCreateRequest(BaseModel):
    model: str = Field(..., min_length=1, max_length=255)
    prompt: str = Field(..., min_length=1, max_length=10000)
    num_outputs: int = Field(default=1, ge=1, le=MAX_OUTPUTS_PER_REQUEST)
    resolution: str | None = Field(default=None, max_length=20)
    width: int | None = Field(default=None, ge=64, le=8192)
    height: int | None = Field(default=None, ge=64, le=8192)
    input_images: list[str] = Field(default_factory=list, max_length=8)
    parameters: dict[str, Any] = Field(default_factory=dict)
    # Bring-your-own provider token
    api_key: str | None = None


class GenerationResponse(BaseModel):
    id: str
    model: str
    output_urls: list[str]
    cost: float
    credit_used: bool
    used_own_key: bool


@router.post("", response_model=GenerationResponse, status_code=201)
async def create_generation(
    body: GenerationCreateRequest,
    request: Request,
    db: DbSession,
    adapter: Adapter,
) -> GenerationResponse | Response:
    """Generate images if the user's quota allows it."""
    user_id = get_current_user_id(request)
    outcome = await run_generation(
        db,
        user_id,
        GenerationRequest(
            model=body.model,
            prompt=body.prompt,
            num_outputs=body.num_outputs,
            resolution=body.resolution,
            width=body.width,
            height=body.height,
            input_images=body.input_images,
            extra_input=body.parameters,
            api_key=body.api_key,
        ),
        adapter,
    )
    if outcome.generation is None:
        return quota_denied_response(outcome.decision)

    generation = outcome.generation
    return GenerationResponse(
        id=generation.id,
        model=generation.model,
        output_urls=generation.output_urls,
        cost=float(generation.cost),
        credit_used=outcome.credit_used,
        used_own_key=generation.used_own_key,
    )
