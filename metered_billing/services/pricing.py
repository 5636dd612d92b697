"""Catalog-based cost estimation for image generation.

Prices come from a static per-model table with two modes:
- flat: base price per output image
- area: base price per output megapixel, plus an optional surcharge per
  reference image supplied as input

Estimation never fails. Unknown models are priced at FALLBACK_PRICE.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

logger = structlog.get_logger()

FALLBACK_PRICE = Decimal("0.025")
DEFAULT_MEGAPIXELS = Decimal(1)

# "NK" labels follow real encoder output sizes, not a linear scale
K_RESOLUTION_MEGAPIXELS: dict[int, Decimal] = {
    1: Decimal(1),
    2: Decimal(2),
    4: Decimal(8),
}

_MP_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*MP\s*$", re.IGNORECASE)
_K_PATTERN = re.compile(r"^\s*(\d+)\s*K\s*$", re.IGNORECASE)


class PricingMode(str, Enum):
    """How a model's base price scales."""

    FLAT = "flat"
    AREA = "area"


@dataclass(frozen=True)
class ModelPricing:
    """Pricing entry for one model."""

    model_id: str
    mode: PricingMode
    base_price: Decimal
    input_image_price: Decimal = Decimal(0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "model_id": self.model_id,
            "mode": self.mode.value,
            "base_price": str(self.base_price),
            "input_image_price": str(self.input_image_price),
        }


def _flat(model_id: str, price: str) -> ModelPricing:
    return ModelPricing(model_id, PricingMode.FLAT, Decimal(price))


def _area(model_id: str, price: str, input_price: str = "0") -> ModelPricing:
    return ModelPricing(model_id, PricingMode.AREA, Decimal(price), Decimal(input_price))


MODEL_PRICING: dict[str, ModelPricing] = {
    p.model_id: p
    for p in (
        _flat("black-forest-labs/flux-schnell", "0.003"),
        _area("black-forest-labs/flux-2-dev", "0.012", "0.012"),
        _flat("black-forest-labs/flux-dev", "0.025"),
        _flat("black-forest-labs/flux-1.1-pro", "0.04"),
        _area("black-forest-labs/flux-2-pro", "0.015", "0.015"),
        _flat("black-forest-labs/flux-1.1-pro-ultra", "0.06"),
        _flat("black-forest-labs/flux-redux-schnell", "0.025"),
        _flat("black-forest-labs/flux-redux-dev", "0.1"),
        _flat("black-forest-labs/flux-kontext-pro", "0.04"),
        _flat("google/nano-banana-pro", "0.2"),
    )
}


@dataclass
class GenerationShape:
    """Cost-relevant shape of a generation request."""

    num_outputs: int = 1
    resolution: str | None = None
    width: int | None = None
    height: int | None = None
    has_image_input: bool = False
    input_image_count: int = 0

    @classmethod
    def from_parameters(cls, params: dict[str, Any]) -> "GenerationShape":
        """Build a shape from stored generation parameters."""
        input_count = int(params.get("input_image_count") or 0)
        return cls(
            num_outputs=int(params.get("num_outputs") or 1),
            resolution=params.get("resolution"),
            width=params.get("width"),
            height=params.get("height"),
            has_image_input=bool(params.get("has_image_input") or input_count > 0),
            input_image_count=input_count,
        )


def parse_megapixels(
    resolution: str | None = None,
    width: int | None = None,
    height: int | None = None,
) -> Decimal:
    """Resolve output megapixels from whatever the request carries.

    "N MP" is used verbatim, "NK" goes through K_RESOLUTION_MEGAPIXELS,
    otherwise width x height / 1,000,000, otherwise 1 MP.
    """
    if resolution:
        mp_match = _MP_PATTERN.match(resolution)
        if mp_match:
            return Decimal(mp_match.group(1))
        k_match = _K_PATTERN.match(resolution)
        if k_match and int(k_match.group(1)) in K_RESOLUTION_MEGAPIXELS:
            return K_RESOLUTION_MEGAPIXELS[int(k_match.group(1))]
    if width and height:
        return Decimal(width * height) / Decimal(1_000_000)
    return DEFAULT_MEGAPIXELS


class CostEstimator:
    """Prices a generation from the model catalog. Pure, never raises."""

    def __init__(
        self,
        pricing: dict[str, ModelPricing] | None = None,
        fallback_price: Decimal = FALLBACK_PRICE,
    ) -> None:
        self.pricing = pricing if pricing is not None else MODEL_PRICING
        self.fallback_price = fallback_price

    def get_pricing(self, model: str) -> ModelPricing | None:
        return self.pricing.get(model)

    def estimate(self, model: str, shape: GenerationShape | None = None) -> Decimal:
        """Estimated provider cost in dollars for one request."""
        shape = shape or GenerationShape()
        num_outputs = max(shape.num_outputs, 1)
        pricing = self.pricing.get(model)

        if pricing is None:
            logger.debug("No pricing for model, using fallback", model=model)
            return self.fallback_price * num_outputs

        if pricing.mode == PricingMode.FLAT:
            return pricing.base_price * num_outputs

        megapixels = parse_megapixels(shape.resolution, shape.width, shape.height)
        cost = pricing.base_price * megapixels * num_outputs
        if shape.has_image_input and pricing.input_image_price:
            cost += pricing.input_image_price * max(shape.input_image_count, 1)
        return cost


_default_estimator = CostEstimator()


def get_cost_estimator() -> CostEstimator:
    """Get the estimator backed by the built-in pricing table."""
    return _default_estimator


def estimate_cost(model: str, **shape: Any) -> Decimal:
    """Shorthand for ``get_cost_estimator().estimate(model, GenerationShape(**shape))``."""
    return _default_estimator.estimate(model, GenerationShape(**shape))
