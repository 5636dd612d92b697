"""Unit tests for catalog cost estimation."""

from decimal import Decimal

import pytest

from metered_billing.services.pricing import (
    FALLBACK_PRICE,
    MODEL_PRICING,
    CostEstimator,
    GenerationShape,
    PricingMode,
    estimate_cost,
    parse_megapixels,
)


@pytest.mark.unit
class TestParseMegapixels:
    def test_mp_label_used_verbatim(self) -> None:
        assert parse_megapixels("2 MP") == Decimal(2)
        assert parse_megapixels("0.5mp") == Decimal("0.5")

    def test_k_labels_map_to_encoder_sizes(self) -> None:
        assert parse_megapixels("1K") == Decimal(1)
        assert parse_megapixels("2K") == Decimal(2)
        assert parse_megapixels("4K") == Decimal(8)

    def test_unknown_k_label_falls_back_to_dimensions(self) -> None:
        assert parse_megapixels("3K", width=1000, height=500) == Decimal("0.5")

    def test_dimensions(self) -> None:
        assert parse_megapixels(width=2048, height=1024) == Decimal("2.097152")

    def test_default_is_one_megapixel(self) -> None:
        assert parse_megapixels() == Decimal(1)
        assert parse_megapixels("square") == Decimal(1)


@pytest.mark.unit
class TestCostEstimator:
    def test_flat_model_scales_with_outputs(self) -> None:
        estimator = CostEstimator()
        cost = estimator.estimate("black-forest-labs/flux-schnell", GenerationShape(num_outputs=4))
        assert cost == Decimal("0.012")

    def test_flat_model_ignores_resolution(self) -> None:
        estimator = CostEstimator()
        cost = estimator.estimate(
            "black-forest-labs/flux-1.1-pro", GenerationShape(resolution="4 MP")
        )
        assert cost == Decimal("0.04")

    def test_area_model_scales_with_megapixels(self) -> None:
        estimator = CostEstimator()
        cost = estimator.estimate(
            "black-forest-labs/flux-2-pro", GenerationShape(resolution="4 MP", num_outputs=2)
        )
        assert cost == Decimal("0.015") * 4 * 2

    def test_area_model_adds_input_image_surcharge(self) -> None:
        estimator = CostEstimator()
        shape = GenerationShape(resolution="1 MP", has_image_input=True, input_image_count=3)
        cost = estimator.estimate("black-forest-labs/flux-2-dev", shape)
        assert cost == Decimal("0.012") + Decimal("0.012") * 3

    def test_image_input_flag_without_count_charges_one_image(self) -> None:
        estimator = CostEstimator()
        shape = GenerationShape(has_image_input=True)
        cost = estimator.estimate("black-forest-labs/flux-2-dev", shape)
        assert cost == Decimal("0.024")

    def test_unknown_model_uses_fallback(self) -> None:
        estimator = CostEstimator()
        assert estimator.estimate("someone/new-model") == FALLBACK_PRICE
        assert estimator.estimate(
            "someone/new-model", GenerationShape(num_outputs=2)
        ) == FALLBACK_PRICE * 2

    def test_zero_outputs_priced_as_one(self) -> None:
        estimator = CostEstimator()
        cost = estimator.estimate("black-forest-labs/flux-dev", GenerationShape(num_outputs=0))
        assert cost == Decimal("0.025")

    def test_custom_table(self) -> None:
        estimator = CostEstimator(pricing={}, fallback_price=Decimal("0.5"))
        assert estimator.get_pricing("black-forest-labs/flux-dev") is None
        assert estimator.estimate("black-forest-labs/flux-dev") == Decimal("0.5")

    def test_estimate_cost_shorthand(self) -> None:
        assert estimate_cost("google/nano-banana-pro", num_outputs=2) == Decimal("0.4")


@pytest.mark.unit
class TestGenerationShape:
    def test_from_parameters(self) -> None:
        shape = GenerationShape.from_parameters(
            {"num_outputs": 3, "resolution": "2K", "input_image_count": 2}
        )
        assert shape.num_outputs == 3
        assert shape.resolution == "2K"
        assert shape.has_image_input is True
        assert shape.input_image_count == 2

    def test_from_empty_parameters(self) -> None:
        shape = GenerationShape.from_parameters({})
        assert shape.num_outputs == 1
        assert shape.has_image_input is False


@pytest.mark.unit
def test_catalog_entries_serialize() -> None:
    entry = MODEL_PRICING["black-forest-labs/flux-2-pro"]
    assert entry.mode == PricingMode.AREA
    assert entry.to_dict() == {
        "model_id": "black-forest-labs/flux-2-pro",
        "mode": "area",
        "base_price": "0.015",
        "input_image_price": "0.015",
    }
