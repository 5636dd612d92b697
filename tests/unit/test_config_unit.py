"""Unit tests for settings parsing and production validation."""

import pytest
from pydantic import ValidationError

from metered_billing.config import Settings


@pytest.mark.unit
class TestCorsOrigins:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ('["https://a.example", "https://b.example"]', ["https://a.example", "https://b.example"]),
            ("https://a.example, https://b.example", ["https://a.example", "https://b.example"]),
            ("https://a.example", ["https://a.example"]),
            ("", ["http://localhost:3000"]),
        ],
    )
    def test_parsing(self, raw: str, expected: list[str]) -> None:
        assert Settings(CORS_ORIGINS=raw).CORS_ORIGINS == expected


@pytest.mark.unit
class TestProductionValidation:
    def test_short_jwt_secret_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("JWT_SECRET_KEY", "short")
        with pytest.raises(ValidationError):
            Settings()

    def test_internal_token_required(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("JWT_SECRET_KEY", "x" * 40)
        monkeypatch.setenv("INTERNAL_SERVICE_TOKEN", "")
        with pytest.raises(ValidationError):
            Settings()

    def test_valid_production_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("JWT_SECRET_KEY", "x" * 40)
        monkeypatch.setenv("INTERNAL_SERVICE_TOKEN", "svc-token")
        assert Settings().ENVIRONMENT == "production"


@pytest.mark.unit
def test_stripe_configured_needs_both_secrets() -> None:
    assert Settings(STRIPE_SECRET_KEY="sk_test_x", STRIPE_WEBHOOK_SECRET=None).stripe_configured is False
    assert Settings(STRIPE_SECRET_KEY="sk_test_x", STRIPE_WEBHOOK_SECRET="whsec_x").stripe_configured is True


@pytest.mark.unit
class TestGenerationConcurrency:
    def test_must_leave_pool_headroom(self) -> None:
        with pytest.raises(ValidationError):
            Settings(DB_POOL_SIZE=5, DB_POOL_MAX_OVERFLOW=5, MAX_CONCURRENT_GENERATIONS=10)

    def test_must_allow_at_least_one(self) -> None:
        with pytest.raises(ValidationError):
            Settings(MAX_CONCURRENT_GENERATIONS=0)

    def test_default_fits_default_pool(self) -> None:
        settings = Settings()
        assert settings.MAX_CONCURRENT_GENERATIONS < (
            settings.DB_POOL_SIZE + settings.DB_POOL_MAX_OVERFLOW
        )
