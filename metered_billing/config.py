"""Application configuration using Pydantic Settings."""

import json
import os
import secrets
import warnings
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from metered_billing.exceptions import DefaultSecretKeyError, ShortSecretKeyError

# Minimum length for JWT secret key in production
MIN_JWT_SECRET_LENGTH = 32

_ENV_JWT_SECRET = os.environ.get("JWT_SECRET_KEY")
if _ENV_JWT_SECRET:
    _DEV_JWT_SECRET = _ENV_JWT_SECRET
else:
    # Random per-process secret so no hardcoded key can leak into a deployment
    _DEV_JWT_SECRET = secrets.token_urlsafe(48)
    if os.environ.get("ENVIRONMENT", "development") != "test":
        warnings.warn(
            "JWT_SECRET_KEY not set - using auto-generated secret. "
            "Tokens will not validate across restarts. "
            "Set JWT_SECRET_KEY in environment for persistent sessions.",
            stacklevel=2,
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Application
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    PORT: int = 3001
    DEBUG: bool = False

    # CORS - stored as raw string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS_RAW: str = Field(
        default='["http://localhost:3000"]',
        validation_alias="CORS_ORIGINS",
    )

    @property
    def CORS_ORIGINS(self) -> list[str]:  # noqa: N802 - matches env var name
        """Parse CORS origins from JSON array, comma-separated, or plain string."""
        v = self.CORS_ORIGINS_RAW.strip() if self.CORS_ORIGINS_RAW else ""
        if not v:
            return ["http://localhost:3000"]
        if v.startswith("["):
            try:
                parsed = json.loads(v)
                return [str(x) for x in parsed] if isinstance(parsed, list) else [v]
            except json.JSONDecodeError:
                pass
        if "," in v:
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return [v]

    # Database
    # Each in-flight generation holds one pooled connection and the user's usage
    # row lock until the provider finishes (up to REPLICATE_MAX_WAIT), so
    # MAX_CONCURRENT_GENERATIONS must stay below pool size plus overflow.
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/metered_billing"
    DB_POOL_SIZE: int = 10  # Minimum connections in pool
    DB_POOL_MAX_OVERFLOW: int = 20  # Max additional connections above pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # Auth
    JWT_SECRET_KEY: str = _DEV_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, _info: object) -> str:
        """Validate JWT secret meets security requirements in production."""
        if os.environ.get("ENVIRONMENT", "development") == "production":
            if not os.environ.get("JWT_SECRET_KEY"):
                raise DefaultSecretKeyError
            if len(v) < MIN_JWT_SECRET_LENGTH:
                raise ShortSecretKeyError
        return v

    # Service-to-service token (generation workers, schedulers)
    INTERNAL_SERVICE_TOKEN: str = ""

    @field_validator("INTERNAL_SERVICE_TOKEN")
    @classmethod
    def validate_internal_token(cls, v: str) -> str:
        """Require an internal token in production."""
        if os.environ.get("ENVIRONMENT", "development") == "production" and not v:
            raise ValueError("INTERNAL_SERVICE_TOKEN required in production")  # noqa: TRY003
        return v

    # Frontend URL for checkout/portal redirects
    FRONTEND_URL: str = "http://localhost:3000"

    # Stripe
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None

    # Replicate (generation provider)
    REPLICATE_API_TOKEN: str | None = None
    REPLICATE_API_URL: str = "https://api.replicate.com/v1"
    REPLICATE_POLL_INTERVAL: float = 1.0  # Seconds between prediction status polls
    REPLICATE_MAX_WAIT: float = 300.0  # Give up on a prediction after 5 minutes
    MAX_CONCURRENT_GENERATIONS: int = 20  # Per process; excess requests wait without a connection

    # ============== HTTP Client Timeouts ==============
    HTTP_TIMEOUT_DEFAULT: float = 30.0

    # ============== Background Jobs ==============
    RECONCILE_INTERVAL: int = 3600  # Cost reconciliation every hour
    RECONCILE_BATCH_LIMIT: int = 100
    RECONCILE_ADMIN_LIMIT: int = 500  # Operator-triggered runs take a bigger bite
    RECONCILE_DELAY: float = 0.1  # Pause between provider lookups
    RECONCILE_MAX_ATTEMPTS: int = 3  # Lookups without compute time before a generation is skipped
    SNAPSHOT_INTERVAL: int = 86400  # Financial snapshots once a day

    # ============== Billing Policy ==============
    DEFAULT_PLAN_NAME: str = "Free"
    NON_SUBSCRIBER_MARKUP: Decimal = Decimal("1.5")

    @model_validator(mode="after")
    def validate_generation_concurrency(self) -> "Settings":
        """Leave pooled connections for other endpoints while generations run."""
        pool_total = self.DB_POOL_SIZE + self.DB_POOL_MAX_OVERFLOW
        if not 0 < self.MAX_CONCURRENT_GENERATIONS < pool_total:
            raise ValueError(  # noqa: TRY003
                f"MAX_CONCURRENT_GENERATIONS must be between 1 and {pool_total - 1}"
            )
        return self

    @property
    def stripe_configured(self) -> bool:
        """Whether both Stripe secrets are present."""
        return bool(self.STRIPE_SECRET_KEY and self.STRIPE_WEBHOOK_SECRET)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
