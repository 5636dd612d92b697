"""
Pytest fixtures for billing service tests.

This module provides:
- Test environment (secrets, webhook secret, internal token)
- A mocked AsyncSession with working savepoints
- An HTTP client for the FastAPI app with the database overridden
- JWT helpers for member and admin callers
"""

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-unit-tests-only-0123456789")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("INTERNAL_SERVICE_TOKEN", "internal-test-token")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt

from metered_billing.config import settings
from metered_billing.database import get_db

TEST_USER_ID = "user-123"
TEST_ADMIN_ID = "admin-456"


class _Savepoint:
    """Stands in for ``AsyncSession.begin_nested()``; never swallows errors."""

    def __init__(self, db: "MagicMock") -> None:
        self.db = db

    async def __aenter__(self) -> "_Savepoint":
        self.db.savepoints += 1
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if exc_type is not None:
            self.db.rollbacks += 1
        return False


def make_mock_db() -> AsyncMock:
    """AsyncMock session: sync ``add``, real savepoint context managers."""
    db = AsyncMock()
    db.add = MagicMock()
    db.savepoints = 0
    db.rollbacks = 0
    db.begin_nested = MagicMock(side_effect=lambda: _Savepoint(db))
    return db


def result_of(
    scalar: Any = None,
    scalars: list[Any] | None = None,
    rows: list[Any] | None = None,
) -> MagicMock:
    """Mock of a SQLAlchemy ``Result`` for the accessors the services use."""
    result = MagicMock()
    result.scalar_one.return_value = scalar
    result.scalar_one_or_none.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    result.all.return_value = rows or []
    result.first.return_value = rows[0] if rows else None
    return result


def make_token(user_id: str = TEST_USER_ID, role: str = "member", **claims: Any) -> str:
    payload = {"sub": user_id, "role": role, "email": f"{user_id}@example.com", **claims}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id: str = TEST_USER_ID, role: str = "member") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: dict[str, Any], event_id: str = "evt_test") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def mock_db() -> AsyncMock:
    """Fresh mocked session per test."""
    return make_mock_db()


@pytest.fixture
def member_headers() -> dict[str, str]:
    return auth_headers(TEST_USER_ID, "member")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers(TEST_ADMIN_ID, "admin")


@pytest_asyncio.fixture
async def client(mock_db: AsyncMock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app. Lifespan does not run, so no real database is opened."""
    from metered_billing.main import app

    async def override_get_db() -> AsyncGenerator[AsyncMock, None]:
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_result() -> Any:
    """Factory for mocked query results, see ``result_of``."""
    return result_of


@pytest.fixture
def sign_stripe() -> Any:
    """Sign a webhook body with the configured webhook secret."""

    def _sign(payload: bytes, secret: str | None = None, timestamp: int | None = None) -> str:
        return stripe_signature(payload, secret or settings.STRIPE_WEBHOOK_SECRET or "", timestamp)

    return _sign


@pytest.fixture
def stripe_payload() -> Any:
    """Factory for raw webhook bodies, see ``stripe_event``."""
    return stripe_event
