"""Unit tests for auth middleware path checks and request helpers."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from metered_billing.middleware import auth as auth_mw


def _make_request(headers: dict[str, str] | None = None, **state: str | None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    request = Request({"type": "http", "path": "/", "method": "GET", "headers": raw})
    for key, value in state.items():
        setattr(request.state, key, value)
    return request


@pytest.mark.unit
def test_is_public_path() -> None:
    assert auth_mw._is_public_path("/health") is True
    assert auth_mw._is_public_path("/api/billing/products") is True
    assert auth_mw._is_public_path("/api/billing/status") is True
    assert auth_mw._is_public_path("/api/billing") is False
    assert auth_mw._is_public_path("/api/webhooks/stripe") is True
    assert auth_mw._is_public_path("/api/billing/checkout") is False
    assert auth_mw._is_public_path("/api/webhooks/stripe/extra") is False


@pytest.mark.unit
def test_prefix_match_respects_boundaries() -> None:
    paths = [("/api/reports", True)]
    assert auth_mw._matches("/api/reports", paths) is True
    assert auth_mw._matches("/api/reports/daily", paths) is True
    assert auth_mw._matches("/api/reportsx", paths) is False


@pytest.mark.unit
def test_is_internal_or_user_path() -> None:
    assert auth_mw._is_internal_or_user_path("/api/admin/financials/reconcile-costs") is True
    assert auth_mw._is_internal_or_user_path("/api/admin/financials/snapshot") is True
    assert auth_mw._is_internal_or_user_path("/api/admin/financials/overview") is False


@pytest.mark.unit
class TestInternalServiceToken:
    def test_matching_token(self) -> None:
        request = _make_request({"X-Internal-Service-Token": "tok"})
        with patch.object(auth_mw.settings, "INTERNAL_SERVICE_TOKEN", "tok"):
            assert auth_mw._verify_internal_service_token(request) is True

    def test_wrong_token(self) -> None:
        request = _make_request({"X-Internal-Service-Token": "nope"})
        with patch.object(auth_mw.settings, "INTERNAL_SERVICE_TOKEN", "tok"):
            assert auth_mw._verify_internal_service_token(request) is False

    def test_unconfigured_token_never_matches(self) -> None:
        request = _make_request({"X-Internal-Service-Token": ""})
        with patch.object(auth_mw.settings, "INTERNAL_SERVICE_TOKEN", None):
            assert auth_mw._verify_internal_service_token(request) is False


@pytest.mark.unit
class TestRequestHelpers:
    def test_current_user_id(self) -> None:
        assert auth_mw.get_current_user_id(_make_request(user_id="u1")) == "u1"

    def test_current_user_id_missing(self) -> None:
        with pytest.raises(HTTPException) as exc:
            auth_mw.get_current_user_id(_make_request())
        assert exc.value.status_code == 401

    def test_current_user_email(self) -> None:
        assert auth_mw.get_current_user_email(_make_request(user_email="a@b.co")) == "a@b.co"
        assert auth_mw.get_current_user_email(_make_request()) is None


@pytest.mark.unit
def test_error_response_echoes_allowed_origin() -> None:
    request = _make_request({"Origin": "http://localhost:3000"})
    with patch.object(auth_mw.settings, "CORS_ORIGINS_RAW", '["http://localhost:3000"]'):
        response = auth_mw._create_error_response(request, '{"detail": "x"}', 401)
    assert response.status_code == 401
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
