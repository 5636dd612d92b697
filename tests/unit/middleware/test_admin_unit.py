"""Unit tests for the require_admin decorator."""

from __future__ import annotations

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from metered_billing.middleware import admin as admin_mw


def _make_request(user_id: str | None = None, user_role: str = "member") -> Request:
    scope = {"type": "http", "path": "/api/admin", "method": "GET", "headers": []}
    request = Request(scope)
    if user_id is not None:
        request.state.user_id = user_id  # type: ignore[attr-defined]
    request.state.user_role = user_role  # type: ignore[attr-defined]
    return request


@admin_mw.require_admin
async def _handler(request: Request) -> str:
    return "ok"


@pytest.mark.unit
class TestRequireAdmin:
    @pytest.mark.asyncio
    async def test_500_when_no_request(self) -> None:
        with pytest.raises(HTTPException) as exc:
            await _handler()  # type: ignore[call-arg]
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_401_without_user(self) -> None:
        with pytest.raises(HTTPException) as exc:
            await _handler(_make_request())
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_403_for_member(self) -> None:
        with pytest.raises(HTTPException) as exc:
            await _handler(_make_request("u1", "member"))
        assert exc.value.status_code == 403
        assert "Admin" in exc.value.detail

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", ["admin", "super_admin"])
    async def test_admin_roles_pass(self, role: str) -> None:
        assert await _handler(_make_request("u1", role)) == "ok"

    @pytest.mark.asyncio
    async def test_request_as_keyword(self) -> None:
        assert await _handler(request=_make_request("u1", "admin")) == "ok"
