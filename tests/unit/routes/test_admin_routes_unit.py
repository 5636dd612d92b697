"""Unit tests for admin routes: role checks, internal token, errors."""

from collections.abc import Iterator
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from metered_billing.database.models import (
    CreditEntry,
    UsageMonthly,
    UserMetrics,
    UserSubscription,
)
from metered_billing.exceptions import ProductNotFoundError
from metered_billing.main import app
from metered_billing.routes.dependencies import get_compute_time_fetcher
from metered_billing.services.reconciliation import ReconcileResult
from metered_billing.services.reporting import build_metrics

FINANCIALS = "metered_billing.routes.admin.financials"
INTERNAL = {"X-Internal-Service-Token": "internal-test-token"}
PRODUCT_ID = "6f1c2e0a-3b5d-4c8e-9f7a-1d2b3c4d5e6f"


@pytest.fixture
def app_state_db() -> Iterator[MagicMock]:
    """Lifespan does not run under ASGITransport, so stand in for ``app.state.db``."""
    database = MagicMock()
    app.state.db = database
    app.dependency_overrides[get_compute_time_fetcher] = lambda: MagicMock()
    yield database
    del app.state.db


@pytest.mark.unit
class TestFinancials:
    @pytest.mark.asyncio
    async def test_member_forbidden(
        self, client: AsyncClient, member_headers: dict[str, str]
    ) -> None:
        response = await client.get("/api/admin/financials/overview", headers=member_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_overview_for_admin(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        metrics = build_metrics(
            datetime(2026, 5, 1, tzinfo=UTC),
            datetime(2026, 6, 1, tzinfo=UTC),
            {"subscription": 1900},
            Decimal("1.5"),
            Decimal("1.5"),
            30,
            1,
            1,
            0,
            1900,
            24,
        )
        with patch(f"{FINANCIALS}.get_financial_metrics", AsyncMock(return_value=metrics)):
            response = await client.get(
                "/api/admin/financials/overview?period=ytd", headers=admin_headers
            )

        assert response.status_code == 200
        assert response.json()["subscription_revenue"] == 19.0

    @pytest.mark.asyncio
    async def test_unknown_period_rejected(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        response = await client.get(
            "/api/admin/financials/overview?period=forever", headers=admin_headers
        )
        assert response.status_code == 422


@pytest.mark.unit
class TestReconcileCosts:
    URL = "/api/admin/financials/reconcile-costs"

    @pytest.mark.asyncio
    async def test_internal_token_accepted(
        self, client: AsyncClient, app_state_db: MagicMock
    ) -> None:
        result = ReconcileResult(processed=3, reconciled=2, errors=1)
        with patch(f"{FINANCIALS}.run_reconciliation", AsyncMock(return_value=result)) as run:
            response = await client.post(self.URL, headers=INTERNAL)

        assert response.status_code == 200
        assert response.json() == {"processed": 3, "reconciled": 2, "errors": 1}
        assert run.await_args.args[0] is app_state_db

    @pytest.mark.asyncio
    async def test_already_running_is_409(
        self, client: AsyncClient, app_state_db: MagicMock
    ) -> None:
        with patch(f"{FINANCIALS}.run_reconciliation", AsyncMock(return_value=None)):
            response = await client.post(self.URL, headers=INTERNAL)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_wrong_internal_token_needs_jwt(self, client: AsyncClient) -> None:
        response = await client.post(self.URL, headers={"X-Internal-Service-Token": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_internal_token_not_valid_elsewhere(self, client: AsyncClient) -> None:
        response = await client.get("/api/admin/financials/overview", headers=INTERNAL)
        assert response.status_code == 401


@pytest.mark.unit
class TestUserAdmin:
    @pytest.mark.asyncio
    async def test_grant_credits(
        self, client: AsyncClient, mock_db: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        entry = CreditEntry(id="entry-1", user_id="user-9", type="grant", amount=5)
        with (
            patch(
                "metered_billing.routes.admin.users.add_credits", AsyncMock(return_value=entry)
            ) as add,
            patch(
                "metered_billing.routes.admin.users.get_credit_balance",
                AsyncMock(return_value=7),
            ),
        ):
            response = await client.post(
                "/api/admin/users/user-9/credits",
                json={"amount": 5, "reason": "support"},
                headers=admin_headers,
            )

        assert response.status_code == 200
        assert response.json() == {"entry_id": "entry-1", "balance": 7}
        assert add.await_args.args[1:] == ("user-9", "grant", 5, "support")

    @pytest.mark.asyncio
    async def test_assign_unknown_product_is_404(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        with patch(
            "metered_billing.routes.admin.users.assign_subscription",
            AsyncMock(side_effect=ProductNotFoundError(PRODUCT_ID)),
        ) as assign:
            response = await client.post(
                "/api/admin/users/user-9/subscription",
                json={"product_id": PRODUCT_ID},
                headers=admin_headers,
            )
        assert response.status_code == 404
        assert response.json() == {"detail": f"Subscription product not found: {PRODUCT_ID}"}
        assert assign.await_args.args[1:] == ("user-9", PRODUCT_ID)

    @pytest.mark.asyncio
    async def test_malformed_product_id_rejected(
        self, client: AsyncClient, admin_headers: dict[str, str]
    ) -> None:
        with patch(
            "metered_billing.routes.admin.users.assign_subscription", AsyncMock()
        ) as assign:
            response = await client.post(
                "/api/admin/users/user-9/subscription",
                json={"product_id": "prod-x"},
                headers=admin_headers,
            )
        assert response.status_code == 422
        assign.assert_not_awaited()


@pytest.mark.unit
class TestUserBillingDetail:
    USERS = "metered_billing.routes.admin.users"

    @pytest.mark.asyncio
    async def test_member_forbidden(
        self, client: AsyncClient, member_headers: dict[str, str]
    ) -> None:
        response = await client.get("/api/admin/users/user-9", headers=member_headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_detail(
        self, client: AsyncClient, mock_db: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        subscription = UserSubscription(
            id="sub-row-1",
            user_id="user-9",
            product_id=PRODUCT_ID,
            status="active",
            starts_at=datetime(2026, 1, 5, tzinfo=UTC),
            ends_at=None,
        )
        month = UsageMonthly(
            user_id="user-9",
            year_month="2026-01",
            image_count=40,
            total_cost=Decimal("1.2"),
            used_own_key=2,
        )
        entry = CreditEntry(
            id="entry-1",
            user_id="user-9",
            type="bonus",
            amount=25,
            reason="Subscription welcome bonus",
            created_at=datetime(2026, 1, 5, tzinfo=UTC),
        )
        mock_db.get.return_value = UserMetrics(user_id="user-9", total_paid_cents=1900)
        with (
            patch(
                f"{self.USERS}.list_subscription_history",
                AsyncMock(return_value=[(subscription, "Pro")]),
            ),
            patch(f"{self.USERS}.list_monthly_usage", AsyncMock(return_value=[month])),
            patch(f"{self.USERS}.list_credit_entries", AsyncMock(return_value=[entry])),
            patch(f"{self.USERS}.get_credit_balance", AsyncMock(return_value=20)),
        ):
            response = await client.get("/api/admin/users/user-9", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-9"
        assert body["credits"] == 20
        assert body["total_paid_cents"] == 1900
        [history] = body["subscription_history"]
        assert history["product_id"] == PRODUCT_ID
        assert history["product_name"] == "Pro"
        assert history["ends_at"] is None
        assert history["starts_at"].startswith("2026-01-05T00:00:00")
        assert body["usage_history"] == [
            {"year_month": "2026-01", "image_count": 40, "total_cost": 1.2, "used_own_key": 2}
        ]
        assert [c["id"] for c in body["credit_history"]] == ["entry-1"]

    @pytest.mark.asyncio
    async def test_unknown_user_is_404(
        self, client: AsyncClient, mock_db: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        mock_db.get.return_value = None
        with (
            patch(f"{self.USERS}.list_subscription_history", AsyncMock(return_value=[])),
            patch(f"{self.USERS}.list_monthly_usage", AsyncMock(return_value=[])),
            patch(f"{self.USERS}.list_credit_entries", AsyncMock(return_value=[])),
        ):
            response = await client.get("/api/admin/users/nobody", headers=admin_headers)
        assert response.status_code == 404


@pytest.mark.unit
class TestCostTools:
    @pytest.mark.asyncio
    async def test_pricing(self, client: AsyncClient, admin_headers: dict[str, str]) -> None:
        response = await client.get("/api/admin/costs/pricing", headers=admin_headers)
        assert response.status_code == 200
        assert any(p["model_id"] == "black-forest-labs/flux-dev" for p in response.json())

    @pytest.mark.asyncio
    async def test_recalculate_defaults_to_dry_run(
        self, client: AsyncClient, mock_db: AsyncMock, admin_headers: dict[str, str]
    ) -> None:
        with patch(
            "metered_billing.routes.admin.costs.recalculate_costs",
            AsyncMock(return_value={"dry_run": True}),
        ) as recalc:
            response = await client.post("/api/admin/costs/recalculate", headers=admin_headers)
        assert response.status_code == 200
        recalc.assert_awaited_once_with(mock_db, dry_run=True)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
