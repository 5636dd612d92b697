"""Unit tests for subscription lifecycle."""

from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from metered_billing.database.models import (
    CreditEntryType,
    SubscriptionProduct,
    UserSubscription,
)
from metered_billing.exceptions import ProductNotFoundError, SubscriptionConflictError
from metered_billing.services.subscriptions import (
    WELCOME_BONUS_REASON,
    assign_default_subscription,
    assign_subscription,
    cancel_by_external_ref,
    list_subscription_history,
    provision_user,
    update_user_subscription,
)

NOW = datetime(2026, 4, 1, 9, tzinfo=UTC)


def _product(bonus_credits: int = 0, is_active: bool = True) -> SubscriptionProduct:
    return SubscriptionProduct(
        id="prod-1",
        name="Pro",
        bonus_credits=bonus_credits,
        price_cents=1900,
        overage_price_cents=0,
        is_active=is_active,
    )


@pytest.mark.unit
class TestAssignSubscription:
    @pytest.mark.asyncio
    async def test_unknown_product(self, mock_db: AsyncMock) -> None:
        with (
            patch(
                "metered_billing.services.subscriptions.get_product",
                AsyncMock(return_value=None),
            ),
            pytest.raises(ProductNotFoundError),
        ):
            await assign_subscription(mock_db, "user-1", "missing")

    @pytest.mark.asyncio
    async def test_retired_product_not_assignable(self, mock_db: AsyncMock) -> None:
        with (
            patch(
                "metered_billing.services.subscriptions.get_product",
                AsyncMock(return_value=_product(bonus_credits=50, is_active=False)),
            ),
            patch(
                "metered_billing.services.subscriptions._close_open_subscriptions", AsyncMock()
            ) as close_open,
            patch("metered_billing.services.subscriptions.add_credits", AsyncMock()) as add,
            pytest.raises(ProductNotFoundError),
        ):
            await assign_subscription(mock_db, "user-1", "prod-1", NOW)

        close_open.assert_not_awaited()
        add.assert_not_awaited()
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_closes_previous_and_grants_bonus(self, mock_db: AsyncMock) -> None:
        with (
            patch(
                "metered_billing.services.subscriptions.get_product",
                AsyncMock(return_value=_product(bonus_credits=25)),
            ),
            patch(
                "metered_billing.services.subscriptions._close_open_subscriptions",
                AsyncMock(return_value=1),
            ) as close_open,
            patch("metered_billing.services.subscriptions.add_credits", AsyncMock()) as add,
        ):
            subscription = await assign_subscription(mock_db, "user-1", "prod-1", NOW)

        close_open.assert_awaited_once_with(mock_db, "user-1", NOW)
        assert subscription.status == "active"
        assert subscription.starts_at == NOW
        assert subscription.ends_at is None
        add.assert_awaited_once_with(
            mock_db, "user-1", CreditEntryType.BONUS, 25, WELCOME_BONUS_REASON
        )
        assert mock_db.savepoints == 1

    @pytest.mark.asyncio
    async def test_no_bonus_entry_for_zero_bonus(self, mock_db: AsyncMock) -> None:
        with (
            patch(
                "metered_billing.services.subscriptions.get_product",
                AsyncMock(return_value=_product()),
            ),
            patch(
                "metered_billing.services.subscriptions._close_open_subscriptions",
                AsyncMock(return_value=0),
            ),
            patch("metered_billing.services.subscriptions.add_credits", AsyncMock()) as add,
        ):
            await assign_subscription(mock_db, "user-1", "prod-1", NOW)
        add.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_open_row_collision_is_conflict(self, mock_db: AsyncMock) -> None:
        mock_db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        with (
            patch(
                "metered_billing.services.subscriptions.get_product",
                AsyncMock(return_value=_product(bonus_credits=5)),
            ),
            patch(
                "metered_billing.services.subscriptions._close_open_subscriptions",
                AsyncMock(return_value=0),
            ),
            patch("metered_billing.services.subscriptions.add_credits", AsyncMock()) as add,
            pytest.raises(SubscriptionConflictError),
        ):
            await assign_subscription(mock_db, "user-1", "prod-1", NOW)

        assert mock_db.rollbacks == 1
        add.assert_not_awaited()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_default_subscription_missing_plan_is_noop(
    mock_db: AsyncMock, make_result: Any
) -> None:
    mock_db.execute.return_value = make_result(scalar=None)
    with patch(
        "metered_billing.services.subscriptions.assign_subscription", AsyncMock()
    ) as assign:
        assert await assign_default_subscription(mock_db, "user-1") is None
    assign.assert_not_awaited()


@pytest.mark.unit
class TestProvisionUser:
    @pytest.mark.asyncio
    async def test_first_time_user_gets_default_plan(
        self, mock_db: AsyncMock, make_result: Any
    ) -> None:
        subscription = UserSubscription(user_id="user-1", product_id="prod-free")
        mock_db.execute.return_value = make_result(scalar=None)
        with patch(
            "metered_billing.services.subscriptions.assign_default_subscription",
            AsyncMock(return_value=subscription),
        ) as assign_default:
            assert await provision_user(mock_db, "user-1") is subscription
        assign_default.assert_awaited_once_with(mock_db, "user-1")

    @pytest.mark.asyncio
    async def test_user_with_any_past_subscription_left_alone(
        self, mock_db: AsyncMock, make_result: Any
    ) -> None:
        mock_db.execute.return_value = make_result(scalar="sub-old")
        with patch(
            "metered_billing.services.subscriptions.assign_default_subscription", AsyncMock()
        ) as assign_default:
            assert await provision_user(mock_db, "user-1") is None
        assign_default.assert_not_awaited()


@pytest.mark.unit
class TestProviderSync:
    @pytest.mark.asyncio
    async def test_existing_row_updated_in_place(
        self, mock_db: AsyncMock, make_result: Any
    ) -> None:
        existing = UserSubscription(
            user_id="user-1",
            product_id="prod-old",
            status="active",
            starts_at=NOW - timedelta(days=30),
            ends_at=None,
            stripe_subscription_id="sub_1",
        )
        mock_db.execute.return_value = make_result(scalar=existing)
        period_end = NOW + timedelta(days=30)

        result = await update_user_subscription(
            mock_db, "user-1", "prod-new", "sub_1", "past_due", NOW, period_end, now=NOW
        )

        assert result is existing
        assert existing.product_id == "prod-new"
        assert existing.status == "past_due"
        assert existing.current_period_end == period_end
        assert existing.ends_at is None
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_canceled_status_closes_existing_row(
        self, mock_db: AsyncMock, make_result: Any
    ) -> None:
        existing = UserSubscription(
            user_id="user-1",
            product_id="prod-1",
            status="active",
            starts_at=NOW - timedelta(days=3),
            ends_at=None,
            stripe_subscription_id="sub_1",
        )
        mock_db.execute.return_value = make_result(scalar=existing)

        await update_user_subscription(
            mock_db, "user-1", "prod-1", "sub_1", "canceled", None, None, now=NOW
        )
        assert existing.ends_at == NOW

    @pytest.mark.asyncio
    async def test_new_external_subscription_closes_others(
        self, mock_db: AsyncMock, make_result: Any
    ) -> None:
        mock_db.execute.return_value = make_result(scalar=None)
        with patch(
            "metered_billing.services.subscriptions._close_open_subscriptions",
            AsyncMock(return_value=1),
        ) as close_open:
            created = await update_user_subscription(
                mock_db, "user-1", "prod-1", "sub_2", "active", NOW, None, now=NOW
            )

        close_open.assert_awaited_once_with(mock_db, "user-1", NOW)
        assert created.stripe_subscription_id == "sub_2"
        assert created.ends_at is None
        mock_db.add.assert_called_once_with(created)

    @pytest.mark.asyncio
    async def test_cancel_unknown_reference(self, mock_db: AsyncMock, make_result: Any) -> None:
        mock_db.execute.return_value = make_result(scalar=None)
        assert await cancel_by_external_ref(mock_db, "sub_missing", NOW) is None

    @pytest.mark.asyncio
    async def test_cancel_sets_status_and_end(self, mock_db: AsyncMock, make_result: Any) -> None:
        subscription = UserSubscription(
            user_id="user-1",
            product_id="prod-1",
            status="active",
            starts_at=NOW - timedelta(days=60),
            ends_at=None,
            stripe_subscription_id="sub_1",
        )
        mock_db.execute.return_value = make_result(scalar=subscription)

        result = await cancel_by_external_ref(mock_db, "sub_1", NOW)

        assert result is subscription
        assert subscription.status == "canceled"
        assert subscription.ends_at == NOW


@pytest.mark.unit
@pytest.mark.asyncio
async def test_subscription_history_pairs_rows_with_product_names(
    mock_db: AsyncMock, make_result: Any
) -> None:
    old = UserSubscription(id="sub-1", user_id="user-1", product_id="prod-free")
    mock_db.execute.return_value = make_result(rows=[(old, "Free")])
    assert await list_subscription_history(mock_db, "user-1") == [(old, "Free")]
