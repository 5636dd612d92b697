"""End-to-end billing flows against PostgreSQL."""

from datetime import UTC, date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from metered_billing.database import (
    Database,
    FinancialPeriodSnapshot,
    Payment,
    RevenueEvent,
    StripeCustomer,
    SubscriptionProduct,
    UsageDaily,
    UserMetrics,
    UserSubscription,
)
from metered_billing.services.billing_events import process_event
from metered_billing.services.credits import add_credits, deduct_credit, get_credit_balance
from metered_billing.services.quota import can_generate
from metered_billing.services.reporting import compute_snapshot
from metered_billing.services.subscriptions import (
    assign_default_subscription,
    assign_subscription,
    get_active_subscription,
)
from metered_billing.services.usage import get_usage_history, record_usage

USER_ID = "user-int-1"


async def _pro_product(database: Database) -> str:
    async with database.session() as db:
        product = SubscriptionProduct(
            name="Pro",
            monthly_image_limit=500,
            daily_image_limit=50,
            bonus_credits=10,
            price_cents=1900,
            overage_price_cents=5,
            stripe_price_id="price_pro",
        )
        db.add(product)
        await db.flush()
        return product.id


def _event(event_type: str, obj: dict[str, Any], event_id: str) -> dict[str, Any]:
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.mark.integration
class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_reassignment_keeps_one_open_row(self, database: Database) -> None:
        pro_id = await _pro_product(database)
        async with database.session() as db:
            await assign_default_subscription(db, USER_ID)
        async with database.session() as db:
            await assign_subscription(db, USER_ID, pro_id)
        async with database.session() as db:
            await assign_subscription(db, USER_ID, pro_id)

        async with database.session() as db:
            open_rows = await db.execute(
                select(func.count())
                .select_from(UserSubscription)
                .where(UserSubscription.user_id == USER_ID, UserSubscription.ends_at.is_(None))
            )
            assert open_rows.scalar_one() == 1
            active = await get_active_subscription(db, USER_ID)
            assert active is not None
            assert active.product.name == "Pro"
            # Bonus granted on each assignment of a product that carries one
            assert await get_credit_balance(db, USER_ID) == 20

    @pytest.mark.asyncio
    async def test_second_open_row_is_a_conflict(self, database: Database) -> None:
        pro_id = await _pro_product(database)
        async with database.session() as db:
            await assign_subscription(db, USER_ID, pro_id)

        async with database.session() as db:
            db.add(
                UserSubscription(
                    user_id=USER_ID,
                    product_id=pro_id,
                    status="active",
                    starts_at=datetime.now(UTC),
                )
            )
            with pytest.raises(IntegrityError):
                await db.flush()
            await db.rollback()


@pytest.mark.integration
class TestUsageAndCredits:
    @pytest.mark.asyncio
    async def test_daily_buckets_are_utc(self, database: Database) -> None:
        # 23:30 at UTC-5 on March 1 is already March 2 in UTC
        late_evening = datetime(2026, 3, 1, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        async with database.session() as db:
            await record_usage(db, USER_ID, Decimal("0.025"), now=late_evening)
            await record_usage(db, USER_ID, Decimal("0.025"), used_own_key=True, now=late_evening)

        async with database.session() as db:
            result = await db.execute(select(UsageDaily).where(UsageDaily.user_id == USER_ID))
            rows = result.scalars().all()
            assert [(r.usage_date, r.image_count) for r in rows] == [(date(2026, 3, 2), 2)]
            history = await get_usage_history(db, USER_ID, 3, today=date(2026, 3, 3))
            assert [h["image_count"] for h in history] == [0, 2, 0]

    @pytest.mark.asyncio
    async def test_credit_never_goes_negative(self, database: Database) -> None:
        async with database.session() as db:
            await add_credits(db, USER_ID, "grant", 1, "support")
        async with database.session() as db:
            assert await deduct_credit(db, USER_ID, "overage") is True
            assert await deduct_credit(db, USER_ID, "overage") is False
            assert await get_credit_balance(db, USER_ID) == 0

    @pytest.mark.asyncio
    async def test_free_plan_limit_then_credit(self, database: Database) -> None:
        async with database.session() as db:
            await assign_default_subscription(db, USER_ID)
            for _ in range(5):
                await record_usage(db, USER_ID, Decimal("0.003"))

        async with database.session() as db:
            decision = await can_generate(db, USER_ID)
            assert decision.allowed is False

        async with database.session() as db:
            await add_credits(db, USER_ID, "grant", 1)
        async with database.session() as db:
            decision = await can_generate(db, USER_ID)
            assert decision.allowed is True
            assert decision.needs_credit is True


@pytest.mark.integration
class TestWebhooks:
    @pytest.mark.asyncio
    async def test_invoice_paid_redelivery_is_idempotent(self, database: Database) -> None:
        async with database.session() as db:
            db.add(StripeCustomer(user_id=USER_ID, stripe_customer_id="cus_int"))

        invoice = {
            "id": "in_int_1",
            "customer": "cus_int",
            "amount_paid": 1900,
            "currency": "usd",
            "billing_reason": "subscription_create",
            "number": "INV-1",
            "status_transitions": {"paid_at": 1767225600},
        }
        for _ in range(2):
            async with database.session() as db:
                assert await process_event(db, _event("invoice.paid", invoice, "evt_int_1")) is True

        async with database.session() as db:
            payments = (await db.execute(select(func.count()).select_from(Payment))).scalar_one()
            revenue = (await db.execute(select(func.count()).select_from(RevenueEvent))).scalar_one()
            metrics = await db.get(UserMetrics, USER_ID)
            assert payments == 1
            assert revenue == 1
            assert metrics is not None
            assert metrics.total_paid_cents == 1900

    @pytest.mark.asyncio
    async def test_subscription_lifecycle(self, database: Database) -> None:
        await _pro_product(database)
        async with database.session() as db:
            db.add(StripeCustomer(user_id=USER_ID, stripe_customer_id="cus_int"))

        subscription = {
            "id": "sub_int",
            "customer": "cus_int",
            "status": "active",
            "items": {"data": [{"price": {"id": "price_pro"}}]},
            "current_period_start": 1767225600,
            "current_period_end": 1769904000,
        }
        async with database.session() as db:
            await process_event(db, _event("customer.subscription.created", subscription, "evt_a"))
        async with database.session() as db:
            await process_event(db, _event("customer.subscription.updated", subscription, "evt_b"))

        async with database.session() as db:
            active = await get_active_subscription(db, USER_ID)
            assert active is not None
            assert active.subscription.stripe_subscription_id == "sub_int"

        async with database.session() as db:
            await process_event(db, _event("customer.subscription.deleted", {"id": "sub_int"}, "evt_c"))

        async with database.session() as db:
            assert await get_active_subscription(db, USER_ID) is None
            metrics = await db.get(UserMetrics, USER_ID)
            assert metrics is not None
            assert metrics.churned_at is not None


@pytest.mark.integration
class TestSnapshots:
    @pytest.mark.asyncio
    async def test_snapshot_upserts_one_row_per_period(self, database: Database) -> None:
        at = datetime(2026, 4, 10, tzinfo=UTC)
        async with database.session() as db:
            await compute_snapshot(db, "monthly", at)
        async with database.session() as db:
            await compute_snapshot(db, "monthly", at + timedelta(days=5))

        async with database.session() as db:
            rows = (await db.execute(select(FinancialPeriodSnapshot))).scalars().all()
            assert len(rows) == 1
            assert rows[0].period_start == date(2026, 4, 1)
            assert rows[0].period_end == date(2026, 5, 1)
