"""Tests for subscription_service — customer linking and ordered snapshot writes."""

import asyncio
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.auth.dependencies import CallerIdentity
from subsync.billing.errors import UpstreamError
from subsync.billing.events import parse_subscription
from subsync.billing.notifications import drain_background_tasks
from subsync.models.subscription import Subscription
from subsync.services.subscription_service import (
    apply_subscription_snapshot,
    claim_stripe_customer,
    clear_payment_failure,
    ensure_stripe_customer,
    get_subscription_for_user,
    mark_payment_failed,
    optimistic_timestamp,
    record_one_time_purchase,
)


class TestClaimStripeCustomer:
    """Test claim_stripe_customer."""

    @pytest.mark.asyncio
    async def test_creates_inactive_row(self, db_session: AsyncSession):
        stored = await claim_stripe_customer(db_session, "user-claim-1", "cus_a")
        await db_session.commit()

        assert stored == "cus_a"
        row = await get_subscription_for_user(db_session, "user-claim-1")
        assert row.status == "inactive"
        assert row.stripe_customer_id == "cus_a"
        assert row.updated_at is None

    @pytest.mark.asyncio
    async def test_never_overwrites(self, db_session: AsyncSession):
        await claim_stripe_customer(db_session, "user-claim-2", "cus_first")
        stored = await claim_stripe_customer(db_session, "user-claim-2", "cus_second")
        await db_session.commit()

        assert stored == "cus_first"
        row = await get_subscription_for_user(db_session, "user-claim-2")
        assert row.stripe_customer_id == "cus_first"

    @pytest.mark.asyncio
    async def test_fills_missing_customer_on_existing_row(self, db_session: AsyncSession, seed_subscription):
        await seed_subscription("user-claim-3", status="inactive")
        stored = await claim_stripe_customer(db_session, "user-claim-3", "cus_late")
        assert stored == "cus_late"


class TestEnsureStripeCustomer:
    """Test ensure_stripe_customer, including the concurrent first-call race."""

    @pytest.mark.asyncio
    async def test_returns_existing_without_calling_stripe(self, db_session: AsyncSession, identity, seed_subscription):
        await seed_subscription(identity.user_id, stripe_customer_id="cus_known")
        with patch("subsync.services.subscription_service.create_customer", new_callable=AsyncMock) as mock_create:
            assert await ensure_stripe_customer(db_session, identity) == "cus_known"
        mock_create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_converge(self, db_session: AsyncSession, identity: CallerIdentity):
        """N callers that all saw no customer: one id stored, the rest deleted."""
        callers = 5
        created = iter(f"cus_race_{i}" for i in range(callers))

        async def fake_create(**kwargs):
            return SimpleNamespace(id=next(created))

        with (
            # Every caller read the row before any of them wrote it
            patch(
                "subsync.services.subscription_service.get_subscription_for_user",
                new_callable=AsyncMock,
                return_value=None,
            ),
            patch("subsync.services.subscription_service.create_customer", side_effect=fake_create),
            patch("subsync.services.subscription_service.delete_customer", new_callable=AsyncMock) as mock_delete,
        ):
            results = [await ensure_stripe_customer(db_session, identity) for _ in range(callers)]
            await drain_background_tasks()

        assert set(results) == {"cus_race_0"}
        deleted = sorted(call.args[0] for call in mock_delete.await_args_list)
        assert deleted == [f"cus_race_{i}" for i in range(1, callers)]

        count = await db_session.execute(
            select(func.count()).select_from(Subscription).where(Subscription.user_id == identity.user_id)
        )
        assert count.scalar_one() == 1
        row = await get_subscription_for_user(db_session, identity.user_id)
        assert row.stripe_customer_id == "cus_race_0"

    @pytest.mark.asyncio
    async def test_orphan_cleanup_failure_is_only_logged(
        self, db_session: AsyncSession, identity: CallerIdentity, seed_subscription, caplog
    ):
        await seed_subscription(identity.user_id, stripe_customer_id="cus_winner")
        with (
            patch(
                "subsync.services.subscription_service.get_subscription_for_user",
                new_callable=AsyncMock,
                return_value=None,
            ),
            patch(
                "subsync.services.subscription_service.create_customer",
                new_callable=AsyncMock,
                return_value=SimpleNamespace(id="cus_loser"),
            ),
            patch(
                "subsync.services.subscription_service.delete_customer",
                new_callable=AsyncMock,
                side_effect=UpstreamError("Stripe customer delete failed"),
            ),
        ):
            assert await ensure_stripe_customer(db_session, identity) == "cus_winner"
            await drain_background_tasks()
            await asyncio.sleep(0)

        assert "delete-customer-cus_loser" in caplog.text


class TestApplySnapshot:
    """Test apply_subscription_snapshot ordering."""

    @pytest.mark.asyncio
    async def test_insert_then_newer_then_older(self, db_session: AsyncSession, make_subscription):
        t0 = datetime(2024, 1, 1, 12, 0, 0)
        t1 = t0 + timedelta(minutes=5)

        applied = await apply_subscription_snapshot(
            db_session, "user-apply-1", parse_subscription(make_subscription(status="trialing")), t0
        )
        assert applied is True

        applied = await apply_subscription_snapshot(
            db_session, "user-apply-1", parse_subscription(make_subscription(status="active")), t1
        )
        assert applied is True

        applied = await apply_subscription_snapshot(
            db_session, "user-apply-1", parse_subscription(make_subscription(status="past_due")), t0
        )
        assert applied is False
        await db_session.commit()

        row = await get_subscription_for_user(db_session, "user-apply-1")
        assert row.status == "active"
        assert row.updated_at == t1

    @pytest.mark.asyncio
    async def test_guard_holds_when_read_is_stale(self, db_session: AsyncSession, make_subscription):
        """The WHERE guard rejects the write even if the pre-read saw an older row."""
        t1 = datetime(2024, 1, 1, 12, 5, 0)
        await apply_subscription_snapshot(
            db_session, "user-apply-2", parse_subscription(make_subscription(status="active")), t1
        )
        await db_session.commit()

        with patch(
            "subsync.services.subscription_service.get_subscription_for_user",
            new_callable=AsyncMock,
            return_value=None,
        ):
            applied = await apply_subscription_snapshot(
                db_session,
                "user-apply-2",
                parse_subscription(make_subscription(status="trialing")),
                t1 - timedelta(minutes=1),
            )
        await db_session.commit()

        assert applied is False
        row = await get_subscription_for_user(db_session, "user-apply-2")
        assert row.status == "active"

    @pytest.mark.asyncio
    async def test_equal_stamp_applies_last_arrival(self, db_session: AsyncSession, make_subscription):
        """Same-second snapshots resolve to the one applied last."""
        stamp = datetime(2024, 1, 1, 12, 0, 0)
        canceled = parse_subscription(make_subscription(cancel_at_period_end=True))
        resumed = parse_subscription(make_subscription(cancel_at_period_end=False))

        assert await apply_subscription_snapshot(db_session, "user-apply-4", canceled, stamp) is True
        assert await apply_subscription_snapshot(db_session, "user-apply-4", resumed, stamp) is True
        assert await apply_subscription_snapshot(db_session, "user-apply-4", canceled, stamp) is True
        await db_session.commit()

        row = await get_subscription_for_user(db_session, "user-apply-4")
        assert row.cancel_at_period_end is True

        # A later provider event settles it
        later = stamp + timedelta(seconds=1)
        assert await apply_subscription_snapshot(db_session, "user-apply-4", resumed, later) is True
        await db_session.commit()
        row = await get_subscription_for_user(db_session, "user-apply-4")
        assert row.cancel_at_period_end is False

    @pytest.mark.asyncio
    async def test_incomplete_expired_maps_to_canceled(self, db_session: AsyncSession, make_subscription):
        snapshot = parse_subscription(make_subscription(status="incomplete_expired"))
        await apply_subscription_snapshot(db_session, "user-apply-3", snapshot, optimistic_timestamp())
        await db_session.commit()

        row = await get_subscription_for_user(db_session, "user-apply-3")
        assert row.status == "canceled"


class TestSideFields:
    """One-time purchases and payment-failure markers leave the ordering stamp alone."""

    @pytest.mark.asyncio
    async def test_one_time_purchase_keeps_status(self, db_session: AsyncSession, seed_subscription):
        stamp = datetime(2024, 2, 1)
        await seed_subscription("user-side-1", status="active", updated_at=stamp)
        await record_one_time_purchase(db_session, "user-side-1", "cus_side", "price_one_time", datetime(2024, 3, 1))
        await db_session.commit()

        row = await get_subscription_for_user(db_session, "user-side-1")
        assert row.status == "active"
        assert row.one_time_price_id == "price_one_time"
        assert row.updated_at == stamp
        assert row.stripe_customer_id == "cus_side"

    @pytest.mark.asyncio
    async def test_mark_and_clear_payment_failure(self, db_session: AsyncSession, seed_subscription):
        stamp = datetime(2024, 2, 1)
        await seed_subscription("user-side-2", status="past_due", updated_at=stamp)

        await mark_payment_failed(db_session, "user-side-2", datetime(2024, 2, 2), datetime(2024, 2, 5))
        await db_session.commit()
        row = await get_subscription_for_user(db_session, "user-side-2")
        assert row.payment_failed_at == datetime(2024, 2, 2)
        assert row.updated_at == stamp

        await clear_payment_failure(db_session, "user-side-2")
        await db_session.commit()
        row = await get_subscription_for_user(db_session, "user-side-2")
        assert row.payment_failed_at is None
        assert row.next_payment_attempt is None

    @pytest.mark.asyncio
    async def test_markers_without_row_are_noop(self, db_session: AsyncSession):
        await mark_payment_failed(db_session, "user-missing", datetime(2024, 2, 2), None)
        await clear_payment_failure(db_session, "user-missing")
        assert await get_subscription_for_user(db_session, "user-missing") is None


def test_optimistic_timestamp_has_whole_seconds():
    assert optimistic_timestamp().microsecond == 0
