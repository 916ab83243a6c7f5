"""Tests for the subscription service facade."""

from datetime import timedelta

import pytest

from cadence import crud, schemas
from cadence.core.cache import MemoryCache
from cadence.core.exceptions import SubscriptionNotFoundException
from cadence.core.subscription_service import SubscriptionService
from cadence.schemas.billing_record import BillingKind
from cadence.schemas.subscription import SubscriptionStatus


@pytest.fixture
def service(processor, clock, session_factory):
    """Service over the fake processor and the test database."""
    return SubscriptionService(
        processor,
        clock=clock,
        cache=MemoryCache(ttl_seconds=300, clock=clock),
        session_factory=session_factory,
    )


class TestSubscriptions:
    """Lifecycle operations through the service."""

    async def test_create_and_get(self, db, service, basic_plan, user_id, payment_method):
        created = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )

        fetched = await service.get_subscription(db, created.id)

        assert fetched.id == created.id
        assert fetched.plan.name == "Basic"
        assert await service.has_active_subscription(db, user_id)

    async def test_no_active_subscription(self, db, service, user_id):
        assert await service.get_active_subscription(db, user_id) is None
        assert not await service.has_active_subscription(db, user_id)

    async def test_cancelled_subscription_is_not_active(self, db, service, trial_plan, user_id):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=trial_plan.id)
        )

        await service.cancel_subscription(db, sub.id, immediate=True)

        assert not await service.has_active_subscription(db, user_id)

    async def test_get_unknown(self, db, service, user_id):
        with pytest.raises(SubscriptionNotFoundException):
            await service.get_subscription(db, user_id)

    async def test_update_schedules_and_undoes_cancellation(
        self, db, service, trial_plan, user_id
    ):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=trial_plan.id)
        )

        flagged = await service.update_subscription(
            db, sub.id, schemas.SubscriptionUpdate(cancel_at_period_end=True)
        )
        cleared = await service.update_subscription(
            db, sub.id, schemas.SubscriptionUpdate(cancel_at_period_end=False)
        )

        assert flagged.cancel_at_period_end
        assert not cleared.cancel_at_period_end
        assert cleared.status == SubscriptionStatus.TRIALING

    async def test_update_changes_plan(
        self, db, service, basic_plan, premium_plan, user_id, payment_method
    ):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )

        updated = await service.update_subscription(
            db, sub.id, schemas.SubscriptionUpdate(plan_id=premium_plan.id)
        )

        assert updated.plan_id == premium_plan.id
        assert updated.plan.name == "Premium"

    async def test_reactivate(self, db, service, trial_plan, user_id):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=trial_plan.id)
        )
        await service.cancel_subscription(db, sub.id, immediate=True)

        reactivated = await service.reactivate_subscription(db, sub.id)

        assert reactivated.status == SubscriptionStatus.TRIALING


class TestBillingHistory:
    """Tests for billing history and payment methods."""

    async def test_history_newest_first(
        self, db, service, clock, basic_plan, premium_plan, user_id, payment_method
    ):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )
        clock.advance(days=10)
        await service.change_plan(db, sub.id, premium_plan.id)

        history = await service.list_billing_history(db, sub.id)

        assert [r.kind for r in history] == [BillingKind.PRORATION, BillingKind.INITIAL]

    async def test_history_of_unknown_subscription(self, db, service, user_id):
        with pytest.raises(SubscriptionNotFoundException):
            await service.list_billing_history(db, user_id)

    async def test_new_default_replaces_previous(self, db, service, user_id, payment_method):
        added = await service.add_payment_method(
            db,
            schemas.PaymentMethodCreate(user_id=user_id, processor_ref="pm_new", is_default=True),
        )

        default = await crud.payment_method.get_default_for_user(db, user_id=user_id)
        previous = await crud.payment_method.get(db, payment_method.id)

        assert default.id == added.id
        assert not previous.is_default

    async def test_non_default_keeps_previous(self, db, service, user_id, payment_method):
        await service.add_payment_method(
            db, schemas.PaymentMethodCreate(user_id=user_id, processor_ref="pm_backup")
        )

        default = await crud.payment_method.get_default_for_user(db, user_id=user_id)

        assert default.id == payment_method.id


class TestBatchRuns:
    """The service drives the sweep, dunning and scheduler."""

    async def test_sweep_and_dunning(
        self, db, service, processor, clock, basic_plan, user_id, payment_method
    ):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )
        clock.set(sub.current_period_end)
        processor.decline("insufficient_funds")

        sweep_report = await service.run_billing_sweep()
        clock.advance(hours=2)
        dunning_report = await service.run_dunning()

        assert sweep_report.count("past_due") == 1
        assert dunning_report.count("recovered") == 1
        assert (await service.get_subscription(db, sub.id)).status == SubscriptionStatus.ACTIVE

    async def test_scheduler_uses_service_clock(self, service, clock):
        scheduler = service.build_scheduler(
            sweep_schedule="0 1 * * *", dunning_schedule="0 */6 * * *"
        )

        clock.set(clock.now().replace(hour=23) + timedelta(hours=2))
        ran = await scheduler.tick()

        assert ran == ["billing_sweep", "dunning"]


class TestUsage:
    """Usage through the service."""

    async def test_record_and_get(self, db, service, basic_plan, user_id, payment_method):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )

        await service.record_usage(db, sub.id, "api_calls", 40)
        status = await service.get_usage(db, sub.id, "api_calls")

        assert status.usage == 40
        assert status.remaining == 60

    async def test_clear_usage_cache(self, db, service, basic_plan, user_id, payment_method):
        sub = await service.create_subscription(
            db, schemas.SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id)
        )
        await service.get_usage(db, sub.id, "api_calls")
        await service.get_usage(db, sub.id, "storage_mb")
        assert len(service.usage.cache) == 2

        await service.clear_usage_cache(sub.id)
        assert len(service.usage.cache) == 0

        await service.get_usage(db, sub.id, "api_calls")
        await service.clear_usage_cache()
        assert len(service.usage.cache) == 0
