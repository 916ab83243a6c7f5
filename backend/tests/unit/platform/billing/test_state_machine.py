"""Tests for the subscription state machine."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cadence import crud
from cadence.core.exceptions import (
    ConcurrencyConflictError,
    InvalidStateError,
    PlanNotFoundException,
    SubscriptionNotFoundException,
    SubscriptionValidationError,
)
from cadence.schemas.billing_record import BillingKind, BillingRecordStatus
from cadence.schemas.subscription import SubscriptionCreate, SubscriptionStatus


async def _create(db, state_machine, plan, user_id, **kwargs):
    return await state_machine.create(
        db, SubscriptionCreate(user_id=user_id, plan_id=plan.id, **kwargs)
    )


class TestCreate:
    """Tests for SubscriptionStateMachine.create."""

    async def test_plan_without_trial_is_active_and_billed(
        self, db, state_machine, processor, clock, basic_plan, user_id, payment_method
    ):
        sub = await _create(db, state_machine, basic_plan, user_id)

        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.trial_ends_at is None
        assert sub.current_period_start == clock.now()
        assert sub.current_period_end == datetime(2024, 2, 15, 12, 0)
        assert sub.version == 1

        records = await crud.billing_record.get_by_subscription(db, subscription_id=sub.id)
        assert len(records) == 1
        assert records[0].kind == BillingKind.INITIAL.value
        assert records[0].status == BillingRecordStatus.PAID.value
        assert processor.calls[0]["payment_method_ref"] == "pm_card"
        assert processor.calls[0]["amount"] == Decimal("30.00")

    async def test_explicit_payment_method_is_charged(
        self, db, state_machine, processor, basic_plan, user_id
    ):
        await _create(db, state_machine, basic_plan, user_id, payment_method_ref="pm_new")

        assert processor.calls[0]["payment_method_ref"] == "pm_new"

    async def test_trial_is_not_billed(self, db, state_machine, processor, clock, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_ends_at == clock.now() + timedelta(days=14)
        assert sub.current_period_start == sub.trial_ends_at
        assert processor.calls == []

    async def test_trial_days_override_plan(self, db, state_machine, basic_plan, user_id, clock):
        sub = await _create(db, state_machine, basic_plan, user_id, trial_days=7)

        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_ends_at == clock.now() + timedelta(days=7)

    async def test_failed_first_charge_leaves_past_due(
        self, db, state_machine, processor, basic_plan, user_id, payment_method
    ):
        processor.decline()

        sub = await _create(db, state_machine, basic_plan, user_id)

        assert sub.status == SubscriptionStatus.PAST_DUE
        records = await crud.billing_record.get_by_subscription(db, subscription_id=sub.id)
        assert records[0].status == BillingRecordStatus.FAILED.value

    async def test_no_payment_method_leaves_past_due(self, db, state_machine, basic_plan, user_id):
        sub = await _create(db, state_machine, basic_plan, user_id)

        assert sub.status == SubscriptionStatus.PAST_DUE

    async def test_inactive_plan_is_rejected(self, db, state_machine, retired_plan, user_id):
        with pytest.raises(SubscriptionValidationError):
            await _create(db, state_machine, retired_plan, user_id)

    async def test_unknown_plan(self, db, state_machine, basic_plan, user_id):
        plan = basic_plan.model_copy(update={"id": user_id})
        with pytest.raises(PlanNotFoundException):
            await _create(db, state_machine, plan, user_id)

    async def test_one_live_subscription_per_user(
        self, db, state_machine, trial_plan, basic_plan, user_id
    ):
        await _create(db, state_machine, trial_plan, user_id)

        with pytest.raises(SubscriptionValidationError):
            await _create(db, state_machine, basic_plan, user_id)

    async def test_new_subscription_allowed_after_cancellation(
        self, db, state_machine, trial_plan, user_id
    ):
        first = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, first.id, immediate=True)

        second = await _create(db, state_machine, trial_plan, user_id)

        assert second.id != first.id


class TestCancel:
    """Tests for cancellation."""

    async def test_immediate(self, db, state_machine, clock, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        cancelled = await state_machine.cancel(db, sub.id, immediate=True)

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == clock.now()
        assert cancelled.version == sub.version + 1
        assert not cancelled.is_live
        assert not cancelled.needs_payment_update

    async def test_at_period_end_keeps_status(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        cancelled = await state_machine.cancel(db, sub.id)

        assert cancelled.status == SubscriptionStatus.TRIALING
        assert cancelled.cancel_at_period_end
        assert cancelled.cancelled_at is not None

    async def test_cancelled_twice(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, sub.id, immediate=True)

        with pytest.raises(InvalidStateError):
            await state_machine.cancel(db, sub.id, immediate=True)

    async def test_unknown_subscription(self, db, state_machine, user_id):
        with pytest.raises(SubscriptionNotFoundException):
            await state_machine.cancel(db, user_id)


class TestReactivate:
    """Tests for reactivation."""

    async def test_clears_scheduled_cancellation(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, sub.id)

        reactivated = await state_machine.reactivate(db, sub.id)

        assert reactivated.status == SubscriptionStatus.TRIALING
        assert not reactivated.cancel_at_period_end
        assert reactivated.cancelled_at is None

    async def test_cancelled_within_period_returns_to_active(
        self, db, state_machine, basic_plan, user_id, payment_method
    ):
        sub = await _create(db, state_machine, basic_plan, user_id)
        await state_machine.cancel(db, sub.id, immediate=True)

        reactivated = await state_machine.reactivate(db, sub.id)

        assert reactivated.status == SubscriptionStatus.ACTIVE

    async def test_cancelled_trial_returns_to_trialing(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, sub.id, immediate=True)

        reactivated = await state_machine.reactivate(db, sub.id)

        assert reactivated.status == SubscriptionStatus.TRIALING

    async def test_rejected_after_period_end(
        self, db, state_machine, clock, basic_plan, user_id, payment_method
    ):
        sub = await _create(db, state_machine, basic_plan, user_id)
        await state_machine.cancel(db, sub.id, immediate=True)
        clock.set(sub.current_period_end + timedelta(seconds=1))

        with pytest.raises(InvalidStateError):
            await state_machine.reactivate(db, sub.id)

    async def test_rejected_when_user_has_another_live_subscription(
        self, db, state_machine, trial_plan, user_id
    ):
        old = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, old.id, immediate=True)
        await _create(db, state_machine, trial_plan, user_id)

        with pytest.raises(SubscriptionValidationError):
            await state_machine.reactivate(db, old.id)

    async def test_not_cancelled(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        with pytest.raises(InvalidStateError):
            await state_machine.reactivate(db, sub.id)


class TestUpdatePlan:
    """Tests for plan changes."""

    async def test_upgrade_creates_pending_proration(
        self, db, state_machine, processor, clock, basic_plan, premium_plan, user_id, payment_method
    ):
        sub = await _create(db, state_machine, basic_plan, user_id)
        clock.set(sub.current_period_end - timedelta(days=15))
        calls_before = len(processor.calls)

        result = await state_machine.update_plan(db, sub.id, premium_plan.id)

        assert result.subscription.plan_id == premium_plan.id
        assert result.proration.credit_amount == Decimal("15.00")
        assert result.proration.new_amount == Decimal("45.00")
        assert result.billing_record.kind == BillingKind.PRORATION
        assert result.billing_record.status == BillingRecordStatus.PENDING
        assert result.billing_record.amount == Decimal("45.00")
        # Invoiced, not charged
        assert len(processor.calls) == calls_before

    async def test_downgrade_creates_no_record(
        self, db, state_machine, clock, basic_plan, premium_plan, user_id, payment_method
    ):
        sub = await _create(db, state_machine, premium_plan, user_id)
        clock.advance(days=1)

        result = await state_machine.update_plan(db, sub.id, basic_plan.id)

        assert result.subscription.plan_id == basic_plan.id
        assert not result.proration.is_chargeable
        assert result.billing_record is None

    async def test_same_plan_is_a_no_op(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        result = await state_machine.update_plan(db, sub.id, trial_plan.id)

        assert result.proration is None
        assert result.subscription.version == sub.version

    async def test_inactive_target_plan(self, db, state_machine, trial_plan, retired_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)

        with pytest.raises(SubscriptionValidationError):
            await state_machine.update_plan(db, sub.id, retired_plan.id)

    async def test_rejected_when_cancelled(
        self, db, state_machine, trial_plan, premium_plan, user_id
    ):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, sub.id, immediate=True)

        with pytest.raises(InvalidStateError):
            await state_machine.update_plan(db, sub.id, premium_plan.id)

    async def test_rejected_when_suspended(
        self, db, state_machine, trial_plan, premium_plan, user_id
    ):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.suspend(db, sub.id)

        with pytest.raises(InvalidStateError):
            await state_machine.update_plan(db, sub.id, premium_plan.id)


class TestGuardedWrites:
    """Concurrent writers are detected instead of overwriting each other."""

    async def test_stale_version_is_rejected(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)
        await state_machine.cancel(db, sub.id)

        with pytest.raises(ConcurrencyConflictError):
            await crud.subscription.update_guarded(
                db,
                subscription_id=sub.id,
                expected_version=sub.version,
                expected_statuses=[SubscriptionStatus.TRIALING],
                values={"status": SubscriptionStatus.ACTIVE},
            )

        current = await state_machine.load(db, sub.id)
        assert current.status == SubscriptionStatus.TRIALING
        assert current.cancel_at_period_end

    async def test_user_action_retries_after_losing_a_race(
        self, db, state_machine, trial_plan, user_id, monkeypatch
    ):
        sub = await _create(db, state_machine, trial_plan, user_id)
        original_load = state_machine.load
        raced = []

        async def _load_then_race(db_, subscription_id):
            loaded = await original_load(db_, subscription_id)
            if not raced:
                # A background run bumps the version right after our read
                raced.append(True)
                await crud.subscription.update_guarded(
                    db_,
                    subscription_id=subscription_id,
                    expected_version=loaded.version,
                    expected_statuses=[loaded.status],
                    values={},
                )
            return loaded

        monkeypatch.setattr(state_machine, "load", _load_then_race)

        cancelled = await state_machine.cancel(db, sub.id, immediate=True)

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.version == sub.version + 2

    async def test_suspended_cannot_become_active(self, db, state_machine, trial_plan, user_id):
        sub = await _create(db, state_machine, trial_plan, user_id)
        suspended = await state_machine.suspend(db, sub.id)

        with pytest.raises(InvalidStateError):
            await state_machine._write(db, suspended, {}, status=SubscriptionStatus.ACTIVE)
