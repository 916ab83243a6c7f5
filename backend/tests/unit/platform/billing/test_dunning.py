"""Tests for the dunning controller."""

from datetime import datetime, timedelta

import pytest

from cadence import crud
from cadence.core.exceptions import InvalidStateError
from cadence.platform.billing.dunning import DunningController
from cadence.platform.billing.sweep import BillingSweep
from cadence.schemas.billing_record import BillingKind, BillingRecordStatus
from cadence.schemas.subscription import SubscriptionCreate, SubscriptionStatus


@pytest.fixture
def sweep(state_machine, session_factory, clock):
    """Sweep over the test database."""
    return BillingSweep(state_machine, session_factory, clock, concurrency=1)


@pytest.fixture
def dunning(ledger, state_machine, session_factory, clock):
    """Dunning with three retries on a 2h, 4h, 8h schedule."""
    return DunningController(
        ledger,
        state_machine,
        session_factory,
        clock,
        max_retries=3,
        initial_retry_hours=2,
        retry_permanent_failures=True,
        concurrency=1,
    )


@pytest.fixture
async def past_due(db, sweep, state_machine, processor, clock, basic_plan, user_id, payment_method):
    """A subscription whose renewal charge was declined at the period end."""
    sub = await state_machine.create(db, SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id))
    clock.set(sub.current_period_end)
    processor.decline("insufficient_funds")
    await sweep.run()
    return sub


async def _renewal_record(db, subscription_id):
    records = await crud.billing_record.get_by_subscription(db, subscription_id=subscription_id)
    return next(r for r in records if r.kind == BillingKind.RENEWAL.value)


async def _initial_record(db, subscription_id):
    records = await crud.billing_record.get_by_subscription(db, subscription_id=subscription_id)
    return next(r for r in records if r.kind == BillingKind.INITIAL.value)


class TestRetrySchedule:
    """Failed charges are retried on an exponential backoff, then suspended."""

    async def test_full_dunning_cycle_ends_in_suspension(
        self, db, dunning, state_machine, processor, clock, past_due
    ):
        failed_at = clock.now()
        record = await _renewal_record(db, past_due.id)
        assert record.next_retry_at == failed_at + timedelta(hours=2)

        expected = [
            (1, failed_at + timedelta(hours=2 + 4)),
            (2, failed_at + timedelta(hours=2 + 4 + 8)),
        ]
        for retry_count, next_retry_at in expected:
            clock.set(record.next_retry_at)
            processor.decline("insufficient_funds")
            report = await dunning.run()

            assert report.count("retry_scheduled") == 1
            record = await _renewal_record(db, past_due.id)
            assert record.retry_count == retry_count
            assert record.next_retry_at == next_retry_at
            assert (await state_machine.load(db, past_due.id)).status == SubscriptionStatus.PAST_DUE

        clock.set(record.next_retry_at)
        processor.decline("insufficient_funds")
        report = await dunning.run()

        assert report.count("suspended") == 1
        record = await _renewal_record(db, past_due.id)
        assert record.retry_count == 3
        assert record.next_retry_at is None
        assert record.status == BillingRecordStatus.FAILED.value
        suspended = await state_machine.load(db, past_due.id)
        assert suspended.status == SubscriptionStatus.SUSPENDED
        assert suspended.needs_payment_update
        assert not suspended.is_live

        # Exhausted records are never picked again
        clock.advance(days=1)
        assert (await dunning.run()).selected == 0

    async def test_retries_reuse_the_record_idempotency_key(
        self, db, dunning, processor, clock, past_due
    ):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        processor.decline()

        await dunning.run()

        keys = [c["idempotency_key"] for c in processor.calls if str(record.id) in c["idempotency_key"]]
        assert keys == [f"cadence:{past_due.id}:{record.id}"] * 2
        assert [c["metadata"]["attempt"] for c in processor.calls[-2:]] == ["0", "1"]

    async def test_not_retried_before_next_retry_at(self, db, dunning, processor, clock, past_due):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at - timedelta(minutes=1))
        calls_before = len(processor.calls)

        report = await dunning.run()

        assert report.selected == 0
        assert len(processor.calls) == calls_before


class TestRecovery:
    """A successful retry brings the subscription back."""

    async def test_successful_retry_reactivates_and_applies_period(
        self, db, dunning, state_machine, clock, past_due
    ):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)

        report = await dunning.run()

        assert report.count("recovered") == 1
        paid = await _renewal_record(db, past_due.id)
        assert paid.status == BillingRecordStatus.PAID.value
        assert paid.paid_date == clock.now()
        assert paid.next_retry_at is None

        sub = await state_machine.load(db, past_due.id)
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == datetime(2024, 2, 15, 12, 0)
        assert sub.current_period_end == datetime(2024, 3, 15, 12, 0)

    async def test_renewal_settled_after_timeout_is_charged_once(
        self, db, sweep, dunning, state_machine, ledger, processor, clock, basic_plan, user_id,
        payment_method,
    ):
        sub = await state_machine.create(db, SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id))
        clock.set(sub.current_period_end)
        ledger.payment_timeout = 0.05
        processor.delay_after_settling = 0.5

        await sweep.run()

        record = await _renewal_record(db, sub.id)
        assert record.status == BillingRecordStatus.FAILED.value
        assert (await state_machine.load(db, sub.id)).status == SubscriptionStatus.PAST_DUE

        processor.delay_after_settling = 0
        clock.set(record.next_retry_at)
        report = await dunning.run()

        assert report.count("recovered") == 1
        assert processor.settled.count(f"cadence:{sub.id}:{record.id}") == 1
        paid = await _renewal_record(db, sub.id)
        assert paid.status == BillingRecordStatus.PAID.value
        assert (await state_machine.load(db, sub.id)).status == SubscriptionStatus.ACTIVE

    async def test_recovered_subscription_renews_normally(
        self, db, dunning, sweep, state_machine, clock, past_due
    ):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        await dunning.run()
        clock.set(datetime(2024, 3, 15, 12, 0))

        report = await sweep.run()

        assert report.count("renewed") == 1


class TestPolicy:
    """Edge cases of the retry policy."""

    async def test_permanent_decline_suspends_when_policy_says_so(
        self, db, ledger, state_machine, session_factory, processor, clock, past_due
    ):
        dunning = DunningController(
            ledger, state_machine, session_factory, clock,
            max_retries=3, retry_permanent_failures=False,
        )
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        processor.decline("expired_card", retryable=False)

        report = await dunning.run()

        assert report.count("suspended") == 1
        record = await _renewal_record(db, past_due.id)
        assert record.retry_count == 3
        assert record.next_retry_at is None

    async def test_permanent_decline_is_retried_by_default(
        self, db, dunning, processor, clock, past_due
    ):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        processor.decline("expired_card", retryable=False)

        report = await dunning.run()

        assert report.count("retry_scheduled") == 1

    async def test_missing_payment_method_counts_as_attempt(
        self, db, dunning, processor, clock, past_due, payment_method
    ):
        await crud.payment_method.update(
            db, db_obj=await crud.payment_method.get(db, payment_method.id), obj_in={"is_active": False}
        )
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)

        await dunning.run()

        record = await _renewal_record(db, past_due.id)
        assert record.retry_count == 1
        assert record.failure_reason == "No payment method available"

    async def test_cancelled_subscription_is_abandoned(
        self, db, dunning, state_machine, processor, clock, past_due
    ):
        await state_machine.cancel(db, past_due.id, immediate=True)
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        calls_before = len(processor.calls)

        report = await dunning.run()

        assert report.count("abandoned") == 1
        assert len(processor.calls) == calls_before
        assert (await _renewal_record(db, past_due.id)).next_retry_at is None

    async def test_stale_record_is_skipped(self, db, dunning, clock, past_due):
        record = await _renewal_record(db, past_due.id)
        clock.set(record.next_retry_at)
        await dunning.run()

        # Already paid; a second worker picking it up does nothing
        outcome = await dunning.retry_record(db, record.id)

        assert outcome == "skipped"


class TestReactivationWithUnpaidRecords:
    """A cancelled subscription with unpaid records cannot come back ACTIVE for free."""

    @pytest.fixture
    async def abandoned(
        self, db, dunning, state_machine, processor, clock, basic_plan, user_id, payment_method
    ):
        """Initial charge declined, cancelled at once, then abandoned by dunning."""
        processor.decline("insufficient_funds")
        sub = await state_machine.create(db, SubscriptionCreate(user_id=user_id, plan_id=basic_plan.id))
        assert sub.status == SubscriptionStatus.PAST_DUE
        await state_machine.cancel(db, sub.id, immediate=True)
        record = await _initial_record(db, sub.id)
        clock.set(record.next_retry_at)
        assert (await dunning.run()).count("abandoned") == 1
        return sub

    async def test_reactivation_restores_past_due_and_rearms_retries(
        self, db, dunning, state_machine, clock, abandoned
    ):
        clock.advance(hours=1)

        sub = await state_machine.reactivate(db, abandoned.id)

        assert sub.status == SubscriptionStatus.PAST_DUE
        assert sub.cancelled_at is None
        assert not sub.cancel_at_period_end
        record = await _initial_record(db, abandoned.id)
        assert record.status == BillingRecordStatus.FAILED.value
        assert record.next_retry_at == clock.now()

    async def test_rearmed_record_is_collected_by_dunning(
        self, db, dunning, state_machine, processor, clock, abandoned
    ):
        await state_machine.reactivate(db, abandoned.id)

        report = await dunning.run()

        assert report.count("recovered") == 1
        assert (await _initial_record(db, abandoned.id)).status == BillingRecordStatus.PAID.value
        assert (await state_machine.load(db, abandoned.id)).status == SubscriptionStatus.ACTIVE

    async def test_exhausted_record_blocks_reactivation(self, db, state_machine, abandoned):
        record = await _initial_record(db, abandoned.id)
        await crud.billing_record.update_guarded(
            db,
            record_id=record.id,
            expected_status=BillingRecordStatus.FAILED,
            expected_retry_count=record.retry_count,
            values={"retry_count": 3},
        )

        with pytest.raises(InvalidStateError):
            await state_machine.reactivate(db, abandoned.id)

        assert (await state_machine.load(db, abandoned.id)).status == SubscriptionStatus.CANCELLED
