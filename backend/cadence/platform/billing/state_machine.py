"""Subscription state machine.

Owns every status and period change of a subscription. Each write is a guarded
update on the version the caller read, so a user action and a background run
touching the same subscription cannot silently overwrite each other.

    TRIALING --trial ends, paid--> ACTIVE --renewal paid--> ACTIVE
        |                            |
        +--charge fails--> PAST_DUE <+--charge fails
                              |  ^
           retry succeeds <---+  |
           retries exhausted --> SUSPENDED
    any non-terminal --cancel--> CANCELLED --reactivate--> ACTIVE, TRIALING or PAST_DUE
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.exceptions import (
    ConcurrencyConflictError,
    InvalidStateError,
    SubscriptionNotFoundException,
    SubscriptionValidationError,
)
from cadence.core.logging import LoggerConfigurator
from cadence.db.unit_of_work import UnitOfWork
from cadence.platform.billing.billing_logic import (
    billing_key,
    initial_terms,
    is_retry_exhausted,
    next_period_charge,
)
from cadence.platform.billing.ledger import BillingLedger, PaymentInstrument
from cadence.platform.billing.plan_catalog import PlanCatalog, plan_catalog
from cadence.platform.billing.proration import ProrationResult, calculate_proration
from cadence.schemas.billing_record import BillingKind, BillingRecordStatus
from cadence.schemas.subscription import (
    NON_TERMINAL_STATUSES,
    PLAN_CHANGE_STATUSES,
    SubscriptionStatus,
)

logger = LoggerConfigurator.configure_logger(
    __name__, dimensions={"component": "subscription_state_machine"}
)

T = TypeVar("T")

Status = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    Status.TRIALING: frozenset({Status.ACTIVE, Status.PAST_DUE, Status.SUSPENDED, Status.CANCELLED}),
    Status.ACTIVE: frozenset({Status.PAST_DUE, Status.SUSPENDED, Status.CANCELLED}),
    Status.PAST_DUE: frozenset({Status.ACTIVE, Status.SUSPENDED, Status.CANCELLED}),
    # Recovery needs a new payment method, handled outside billing
    Status.SUSPENDED: frozenset({Status.CANCELLED}),
    # Reactivation before the paid period runs out
    Status.CANCELLED: frozenset({Status.ACTIVE, Status.TRIALING, Status.PAST_DUE}),
}

LIVE_USER_CONFLICT = "User already has an active subscription"


class SweepAction(str, Enum):
    """What the billing sweep did with one subscription."""

    RENEWED = "renewed"
    CONVERTED = "converted"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PlanChangeResult:
    """Outcome of a plan change."""

    subscription: schemas.SubscriptionWithPlan
    proration: Optional[ProrationResult] = None
    billing_record: Optional[schemas.BillingRecord] = None


class SubscriptionStateMachine:
    """Applies lifecycle transitions to subscriptions."""

    def __init__(
        self,
        ledger: BillingLedger,
        catalog: Optional[PlanCatalog] = None,
        clock: Optional[Clock] = None,
        *,
        proration_period_days: Optional[int] = None,
        max_retries: Optional[int] = None,
        conflict_attempts: int = 3,
    ):
        """Initialize the state machine.

        Args:
            ledger: Ledger that creates and charges billing records.
            catalog: Plan lookup.
            clock: Time source for every date the state machine writes.
            proration_period_days: Period length assumed by plan-change proration.
            max_retries: Dunning retries a failed charge gets; reactivation is
                refused while a record has used them all.
            conflict_attempts: How often a user-initiated action re-reads and
                retries after losing a race with a background run.
        """
        self.ledger = ledger
        self.catalog = catalog or plan_catalog
        self.clock = clock or system_clock
        self.proration_period_days = (
            proration_period_days
            if proration_period_days is not None
            else settings.PRORATION_PERIOD_DAYS
        )
        self.max_retries = max_retries if max_retries is not None else settings.BILLING_MAX_RETRIES
        self.conflict_attempts = conflict_attempts

    # Reads and writes

    async def load(self, db: AsyncSession, subscription_id: UUID) -> schemas.SubscriptionWithPlan:
        """Read the current state of a subscription.

        Raises:
            SubscriptionNotFoundException: If it does not exist.
        """
        db_sub = await crud.subscription.get(db, subscription_id)
        if not db_sub:
            raise SubscriptionNotFoundException(f"Subscription {subscription_id} not found")
        return schemas.SubscriptionWithPlan.model_validate(db_sub)

    async def _write(
        self,
        db: AsyncSession,
        sub: schemas.SubscriptionWithPlan,
        values: dict,
        *,
        status: Optional[SubscriptionStatus] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> schemas.SubscriptionWithPlan:
        """Guarded write on the version and status `sub` was read with."""
        if status is not None and status != sub.status:
            if status not in ALLOWED_TRANSITIONS[sub.status]:
                raise InvalidStateError(
                    f"Cannot move subscription from {sub.status.value} to {status.value}"
                )
            values = {**values, "status": status}

        db_sub = await crud.subscription.update_guarded(
            db,
            subscription_id=sub.id,
            expected_version=sub.version,
            expected_statuses=[sub.status],
            values=values,
            uow=uow,
        )
        updated = schemas.SubscriptionWithPlan.model_validate(db_sub)
        if updated.status != sub.status:
            logger.with_context(subscription_id=str(sub.id)).info(
                f"Subscription {sub.status.value} -> {updated.status.value}"
            )
        return updated

    async def _retry_on_conflict(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Re-run `operation` (which re-reads its subscription) after a lost race."""
        for attempt in range(1, self.conflict_attempts + 1):
            try:
                return await operation()
            except ConcurrencyConflictError as e:
                if attempt == self.conflict_attempts:
                    raise
                logger.debug(f"{e.message}; retrying ({attempt}/{self.conflict_attempts})")
        raise AssertionError("unreachable")

    async def _resolve_instrument(
        self, db: AsyncSession, user_id: UUID, payment_method_ref: Optional[str] = None
    ) -> Optional[PaymentInstrument]:
        default = await crud.payment_method.get_default_for_user(db, user_id=user_id)
        if payment_method_ref:
            return PaymentInstrument(payment_method_ref, default.customer_ref if default else None)
        if default:
            return PaymentInstrument.from_payment_method(schemas.PaymentMethod.model_validate(default))
        return None

    # User-initiated transitions

    async def create(
        self, db: AsyncSession, subscription_in: schemas.SubscriptionCreate
    ) -> schemas.SubscriptionWithPlan:
        """Start a subscription, trialing or billed immediately.

        A subscription without trial is charged for its first period right away;
        a failed charge leaves it PAST_DUE for dunning rather than raising.

        Raises:
            PlanNotFoundException: If the plan does not exist.
            SubscriptionValidationError: If the plan is inactive or the user
                already has a live subscription.
        """
        plan = await self.catalog.get_subscribable_plan(db, subscription_in.plan_id)
        if await crud.subscription.get_live_for_user(db, user_id=subscription_in.user_id):
            raise SubscriptionValidationError(LIVE_USER_CONFLICT)

        now = self.clock.now()
        trial_days = (
            subscription_in.trial_days
            if subscription_in.trial_days is not None
            else plan.trial_days
        )
        terms = initial_terms(now, plan.billing_cycle, trial_days)

        try:
            db_sub = await crud.subscription.create(
                db,
                obj_in={
                    "user_id": subscription_in.user_id,
                    "plan_id": plan.id,
                    "status": terms.status,
                    "start_date": now,
                    "current_period_start": terms.current_period_start,
                    "current_period_end": terms.current_period_end,
                    "trial_ends_at": terms.trial_ends_at,
                    "cancel_at_period_end": False,
                    "version": 1,
                },
            )
        except IntegrityError as e:
            await db.rollback()
            raise SubscriptionValidationError(LIVE_USER_CONFLICT) from e

        sub = await self.load(db, db_sub.id)
        log = logger.with_context(subscription_id=str(sub.id), user_id=str(sub.user_id))
        log.info(f"Created {sub.status.value} subscription to {plan.name}")

        if sub.status == Status.TRIALING:
            return sub

        instrument = await self._resolve_instrument(
            db, sub.user_id, subscription_in.payment_method_ref
        )
        outcome = await self.ledger.create_billing_record(
            db,
            sub.id,
            plan.price,
            kind=BillingKind.INITIAL,
            instrument=instrument,
            note=f"Initial payment for {plan.name}",
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
            billing_key=billing_key(sub.id, sub.current_period_start),
            require_payment=True,
        )
        if outcome.failed:
            log.warning(f"Initial payment failed: {outcome.record.failure_reason}")
            sub = await self._retry_on_conflict(lambda: self._mark_past_due(db, sub.id))
        return sub

    async def cancel(
        self, db: AsyncSession, subscription_id: UUID, *, immediate: bool = False
    ) -> schemas.SubscriptionWithPlan:
        """Cancel now, or at the end of the current period.

        Raises:
            SubscriptionNotFoundException: If it does not exist.
            InvalidStateError: If it is already cancelled.
        """

        async def _cancel() -> schemas.SubscriptionWithPlan:
            sub = await self.load(db, subscription_id)
            if sub.status == Status.CANCELLED:
                raise InvalidStateError(f"Subscription {subscription_id} is already cancelled")

            now = self.clock.now()
            if immediate:
                return await self._write(
                    db,
                    sub,
                    {"cancelled_at": now, "cancel_at_period_end": False},
                    status=Status.CANCELLED,
                )
            if sub.cancel_at_period_end:
                return sub
            return await self._write(db, sub, {"cancel_at_period_end": True, "cancelled_at": now})

        return await self._retry_on_conflict(_cancel)

    async def reactivate(
        self, db: AsyncSession, subscription_id: UUID
    ) -> schemas.SubscriptionWithPlan:
        """Undo a cancellation while the paid period is still running.

        A subscription with unpaid billing records comes back PAST_DUE, and
        dunning picks those records up again.

        Raises:
            SubscriptionNotFoundException: If it does not exist.
            InvalidStateError: If it is not cancelled, its period has ended, or
                an unpaid record has no retries left.
            SubscriptionValidationError: If the user has another live subscription.
        """

        async def _reactivate() -> schemas.SubscriptionWithPlan:
            sub = await self.load(db, subscription_id)
            values = {"cancel_at_period_end": False, "cancelled_at": None}

            if sub.status != Status.CANCELLED:
                if not sub.cancel_at_period_end:
                    raise InvalidStateError(f"Subscription {subscription_id} is not cancelled")
                return await self._write(db, sub, values)

            if sub.current_period_end <= self.clock.now():
                raise InvalidStateError(
                    f"Subscription {subscription_id} ended on {sub.current_period_end.isoformat()}; "
                    "start a new subscription instead"
                )
            other = await crud.subscription.get_live_for_user(db, user_id=sub.user_id)
            if other and other.id != sub.id:
                raise SubscriptionValidationError(LIVE_USER_CONFLICT)

            failures = await crud.billing_record.get_open_failures(db, subscription_id=sub.id)
            if failures:
                return await self._reactivate_past_due(
                    db, sub, values, [schemas.BillingRecord.model_validate(r) for r in failures]
                )

            # An unconverted trial goes back to TRIALING so the sweep still bills it
            target = Status.TRIALING if sub.trial_ends_at is not None else Status.ACTIVE
            try:
                return await self._write(db, sub, values, status=target)
            except IntegrityError as e:
                await db.rollback()
                raise SubscriptionValidationError(LIVE_USER_CONFLICT) from e

        return await self._retry_on_conflict(_reactivate)

    async def _reactivate_past_due(
        self,
        db: AsyncSession,
        sub: schemas.SubscriptionWithPlan,
        values: dict,
        failures: list[schemas.BillingRecord],
    ) -> schemas.SubscriptionWithPlan:
        """Reactivate into PAST_DUE and hand unpaid records back to dunning.

        Dunning stops retrying once a subscription is cancelled; the records it
        gave up on are due again right away.

        Raises:
            InvalidStateError: If an unpaid record has no retries left.
        """
        if any(is_retry_exhausted(r.retry_count, self.max_retries) for r in failures):
            raise InvalidStateError(
                f"Subscription {sub.id} has an unpaid balance with no retries left; "
                "update the payment method and start a new subscription"
            )

        now = self.clock.now()
        async with UnitOfWork(db) as uow:
            for record in failures:
                if record.next_retry_at is not None:
                    continue
                await crud.billing_record.update_guarded(
                    db,
                    record_id=record.id,
                    expected_status=BillingRecordStatus.FAILED,
                    expected_retry_count=record.retry_count,
                    values={"next_retry_at": now},
                    uow=uow,
                )
            updated = await self._write(db, sub, values, status=Status.PAST_DUE, uow=uow)

        logger.with_context(subscription_id=str(sub.id)).info(
            f"Reactivated with {len(failures)} unpaid billing records"
        )
        return updated

    async def update_plan(
        self, db: AsyncSession, subscription_id: UUID, new_plan_id: UUID
    ) -> PlanChangeResult:
        """Move a subscription to another plan, invoicing the prorated difference.

        The plan change and its proration record are written in one transaction.
        The proration record is left PENDING; it is invoiced, not charged here.

        Raises:
            SubscriptionNotFoundException: If it does not exist.
            InvalidStateError: If the subscription is suspended or cancelled.
            PlanNotFoundException: If the new plan does not exist.
            SubscriptionValidationError: If the new plan is inactive.
        """

        async def _update() -> PlanChangeResult:
            sub = await self.load(db, subscription_id)
            if sub.status not in PLAN_CHANGE_STATUSES:
                raise InvalidStateError(
                    f"Cannot change plan of a {sub.status.value} subscription"
                )
            if sub.plan_id == new_plan_id:
                return PlanChangeResult(subscription=sub)

            new_plan = await self.catalog.get_subscribable_plan(db, new_plan_id)
            proration = calculate_proration(
                sub.current_period_end,
                sub.plan.price,
                new_plan.price,
                self.clock.now(),
                self.proration_period_days,
            )

            record = None
            async with UnitOfWork(db) as uow:
                await self._write(db, sub, {"plan_id": new_plan.id}, uow=uow)
                if proration.is_chargeable:
                    record = await self.ledger.record_pending(
                        db,
                        sub.id,
                        proration.new_amount,
                        kind=BillingKind.PRORATION,
                        note=f"Proration: {sub.plan.name} -> {new_plan.name}",
                        uow=uow,
                    )

            logger.with_context(subscription_id=str(sub.id)).info(
                f"Plan changed {sub.plan.name} -> {new_plan.name}, "
                f"credit {proration.credit_amount}, due {proration.new_amount}"
            )
            return PlanChangeResult(
                subscription=await self.load(db, sub.id),
                proration=proration,
                billing_record=record,
            )

        return await self._retry_on_conflict(_update)

    # Time-driven transitions

    async def process_due(
        self, db: AsyncSession, subscription_id: UUID, now: Optional[datetime] = None
    ) -> SweepAction:
        """Bill, convert or cancel one subscription picked by the billing sweep.

        Re-reads the subscription first; one that no longer qualifies (another
        run already handled it) is skipped. Safe to run again after a crash:
        the period charge is keyed on the period it pays for.

        Raises:
            ConcurrencyConflictError: If the subscription changed while the
                decision was being written.
        """
        sub = await self.load(db, subscription_id)
        now = now or self.clock.now()
        log = logger.with_context(subscription_id=str(sub.id))

        trial_over = (
            sub.status == Status.TRIALING
            and sub.trial_ends_at is not None
            and sub.trial_ends_at <= now
        )
        period_over = sub.current_period_end <= now

        if sub.cancel_at_period_end and sub.status in NON_TERMINAL_STATUSES:
            if trial_over or period_over:
                await self._write(
                    db, sub, {"cancelled_at": sub.cancelled_at or now}, status=Status.CANCELLED
                )
                log.info("Cancelled at period end")
                return SweepAction.CANCELLED
            return SweepAction.SKIPPED

        if sub.status == Status.TRIALING:
            if not trial_over:
                return SweepAction.SKIPPED
        elif sub.status != Status.ACTIVE or not period_over:
            return SweepAction.SKIPPED

        charge = next_period_charge(
            sub.status, sub.current_period_start, sub.current_period_end, sub.plan.billing_cycle
        )
        instrument = await self._resolve_instrument(db, sub.user_id)
        outcome = await self.ledger.create_billing_record(
            db,
            sub.id,
            sub.plan.price,
            kind=charge.kind,
            instrument=instrument,
            note=f"{sub.plan.name} {charge.period_start.date()} - {charge.period_end.date()}",
            period_start=charge.period_start,
            period_end=charge.period_end,
            billing_key=billing_key(sub.id, charge.period_start),
            require_payment=True,
        )

        if outcome.paid:
            # The money has moved; apply the period even if a user action raced us
            await self._retry_on_conflict(lambda: self.apply_paid_period(db, outcome.record))
            if charge.kind == BillingKind.TRIAL_CONVERSION:
                return SweepAction.CONVERTED
            return SweepAction.RENEWED

        if outcome.failed:
            log.warning(f"Period charge failed: {outcome.record.failure_reason}")
            await self._retry_on_conflict(lambda: self._mark_past_due(db, sub.id))
            return SweepAction.PAST_DUE

        return SweepAction.SKIPPED

    async def apply_paid_period(
        self,
        db: AsyncSession,
        record: schemas.BillingRecord,
        uow: Optional[UnitOfWork] = None,
    ) -> schemas.SubscriptionWithPlan:
        """Move a subscription onto the period a PAID record pays for and make it ACTIVE.

        A no-op when the period is already applied or the subscription was
        cancelled or suspended in the meantime.
        """
        sub = await self.load(db, record.subscription_id)
        if not record.covers_period or sub.status not in PLAN_CHANGE_STATUSES:
            return sub
        if sub.current_period_start > record.period_start:
            return sub

        status = Status.ACTIVE
        if sub.status == Status.PAST_DUE:
            open_failures = await crud.billing_record.count_open_failures(
                db, subscription_id=sub.id, exclude_id=record.id
            )
            if open_failures:
                status = Status.PAST_DUE

        values = {
            "current_period_start": record.period_start,
            "current_period_end": record.period_end,
            "trial_ends_at": None,
        }
        if (
            sub.status == status
            and sub.trial_ends_at is None
            and sub.current_period_start == record.period_start
            and sub.current_period_end == record.period_end
        ):
            return sub
        return await self._write(db, sub, values, status=status, uow=uow)

    async def recover_after_payment(
        self,
        db: AsyncSession,
        record: schemas.BillingRecord,
        uow: Optional[UnitOfWork] = None,
    ) -> schemas.SubscriptionWithPlan:
        """Bring a PAST_DUE subscription back once a dunning retry has paid `record`."""
        if record.covers_period:
            return await self.apply_paid_period(db, record, uow=uow)

        sub = await self.load(db, record.subscription_id)
        if sub.status != Status.PAST_DUE:
            return sub
        open_failures = await crud.billing_record.count_open_failures(
            db, subscription_id=sub.id, exclude_id=record.id
        )
        if open_failures:
            return sub
        return await self._write(db, sub, {}, status=Status.ACTIVE, uow=uow)

    async def suspend(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        uow: Optional[UnitOfWork] = None,
    ) -> schemas.SubscriptionWithPlan:
        """Suspend after dunning is exhausted; cancelled subscriptions stay cancelled."""
        sub = await self.load(db, subscription_id)
        if sub.status in {Status.SUSPENDED, Status.CANCELLED}:
            return sub
        return await self._write(db, sub, {}, status=Status.SUSPENDED, uow=uow)

    async def _mark_past_due(
        self, db: AsyncSession, subscription_id: UUID
    ) -> schemas.SubscriptionWithPlan:
        sub = await self.load(db, subscription_id)
        if sub.status not in {Status.ACTIVE, Status.TRIALING}:
            return sub
        return await self._write(db, sub, {}, status=Status.PAST_DUE)
