"""Dunning controller.

Retries failed charges on an exponential backoff (gaps of 2h, 4h and 8h between
attempts with the default settings) and suspends the subscription once the
retries are used up. A record's outcome and the subscription transition it
causes are committed together.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.logging import LoggerConfigurator
from cadence.db.session import SessionFactory, get_db_context
from cadence.db.unit_of_work import UnitOfWork
from cadence.integrations.payment_processor import ChargeResult
from cadence.platform.billing.batch import SKIPPED, BatchReport, run_batch
from cadence.platform.billing.billing_logic import is_retry_exhausted, retry_delay
from cadence.platform.billing.ledger import NO_PAYMENT_METHOD, BillingLedger, PaymentInstrument
from cadence.platform.billing.state_machine import SubscriptionStateMachine
from cadence.schemas.billing_record import BillingRecordStatus
from cadence.schemas.subscription import SubscriptionStatus

logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "dunning"})

RECOVERED = "recovered"
RETRY_SCHEDULED = "retry_scheduled"
SUSPENDED = "suspended"
ABANDONED = "abandoned"


class DunningController:
    """Retries failed billing records."""

    def __init__(
        self,
        ledger: BillingLedger,
        state_machine: SubscriptionStateMachine,
        session_factory: Optional[SessionFactory] = None,
        clock: Optional[Clock] = None,
        *,
        max_retries: Optional[int] = None,
        initial_retry_hours: Optional[int] = None,
        retry_permanent_failures: Optional[bool] = None,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        """Initialize the controller.

        Args:
            ledger: Sends retry charges to the processor.
            state_machine: Recovers or suspends subscriptions.
            session_factory: Source of per-item sessions.
            clock: Time the run considers "now" when none is passed to `run`.
            max_retries: Retries before a subscription is suspended.
            initial_retry_hours: First backoff step; later steps double it.
            retry_permanent_failures: Keep retrying declines the processor marks
                as permanent instead of suspending straight away.
            concurrency: Records processed at once.
            batch_size: Cap on records selected per run.
        """
        self.ledger = ledger
        self.state_machine = state_machine
        self.session_factory = session_factory
        self.clock = clock or system_clock
        self.max_retries = max_retries if max_retries is not None else settings.BILLING_MAX_RETRIES
        self.initial_retry_hours = (
            initial_retry_hours
            if initial_retry_hours is not None
            else settings.BILLING_INITIAL_RETRY_HOURS
        )
        self.retry_permanent_failures = (
            retry_permanent_failures
            if retry_permanent_failures is not None
            else settings.DUNNING_RETRY_PERMANENT_FAILURES
        )
        self.concurrency = concurrency or settings.BILLING_SWEEP_CONCURRENCY
        self.batch_size = batch_size

    async def run(self, now: Optional[datetime] = None) -> BatchReport:
        """Retry every failed record whose next attempt is due at `now`."""
        now = now or self.clock.now()
        report = BatchReport(name="dunning", started_at=now)
        log = logger.with_context(dunning_time=now.isoformat())

        async with get_db_context(self.session_factory) as db:
            records = await crud.billing_record.get_due_for_retry(
                db, now=now, max_retries=self.max_retries, limit=self.batch_size
            )
            ids = [r.id for r in records]

        if ids:
            log.info(f"Retrying {len(ids)} failed billing records")

        async def _process(db: AsyncSession, record_id: UUID) -> str:
            return await self.retry_record(db, record_id, now)

        await run_batch(
            report,
            ids,
            _process,
            session_factory=self.session_factory,
            concurrency=self.concurrency,
            log=log,
            item_label="billing_record_id",
        )
        report.finished_at = self.clock.now()
        log.info(report.summary())
        return report

    async def retry_record(
        self, db: AsyncSession, record_id: UUID, now: Optional[datetime] = None
    ) -> str:
        """Make one more attempt at a failed record.

        Returns:
            The outcome name tallied in the run report.

        Raises:
            ConcurrencyConflictError: If another worker recorded an outcome first.
        """
        now = now or self.clock.now()
        db_record = await crud.billing_record.get(db, record_id)
        if not db_record:
            return SKIPPED
        record = schemas.BillingRecord.model_validate(db_record)
        if (
            record.status != BillingRecordStatus.FAILED
            or is_retry_exhausted(record.retry_count, self.max_retries)
            or record.next_retry_at is None
            or record.next_retry_at > now
        ):
            return SKIPPED

        log = logger.with_context(
            billing_record_id=str(record.id),
            subscription_id=str(record.subscription_id),
            retry_count=record.retry_count,
        )
        sub = await self.state_machine.load(db, record.subscription_id)
        if sub.status == SubscriptionStatus.CANCELLED:
            await crud.billing_record.update_guarded(
                db,
                record_id=record.id,
                expected_status=BillingRecordStatus.FAILED,
                expected_retry_count=record.retry_count,
                values={"next_retry_at": None},
            )
            log.info("Subscription cancelled; no further retries")
            return ABANDONED

        attempt = record.retry_count + 1
        db_method = await crud.payment_method.get_default_for_user(db, user_id=sub.user_id)
        if db_method:
            instrument = PaymentInstrument.from_payment_method(
                schemas.PaymentMethod.model_validate(db_method)
            )
            charge = await self.ledger.attempt_charge(record, instrument, attempt)
        else:
            charge = ChargeResult.failed(NO_PAYMENT_METHOD, retryable=True)

        if charge.success:
            async with UnitOfWork(db) as uow:
                paid = await crud.billing_record.update_guarded(
                    db,
                    record_id=record.id,
                    expected_status=BillingRecordStatus.FAILED,
                    expected_retry_count=record.retry_count,
                    values={
                        "status": BillingRecordStatus.PAID,
                        "paid_date": self.clock.now(),
                        "external_id": charge.external_id,
                        "payment_method_ref": instrument.payment_method_ref,
                        "next_retry_at": None,
                        "failure_reason": None,
                    },
                    uow=uow,
                )
                await self.state_machine.recover_after_payment(
                    db, schemas.BillingRecord.model_validate(paid), uow=uow
                )
            log.info(f"Retry {attempt} succeeded")
            return RECOVERED

        return await self._record_failure(db, record, charge, now)

    async def _record_failure(
        self,
        db: AsyncSession,
        record: schemas.BillingRecord,
        charge: ChargeResult,
        now: datetime,
    ) -> str:
        log = logger.with_context(
            billing_record_id=str(record.id), subscription_id=str(record.subscription_id)
        )
        retry_count = record.retry_count + 1
        exhausted = is_retry_exhausted(retry_count, self.max_retries)

        if not charge.retryable and not exhausted:
            if self.retry_permanent_failures:
                log.warning(f"Permanent decline retried on schedule: {charge.reason}")
            else:
                retry_count = self.max_retries
                exhausted = True

        async with UnitOfWork(db) as uow:
            await crud.billing_record.update_guarded(
                db,
                record_id=record.id,
                expected_status=BillingRecordStatus.FAILED,
                expected_retry_count=record.retry_count,
                values={
                    "retry_count": retry_count,
                    "next_retry_at": (
                        None
                        if exhausted
                        else now + retry_delay(retry_count, self.initial_retry_hours)
                    ),
                    "failure_reason": charge.reason,
                },
                uow=uow,
            )
            if exhausted:
                await self.state_machine.suspend(db, record.subscription_id, uow=uow)

        if exhausted:
            log.warning(f"Retries exhausted after {retry_count} attempts; subscription suspended")
            return SUSPENDED
        log.info(f"Retry {retry_count} failed: {charge.reason}")
        return RETRY_SCHEDULED
