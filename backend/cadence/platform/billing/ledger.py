"""Billing record ledger.

Creates billing records and records the outcome of charging them. A record is
committed as PENDING before the processor is called, so a crash mid-charge
leaves a trace that the next run resumes with the same idempotency key.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.exceptions import ConcurrencyConflictError
from cadence.core.logging import LoggerConfigurator
from cadence.db.unit_of_work import UnitOfWork
from cadence.integrations.payment_processor import (
    ChargeResult,
    PaymentProcessor,
    build_idempotency_key,
)
from cadence.platform.billing.billing_logic import retry_delay
from cadence.schemas.billing_record import BillingKind, BillingRecordStatus

logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "ledger"})

NO_PAYMENT_METHOD = "No payment method available"


@dataclass(frozen=True)
class PaymentInstrument:
    """What the processor needs to charge a saved payment method."""

    payment_method_ref: str
    customer_ref: Optional[str] = None

    @classmethod
    def from_payment_method(
        cls, payment_method: Optional[schemas.PaymentMethod]
    ) -> Optional["PaymentInstrument"]:
        if payment_method is None:
            return None
        return cls(payment_method.processor_ref, payment_method.customer_ref)


@dataclass(frozen=True)
class LedgerOutcome:
    """A billing record and what happened when it was charged."""

    record: schemas.BillingRecord
    charge: Optional[ChargeResult] = None
    replayed: bool = False

    @property
    def paid(self) -> bool:
        return self.record.status == BillingRecordStatus.PAID

    @property
    def failed(self) -> bool:
        return self.record.status == BillingRecordStatus.FAILED


class BillingLedger:
    """Creates billing attempts and records their outcome."""

    def __init__(
        self,
        processor: PaymentProcessor,
        clock: Optional[Clock] = None,
        *,
        payment_timeout: Optional[float] = None,
        due_days: Optional[int] = None,
        initial_retry_hours: Optional[int] = None,
    ):
        """Initialize the ledger.

        Args:
            processor: Payment processor charges are sent to.
            clock: Time source for billed, paid and retry dates.
            payment_timeout: Seconds before a processor call counts as failed.
            due_days: Days from billing to due date.
            initial_retry_hours: Delay before the first dunning retry of a failed charge.
        """
        self.processor = processor
        self.clock = clock or system_clock
        self.payment_timeout = (
            payment_timeout if payment_timeout is not None else settings.PAYMENT_TIMEOUT_SECONDS
        )
        self.due_days = due_days if due_days is not None else settings.BILLING_DUE_DAYS
        self.initial_retry_hours = (
            initial_retry_hours
            if initial_retry_hours is not None
            else settings.BILLING_INITIAL_RETRY_HOURS
        )

    async def attempt_charge(
        self,
        record: schemas.BillingRecord,
        instrument: PaymentInstrument,
        attempt: int,
    ) -> ChargeResult:
        """Send one charge for `record` to the processor.

        Never raises for a payment problem. A timeout or an unexpected processor
        error is a retryable failure; the call is not retried here. Every attempt
        at a record carries the record's idempotency key, so a timed-out charge
        that did settle comes back as paid on the next attempt.
        """
        idempotency_key = build_idempotency_key(record.subscription_id, record.id)
        log = logger.with_context(
            subscription_id=str(record.subscription_id),
            billing_record_id=str(record.id),
            attempt=attempt,
        )
        try:
            result = await asyncio.wait_for(
                self.processor.charge(
                    record.amount,
                    instrument.payment_method_ref,
                    idempotency_key,
                    customer_ref=instrument.customer_ref,
                    description=record.note or f"Subscription billing ({record.kind.value})",
                    metadata={
                        "subscription_id": str(record.subscription_id),
                        "billing_record_id": str(record.id),
                        "attempt": str(attempt),
                    },
                ),
                timeout=self.payment_timeout,
            )
        except asyncio.TimeoutError:
            log.warning(f"Payment processor timed out after {self.payment_timeout}s")
            return ChargeResult.failed("Payment processor timed out", retryable=True)
        except Exception as e:
            log.error(f"Payment processor raised: {e}", exc_info=True)
            return ChargeResult.failed(str(e) or type(e).__name__, retryable=True)

        if result.success:
            log.info(f"Charged {record.amount} ({result.external_id})")
        else:
            log.warning(f"Charge declined: {result.reason} (retryable={result.retryable})")
        return result

    async def create_billing_record(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        amount: Decimal,
        *,
        kind: BillingKind,
        instrument: Optional[PaymentInstrument] = None,
        note: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        billing_key: Optional[str] = None,
        require_payment: bool = False,
    ) -> LedgerOutcome:
        """Create a billing record and charge it when an instrument is supplied.

        Args:
            db: Database session
            subscription_id: Subscription being billed
            amount: Amount to charge
            kind: Why the record exists
            instrument: Payment method to charge synchronously
            note: Free-text description
            period_start: Start of the period this charge pays for
            period_end: End of the period this charge pays for
            billing_key: Unique key of a period charge; an existing record with
                the same key is resumed instead of charged again
            require_payment: Fail the record immediately when no instrument is
                supplied, instead of leaving it PENDING for invoicing

        Returns:
            LedgerOutcome with the stored record

        Raises:
            ConcurrencyConflictError: If another process created the same period
                charge concurrently.
        """
        if billing_key:
            existing = await crud.billing_record.get_by_billing_key(db, billing_key=billing_key)
            if existing:
                return await self._resume(db, schemas.BillingRecord.model_validate(existing), instrument)

        now = self.clock.now()
        record_in = schemas.BillingRecordCreate(
            subscription_id=subscription_id,
            kind=kind,
            amount=amount,
            billed_date=now,
            due_date=now + timedelta(days=self.due_days),
            status=BillingRecordStatus.PENDING,
            period_start=period_start,
            period_end=period_end,
            billing_key=billing_key,
            payment_method_ref=instrument.payment_method_ref if instrument else None,
            note=note,
        )
        try:
            db_record = await crud.billing_record.create(db, obj_in=record_in)
        except IntegrityError as e:
            await db.rollback()
            raise ConcurrencyConflictError(
                "BillingRecord",
                subscription_id,
                message=f"Billing record {billing_key} was created concurrently",
            ) from e

        record = schemas.BillingRecord.model_validate(db_record)
        logger.with_context(
            subscription_id=str(subscription_id), billing_record_id=str(record.id)
        ).info(f"Created {kind.value} billing record for {amount}")

        return await self._settle(db, record, instrument, require_payment, attempt=0)

    async def record_pending(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        amount: Decimal,
        *,
        kind: BillingKind,
        note: Optional[str] = None,
        uow: Optional[UnitOfWork] = None,
    ) -> schemas.BillingRecord:
        """Create a record that is invoiced rather than charged, inside the caller's transaction."""
        now = self.clock.now()
        record_in = schemas.BillingRecordCreate(
            subscription_id=subscription_id,
            kind=kind,
            amount=amount,
            billed_date=now,
            due_date=now + timedelta(days=self.due_days),
            status=BillingRecordStatus.PENDING,
            note=note,
        )
        db_record = await crud.billing_record.create(db, obj_in=record_in, uow=uow)
        return schemas.BillingRecord.model_validate(db_record)

    async def _resume(
        self,
        db: AsyncSession,
        record: schemas.BillingRecord,
        instrument: Optional[PaymentInstrument],
    ) -> LedgerOutcome:
        """Continue a period charge an earlier run already started."""
        log = logger.with_context(
            subscription_id=str(record.subscription_id), billing_record_id=str(record.id)
        )
        if record.status != BillingRecordStatus.PENDING:
            log.info(f"Billing record {record.billing_key} already {record.status.value}")
            return LedgerOutcome(record=record, replayed=True)

        log.info(f"Resuming pending billing record {record.billing_key}")
        outcome = await self._settle(db, record, instrument, require_payment=True, attempt=0)
        return LedgerOutcome(record=outcome.record, charge=outcome.charge, replayed=True)

    async def _settle(
        self,
        db: AsyncSession,
        record: schemas.BillingRecord,
        instrument: Optional[PaymentInstrument],
        require_payment: bool,
        attempt: int,
    ) -> LedgerOutcome:
        if record.amount == 0:
            # Nothing to collect; no processor call
            return LedgerOutcome(record=await self._mark_paid(db, record, None))

        if instrument is None:
            if not require_payment:
                return LedgerOutcome(record=record)
            charge = ChargeResult.failed(NO_PAYMENT_METHOD, retryable=True)
        else:
            charge = await self.attempt_charge(record, instrument, attempt)

        if charge.success:
            return LedgerOutcome(record=await self._mark_paid(db, record, charge.external_id), charge=charge)
        return LedgerOutcome(record=await self._mark_failed(db, record, charge), charge=charge)

    async def _mark_paid(
        self, db: AsyncSession, record: schemas.BillingRecord, external_id: Optional[str]
    ) -> schemas.BillingRecord:
        updated = await crud.billing_record.update_guarded(
            db,
            record_id=record.id,
            expected_status=BillingRecordStatus.PENDING,
            expected_retry_count=record.retry_count,
            values={
                "status": BillingRecordStatus.PAID,
                "paid_date": self.clock.now(),
                "external_id": external_id,
                "next_retry_at": None,
                "failure_reason": None,
            },
        )
        return schemas.BillingRecord.model_validate(updated)

    async def _mark_failed(
        self, db: AsyncSession, record: schemas.BillingRecord, charge: ChargeResult
    ) -> schemas.BillingRecord:
        updated = await crud.billing_record.update_guarded(
            db,
            record_id=record.id,
            expected_status=BillingRecordStatus.PENDING,
            expected_retry_count=record.retry_count,
            values={
                "status": BillingRecordStatus.FAILED,
                "retry_count": 0,
                "next_retry_at": self.clock.now() + retry_delay(0, self.initial_retry_hours),
                "failure_reason": charge.reason,
            },
        )
        return schemas.BillingRecord.model_validate(updated)
