"""CRUD operations for BillingRecord model."""

from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import and_, desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.exceptions import ConcurrencyConflictError
from cadence.crud._base import CRUDBase, _plain
from cadence.db.unit_of_work import UnitOfWork
from cadence.models.billing_record import BillingRecord
from cadence.schemas.billing_record import (
    BillingRecordCreate,
    BillingRecordStatus,
    BillingRecordUpdate,
)


class CRUDBillingRecord(CRUDBase[BillingRecord, BillingRecordCreate, BillingRecordUpdate]):
    """CRUD operations for BillingRecord model."""

    async def get_by_billing_key(
        self, db: AsyncSession, *, billing_key: str
    ) -> Optional[BillingRecord]:
        """Get the record that charges for a given subscription period."""
        query = select(self.model).where(self.model.billing_key == billing_key)
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_subscription(
        self, db: AsyncSession, *, subscription_id: UUID, limit: int = 100
    ) -> List[BillingRecord]:
        """Get billing history for a subscription, newest first."""
        query = (
            select(self.model)
            .where(self.model.subscription_id == subscription_id)
            .order_by(desc(self.model.billed_date), desc(self.model.created_at))
            .limit(limit)
        )
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_due_for_retry(
        self,
        db: AsyncSession,
        *,
        now: datetime,
        max_retries: int,
        limit: Optional[int] = None,
    ) -> List[BillingRecord]:
        """Get failed records whose next retry is due and that still have retries left."""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.status == BillingRecordStatus.FAILED.value,
                    self.model.retry_count < max_retries,
                    self.model.next_retry_at.is_not(None),
                    self.model.next_retry_at <= now,
                )
            )
            .order_by(self.model.next_retry_at)
        )
        if limit:
            query = query.limit(limit)
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_open_failures(
        self, db: AsyncSession, *, subscription_id: UUID
    ) -> List[BillingRecord]:
        """Get the FAILED records of a subscription, oldest first."""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.subscription_id == subscription_id,
                    self.model.status == BillingRecordStatus.FAILED.value,
                )
            )
            .order_by(self.model.billed_date, self.model.created_at)
        )
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_open_failures(
        self, db: AsyncSession, *, subscription_id: UUID, exclude_id: Optional[UUID] = None
    ) -> int:
        """Count FAILED records of a subscription, optionally ignoring one."""
        query = select(self.model.id).where(
            and_(
                self.model.subscription_id == subscription_id,
                self.model.status == BillingRecordStatus.FAILED.value,
            )
        )
        if exclude_id is not None:
            query = query.where(self.model.id != exclude_id)
        result = await db.execute(query)
        return len(result.scalars().all())

    async def update_guarded(
        self,
        db: AsyncSession,
        *,
        record_id: UUID,
        expected_status: BillingRecordStatus,
        expected_retry_count: int,
        values: dict[str, Any],
        uow: Optional[UnitOfWork] = None,
    ) -> BillingRecord:
        """Compare-and-swap update keyed on status and retry count.

        Two dunning workers picking the same record cannot both record an outcome.

        Raises:
            ConcurrencyConflictError: If the record moved on since it was read.
        """
        stmt = (
            update(self.model)
            .where(
                and_(
                    self.model.id == record_id,
                    self.model.status == BillingRecordStatus(expected_status).value,
                    self.model.retry_count == expected_retry_count,
                )
            )
            .values(**_plain(values))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            if uow is None:
                await db.rollback()
            raise ConcurrencyConflictError(
                "BillingRecord",
                record_id,
                expected={
                    "status": BillingRecordStatus(expected_status).value,
                    "retry_count": expected_retry_count,
                },
            )

        if uow is None:
            await db.commit()

        return await self.get(db, record_id)


billing_record = CRUDBillingRecord(BillingRecord)
