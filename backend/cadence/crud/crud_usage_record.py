"""CRUD operations for UsageRecord model."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.crud._base import CRUDBase
from cadence.models.usage_record import UsageRecord
from cadence.schemas.usage import UsageRecordCreate


class CRUDUsageRecord(CRUDBase[UsageRecord, UsageRecordCreate, BaseModel]):
    """CRUD operations for UsageRecord model. Append-only: there is no update path."""

    async def sum_quantity(
        self,
        db: AsyncSession,
        *,
        subscription_id: UUID,
        metric_name: str,
        start: datetime,
        end: datetime,
    ) -> Decimal:
        """Total quantity of a metric recorded in [start, end].

        Args:
            db: Database session
            subscription_id: Subscription the usage belongs to
            metric_name: Metric to aggregate
            start: Inclusive lower bound
            end: Inclusive upper bound

        Returns:
            Sum of quantities, 0 when nothing was recorded
        """
        query = select(func.coalesce(func.sum(self.model.quantity), 0)).where(
            and_(
                self.model.subscription_id == subscription_id,
                self.model.metric_name == metric_name,
                self.model.timestamp >= start,
                self.model.timestamp <= end,
            )
        )
        result = await db.execute(query)
        return Decimal(str(result.scalar_one()))


usage_record = CRUDUsageRecord(UsageRecord)
