"""CRUD operations for PaymentMethod model."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.crud._base import CRUDBase
from cadence.models.payment_method import PaymentMethod
from cadence.schemas.payment_method import PaymentMethodCreate


class CRUDPaymentMethod(CRUDBase[PaymentMethod, PaymentMethodCreate, BaseModel]):
    """CRUD operations for PaymentMethod model."""

    async def get_default_for_user(
        self, db: AsyncSession, *, user_id: UUID
    ) -> Optional[PaymentMethod]:
        """Get the user's default, active payment method.

        Args:
            db: Database session
            user_id: Subscriber

        Returns:
            The most recently added default instrument, or None
        """
        query = (
            select(self.model)
            .where(
                self.model.user_id == user_id,
                self.model.is_default.is_(True),
                self.model.is_active.is_(True),
            )
            .order_by(desc(self.model.created_at))
            .limit(1)
        )
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()


payment_method = CRUDPaymentMethod(PaymentMethod)
