"""CRUD operations for Subscription model."""

from datetime import datetime
from typing import Any, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.exceptions import ConcurrencyConflictError
from cadence.crud._base import CRUDBase, _plain
from cadence.db.unit_of_work import UnitOfWork
from cadence.models.subscription import Subscription
from cadence.schemas.subscription import (
    LIVE_STATUSES,
    NON_TERMINAL_STATUSES,
    SubscriptionStatus,
    SubscriptionUpdate,
)


class CRUDSubscription(CRUDBase[Subscription, dict, SubscriptionUpdate]):
    """CRUD operations for Subscription model.

    Status and period changes go through `update_guarded`, never `update`.
    """

    async def get_live_for_user(self, db: AsyncSession, *, user_id: UUID) -> Optional[Subscription]:
        """Get the user's ACTIVE or TRIALING subscription, regardless of period end."""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.status.in_([s.value for s in LIVE_STATUSES]),
                )
            )
            .limit(1)
        )
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_active_for_user(
        self, db: AsyncSession, *, user_id: UUID, now: datetime
    ) -> Optional[Subscription]:
        """Get the user's live subscription whose current period has not ended."""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.status.in_([s.value for s in LIVE_STATUSES]),
                    self.model.current_period_end >= now,
                )
            )
            .limit(1)
        )
        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_due_for_billing(
        self, db: AsyncSession, *, now: datetime, limit: Optional[int] = None
    ) -> List[Subscription]:
        """Get subscriptions the billing sweep must act on.

        Trials that have ended, and active subscriptions whose period has ended
        and that are not set to cancel. Selection only looks at persisted
        period boundaries, so a subscription rolled forward by an earlier
        (possibly crashed) run no longer matches.

        Args:
            db: Database session
            now: Sweep time
            limit: Optional batch size

        Returns:
            Due subscriptions, oldest deadline first
        """
        query = (
            select(self.model)
            .where(
                or_(
                    and_(
                        self.model.status == SubscriptionStatus.TRIALING.value,
                        self.model.trial_ends_at.is_not(None),
                        self.model.trial_ends_at <= now,
                    ),
                    and_(
                        self.model.status == SubscriptionStatus.ACTIVE.value,
                        self.model.current_period_end <= now,
                        self.model.cancel_at_period_end.is_(False),
                    ),
                )
            )
            .order_by(self.model.current_period_end)
        )
        if limit:
            query = query.limit(limit)
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def get_due_for_cancellation(
        self, db: AsyncSession, *, now: datetime, limit: Optional[int] = None
    ) -> List[Subscription]:
        """Get non-terminal subscriptions set to cancel whose period has ended."""
        query = (
            select(self.model)
            .where(
                and_(
                    self.model.status.in_([s.value for s in NON_TERMINAL_STATUSES]),
                    self.model.current_period_end <= now,
                    self.model.cancel_at_period_end.is_(True),
                )
            )
            .order_by(self.model.current_period_end)
        )
        if limit:
            query = query.limit(limit)
        result = await db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def update_guarded(
        self,
        db: AsyncSession,
        *,
        subscription_id: UUID,
        expected_version: int,
        expected_statuses: Iterable[SubscriptionStatus],
        values: dict[str, Any],
        uow: Optional[UnitOfWork] = None,
    ) -> Subscription:
        """Compare-and-swap update of a subscription.

        The row is only written when it still has `expected_version` and one of
        `expected_statuses`; the version is bumped on success.

        Args:
            db: Database session
            subscription_id: Subscription to update
            expected_version: Version the caller read
            expected_statuses: Statuses the transition is valid from
            values: Columns to write
            uow: Unit of work for transaction control; commits when omitted

        Returns:
            The refreshed subscription

        Raises:
            ConcurrencyConflictError: If the precondition no longer holds.
        """
        statuses = [SubscriptionStatus(s).value for s in expected_statuses]
        stmt = (
            update(self.model)
            .where(
                and_(
                    self.model.id == subscription_id,
                    self.model.version == expected_version,
                    self.model.status.in_(statuses),
                )
            )
            .values(**_plain(values), version=self.model.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            if uow is None:
                await db.rollback()
            raise ConcurrencyConflictError(
                "Subscription",
                subscription_id,
                expected={"version": expected_version, "status": sorted(statuses)},
            )

        if uow is None:
            await db.commit()

        refreshed = await self.get(db, subscription_id)
        return refreshed


subscription = CRUDSubscription(Subscription)
