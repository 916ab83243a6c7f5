"""Subscription service.

Entry point for callers of the billing engine. Wires the ledger, state
machine, usage tracker and batch runs together from explicit dependencies;
there are no module-level singletons holding state.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.cache import KeyedCache, build_usage_cache
from cadence.core.clock import Clock, system_clock
from cadence.core.exceptions import SubscriptionNotFoundException
from cadence.core.logging import logger
from cadence.db.session import SessionFactory
from cadence.db.unit_of_work import UnitOfWork
from cadence.integrations.payment_processor import PaymentProcessor
from cadence.platform.billing.batch import BatchReport
from cadence.platform.billing.dunning import DunningController
from cadence.platform.billing.ledger import BillingLedger
from cadence.platform.billing.plan_catalog import PlanCatalog
from cadence.platform.billing.state_machine import PlanChangeResult, SubscriptionStateMachine
from cadence.platform.billing.sweep import BillingSweep
from cadence.platform.billing.usage_tracker import OverLimitHook, UsageTracker
from cadence.platform.scheduler import BillingScheduler


class SubscriptionService:
    """Subscription lifecycle, billing history and usage."""

    def __init__(
        self,
        processor: PaymentProcessor,
        *,
        clock: Optional[Clock] = None,
        cache: Optional[KeyedCache] = None,
        session_factory: Optional[SessionFactory] = None,
        catalog: Optional[PlanCatalog] = None,
        on_over_limit: Optional[OverLimitHook] = None,
    ):
        """Initialize the service.

        Args:
            processor: Payment processor charges go to.
            clock: Time source shared by every component.
            cache: Usage aggregate cache; chosen by USAGE_CACHE_BACKEND when omitted.
            session_factory: Sessions for the batch runs; the process-wide one when omitted.
            catalog: Plan lookup.
            on_over_limit: Hook called when recorded usage reaches a limit.
        """
        self.clock = clock or system_clock
        self.catalog = catalog or PlanCatalog()
        self.ledger = BillingLedger(processor, self.clock)
        self.state_machine = SubscriptionStateMachine(self.ledger, self.catalog, self.clock)
        self.usage = UsageTracker(
            cache if cache is not None else build_usage_cache(self.clock),
            self.clock,
            on_over_limit=on_over_limit,
        )
        self.sweep = BillingSweep(self.state_machine, session_factory, self.clock)
        self.dunning = DunningController(
            self.ledger, self.state_machine, session_factory, self.clock
        )

    def build_scheduler(self, **kwargs: Any) -> BillingScheduler:
        """Scheduler running this service's sweep and dunning on their cron schedules."""
        return BillingScheduler.for_billing(self.sweep.run, self.dunning.run, self.clock, **kwargs)

    async def run_billing_sweep(self) -> BatchReport:
        """Run the billing sweep once, now."""
        return await self.sweep.run()

    async def run_dunning(self) -> BatchReport:
        """Run dunning once, now."""
        return await self.dunning.run()

    # Subscriptions

    async def create_subscription(
        self, db: AsyncSession, subscription_in: schemas.SubscriptionCreate
    ) -> schemas.SubscriptionWithPlan:
        """Create a subscription.

        Raises:
            PlanNotFoundException: If the plan does not exist.
            SubscriptionValidationError: If the plan is inactive or the user
                already has an active subscription.
        """
        return await self.state_machine.create(db, subscription_in)

    async def get_subscription(
        self, db: AsyncSession, subscription_id: UUID
    ) -> schemas.SubscriptionWithPlan:
        """Get a subscription with its plan.

        Raises:
            SubscriptionNotFoundException: If it does not exist.
        """
        return await self.state_machine.load(db, subscription_id)

    async def get_active_subscription(
        self, db: AsyncSession, user_id: UUID
    ) -> Optional[schemas.SubscriptionWithPlan]:
        """The user's live subscription whose period has not ended, if any."""
        db_sub = await crud.subscription.get_active_for_user(
            db, user_id=user_id, now=self.clock.now()
        )
        if not db_sub:
            return None
        return schemas.SubscriptionWithPlan.model_validate(db_sub)

    async def has_active_subscription(self, db: AsyncSession, user_id: UUID) -> bool:
        """Whether the user currently has access through a subscription."""
        return await self.get_active_subscription(db, user_id) is not None

    async def update_subscription(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        subscription_in: schemas.SubscriptionUpdate,
    ) -> schemas.SubscriptionWithPlan:
        """Change the plan and/or the cancel-at-period-end flag.

        Setting the flag schedules cancellation; clearing it on a subscription
        that has one undoes the scheduled cancellation.
        """
        sub = await self.get_subscription(db, subscription_id)

        if subscription_in.plan_id is not None and subscription_in.plan_id != sub.plan_id:
            result = await self.change_plan(db, subscription_id, subscription_in.plan_id)
            sub = result.subscription

        if subscription_in.cancel_at_period_end is True:
            sub = await self.state_machine.cancel(db, subscription_id, immediate=False)
        elif subscription_in.cancel_at_period_end is False and sub.cancel_at_period_end:
            sub = await self.state_machine.reactivate(db, subscription_id)
        return sub

    async def change_plan(
        self, db: AsyncSession, subscription_id: UUID, new_plan_id: UUID
    ) -> PlanChangeResult:
        """Move to another plan; the result carries the proration and its record."""
        return await self.state_machine.update_plan(db, subscription_id, new_plan_id)

    async def cancel_subscription(
        self, db: AsyncSession, subscription_id: UUID, *, immediate: bool = False
    ) -> schemas.SubscriptionWithPlan:
        """Cancel now, or at the end of the current period."""
        return await self.state_machine.cancel(db, subscription_id, immediate=immediate)

    async def reactivate_subscription(
        self, db: AsyncSession, subscription_id: UUID
    ) -> schemas.SubscriptionWithPlan:
        """Undo a cancellation before the paid period ends."""
        return await self.state_machine.reactivate(db, subscription_id)

    # Billing

    async def list_billing_history(
        self, db: AsyncSession, subscription_id: UUID, *, limit: int = 100
    ) -> List[schemas.BillingRecord]:
        """Billing records of a subscription, newest first.

        Raises:
            SubscriptionNotFoundException: If the subscription does not exist.
        """
        if not await crud.subscription.get(db, subscription_id):
            raise SubscriptionNotFoundException(f"Subscription {subscription_id} not found")
        records = await crud.billing_record.get_by_subscription(
            db, subscription_id=subscription_id, limit=limit
        )
        return [schemas.BillingRecord.model_validate(r) for r in records]

    async def add_payment_method(
        self, db: AsyncSession, payment_method_in: schemas.PaymentMethodCreate
    ) -> schemas.PaymentMethod:
        """Save a payment method; a new default replaces the user's previous default."""
        async with UnitOfWork(db) as uow:
            if payment_method_in.is_default:
                previous = await crud.payment_method.get_default_for_user(
                    db, user_id=payment_method_in.user_id
                )
                if previous:
                    await crud.payment_method.update(
                        db, db_obj=previous, obj_in={"is_default": False}, uow=uow
                    )
            db_method = await crud.payment_method.create(db, obj_in=payment_method_in, uow=uow)
        logger.info(f"Saved payment method for user {payment_method_in.user_id}")
        return schemas.PaymentMethod.model_validate(db_method)

    # Usage

    async def record_usage(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        metric_name: str,
        quantity: Union[Decimal, float, int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.UsageStatus:
        """Record usage of a metric and return the metric's standing."""
        return await self.usage.record_usage(db, subscription_id, metric_name, quantity, metadata)

    async def get_usage(
        self, db: AsyncSession, subscription_id: UUID, metric_name: str
    ) -> schemas.UsageStatus:
        """Usage of a metric over the current period."""
        return await self.usage.get_usage(db, subscription_id, metric_name)

    async def clear_usage_cache(self, subscription_id: Optional[UUID] = None) -> None:
        """Drop cached usage aggregates of one subscription, or of all of them."""
        if subscription_id is None:
            await self.usage.clear_all()
        else:
            await self.usage.clear_cache(subscription_id)
