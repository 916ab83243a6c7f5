"""Usage metering against plan limits.

Usage events are appended and never updated. Aggregates over the current
billing period are cached per subscription and invalidated on every write,
so a read never trails a write made through this tracker.
"""

import inspect
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.cache import KeyedCache, MemoryCache
from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.exceptions import SubscriptionNotFoundException
from cadence.core.logging import LoggerConfigurator
from cadence.schemas.usage import UsageLevel

logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "usage"})

# Limits for metrics a plan does not define
DEFAULT_METRIC_LIMITS: Dict[str, float] = {
    "api_calls": 10000,
    "whatsapp_messages": 1000,
    "storage_mb": 5000,
    "team_members": 10,
    "customers": 100,
    "invoices": 50,
}
FALLBACK_LIMIT = 1000.0

OverLimitHook = Callable[[schemas.UsageStatus], Union[None, Awaitable[None]]]


def resolve_limit(usage_limits: Optional[Dict[str, Any]], metric_name: str) -> float:
    """Limit of a metric: the plan's value, else the default for the metric."""
    if usage_limits and usage_limits.get(metric_name) is not None:
        return float(usage_limits[metric_name])
    return float(DEFAULT_METRIC_LIMITS.get(metric_name, FALLBACK_LIMIT))


def evaluate_usage(usage: float, limit: float, near_limit_percent: float) -> dict:
    """Percentage, remaining allowance and level of a usage figure.

    A zero limit allows nothing: any usage is over it.
    """
    percentage = usage / limit * 100 if limit > 0 else 0.0
    is_over = usage >= limit if limit > 0 else usage > 0
    is_near = percentage >= near_limit_percent
    if is_over:
        level = UsageLevel.EXCEEDED
    elif is_near:
        level = UsageLevel.WARNING
    else:
        level = UsageLevel.OK
    return {
        "usage": usage,
        "limit": limit,
        "remaining": max(0.0, limit - usage),
        "percentage": round(percentage, 2),
        "is_near_limit": is_near,
        "is_over_limit": is_over,
        "status": level,
    }


class UsageTracker:
    """Records usage and reports it against the subscription plan's limits."""

    def __init__(
        self,
        cache: Optional[KeyedCache] = None,
        clock: Optional[Clock] = None,
        *,
        near_limit_percent: Optional[float] = None,
        on_over_limit: Optional[OverLimitHook] = None,
    ):
        """Initialize the tracker.

        Args:
            cache: Cache for period aggregates; an in-memory one when omitted.
            clock: Time source for event timestamps and period windows.
            near_limit_percent: Percentage at which usage is flagged as near the limit.
            on_over_limit: Called (sync or async) with the status whenever a
                write leaves a metric at or over its limit.
        """
        self.clock = clock or system_clock
        self.cache = cache if cache is not None else MemoryCache(clock=self.clock)
        self.near_limit_percent = (
            near_limit_percent
            if near_limit_percent is not None
            else settings.USAGE_NEAR_LIMIT_PERCENT
        )
        self.on_over_limit = on_over_limit

    @staticmethod
    def _cache_prefix(subscription_id: UUID) -> str:
        return f"{subscription_id}:"

    def _cache_key(self, subscription_id: UUID, metric_name: str, window_start: datetime) -> str:
        return f"{self._cache_prefix(subscription_id)}{metric_name}:{window_start.isoformat()}"

    def _window(self, sub: schemas.SubscriptionWithPlan) -> tuple[datetime, datetime]:
        """Usage window: the trial while trialing, otherwise the current period."""
        if sub.trial_ends_at is not None and self.clock.now() < sub.trial_ends_at:
            return sub.start_date, sub.trial_ends_at
        return sub.current_period_start, sub.current_period_end

    async def _load(self, db: AsyncSession, subscription_id: UUID) -> schemas.SubscriptionWithPlan:
        db_sub = await crud.subscription.get(db, subscription_id)
        if not db_sub:
            raise SubscriptionNotFoundException(f"Subscription {subscription_id} not found")
        return schemas.SubscriptionWithPlan.model_validate(db_sub)

    async def record_usage(
        self,
        db: AsyncSession,
        subscription_id: UUID,
        metric_name: str,
        quantity: Union[Decimal, float, int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> schemas.UsageStatus:
        """Append a usage event and return the metric's usage afterwards.

        Raises:
            SubscriptionNotFoundException: If the subscription does not exist.
            pydantic.ValidationError: If the quantity is negative or the metric name empty.
        """
        sub = await self._load(db, subscription_id)
        record_in = schemas.UsageRecordCreate(
            subscription_id=sub.id,
            user_id=sub.user_id,
            metric_name=metric_name,
            quantity=Decimal(str(quantity)),
            timestamp=self.clock.now(),
            usage_metadata=metadata,
        )
        await crud.usage_record.create(db, obj_in=record_in)
        await self.cache.invalidate_prefix(self._cache_prefix(sub.id))

        status = await self._usage_for(db, sub, metric_name)
        log = logger.with_context(subscription_id=str(sub.id), metric=metric_name)
        if status.is_over_limit:
            log.warning(f"Usage limit exceeded: {status.usage}/{status.limit}")
            await self._notify_over_limit(status)
        elif status.is_near_limit:
            log.warning(f"Usage near limit: {status.usage}/{status.limit} ({status.percentage}%)")
        return status

    async def get_usage(
        self, db: AsyncSession, subscription_id: UUID, metric_name: str
    ) -> schemas.UsageStatus:
        """Usage of a metric over the current period.

        Raises:
            SubscriptionNotFoundException: If the subscription does not exist.
        """
        sub = await self._load(db, subscription_id)
        return await self._usage_for(db, sub, metric_name)

    async def _usage_for(
        self, db: AsyncSession, sub: schemas.SubscriptionWithPlan, metric_name: str
    ) -> schemas.UsageStatus:
        window_start, window_end = self._window(sub)
        key = self._cache_key(sub.id, metric_name, window_start)

        cached = await self.cache.get(key)
        if cached is not None:
            usage = float(cached)
        else:
            total = await crud.usage_record.sum_quantity(
                db,
                subscription_id=sub.id,
                metric_name=metric_name,
                start=window_start,
                end=window_end,
            )
            usage = float(total)
            await self.cache.set(key, usage)

        limit = resolve_limit(sub.plan.usage_limits, metric_name)
        return schemas.UsageStatus(
            subscription_id=sub.id,
            metric_name=metric_name,
            current_period_start=window_start,
            current_period_end=window_end,
            **evaluate_usage(usage, limit, self.near_limit_percent),
        )

    async def _notify_over_limit(self, status: schemas.UsageStatus) -> None:
        if self.on_over_limit is None:
            return
        result = self.on_over_limit(status)
        if inspect.isawaitable(result):
            await result

    async def clear_cache(self, subscription_id: UUID) -> int:
        """Drop cached aggregates of one subscription."""
        return await self.cache.invalidate_prefix(self._cache_prefix(subscription_id))

    async def clear_all(self) -> None:
        """Drop every cached aggregate."""
        await self.cache.clear()
