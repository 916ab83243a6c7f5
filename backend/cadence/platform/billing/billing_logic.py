"""Pure business rules for subscription billing.

Period arithmetic, dunning backoff and the per-period billing key live here,
separated from database and processor concerns.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from cadence.core.datetime_utils import add_months
from cadence.schemas.billing_record import BillingKind
from cadence.schemas.pricing_plan import BillingCycle
from cadence.schemas.subscription import SubscriptionStatus


def calculate_period_end(start: datetime, billing_cycle: BillingCycle) -> datetime:
    """End of a billing period starting at `start`."""
    cycle = BillingCycle(billing_cycle)
    if cycle == BillingCycle.MONTHLY:
        return add_months(start, 1)
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    raise ValueError(f"Unsupported billing cycle: {billing_cycle}")


def retry_delay(retry_count: int, initial_hours: int = 2) -> timedelta:
    """Delay before the next payment attempt, doubling per retry.

    With the default of 2 hours: 2h, 4h, 8h for retry counts 0, 1, 2.

    The ledger schedules the first retry with count 0. Dunning passes the count
    after each failed retry, so retries land 2h, 6h and 14h after the first
    failure and suspension follows the third. Keying on the count before the
    failed retry would shorten the later gaps to 2h and 4h.
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    return timedelta(hours=initial_hours * 2**retry_count)


def billing_key(subscription_id: UUID, period_start: datetime) -> str:
    """Unique key of the charge paying for the period starting at `period_start`."""
    return f"{subscription_id}:{period_start.isoformat()}"


@dataclass(frozen=True)
class InitialTerms:
    """Status and dates of a new subscription."""

    status: SubscriptionStatus
    trial_ends_at: Optional[datetime]
    current_period_start: datetime
    current_period_end: datetime


def initial_terms(
    now: datetime, billing_cycle: BillingCycle, trial_days: int
) -> InitialTerms:
    """Compute the first period; it starts when the trial ends (or now)."""
    if trial_days < 0:
        raise ValueError("trial_days cannot be negative")

    trial_ends_at = now + timedelta(days=trial_days) if trial_days > 0 else None
    period_start = trial_ends_at or now
    return InitialTerms(
        status=SubscriptionStatus.TRIALING if trial_ends_at else SubscriptionStatus.ACTIVE,
        trial_ends_at=trial_ends_at,
        current_period_start=period_start,
        current_period_end=calculate_period_end(period_start, billing_cycle),
    )


@dataclass(frozen=True)
class PeriodCharge:
    """The period a sweep charge pays for."""

    kind: BillingKind
    period_start: datetime
    period_end: datetime


def next_period_charge(
    status: SubscriptionStatus,
    current_period_start: datetime,
    current_period_end: datetime,
    billing_cycle: BillingCycle,
) -> PeriodCharge:
    """Which period the sweep bills for a due subscription.

    A trial converts into the period already computed from the trial end; an
    active subscription renews into the period following the current one.
    """
    if SubscriptionStatus(status) == SubscriptionStatus.TRIALING:
        return PeriodCharge(
            kind=BillingKind.TRIAL_CONVERSION,
            period_start=current_period_start,
            period_end=current_period_end,
        )
    return PeriodCharge(
        kind=BillingKind.RENEWAL,
        period_start=current_period_end,
        period_end=calculate_period_end(current_period_end, billing_cycle),
    )


def is_retry_exhausted(retry_count: int, max_retries: int) -> bool:
    """Whether a record has used all of its dunning retries."""
    return retry_count >= max_retries
