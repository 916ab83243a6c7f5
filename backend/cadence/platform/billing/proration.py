"""Pure proration logic for mid-period plan changes.

The period length is a fixed 30 days regardless of the plan's billing cycle
or the real calendar month. This matches the amounts customers have always
been charged; switching to calendar-day proration changes dollar amounts and
needs sign-off before it is changed here.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from cadence.core.datetime_utils import ensure_naive_utc

DEFAULT_PERIOD_DAYS = 30
CENT = Decimal("0.01")


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a plan change calculation."""

    credit_amount: Decimal
    new_amount: Decimal
    days_remaining: int
    days_in_period: int

    @property
    def is_chargeable(self) -> bool:
        """Whether the change produces a positive amount to bill."""
        return self.new_amount > 0


def days_remaining(current_period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, rounded up and never negative."""
    delta = ensure_naive_utc(current_period_end) - ensure_naive_utc(now)
    return max(0, math.ceil(delta / timedelta(days=1)))


def calculate_proration(
    current_period_end: datetime,
    current_price: Decimal,
    new_price: Decimal,
    now: datetime,
    days_in_period: int = DEFAULT_PERIOD_DAYS,
) -> ProrationResult:
    """Credit the unused part of the current plan against the new plan's price.

    credit = current_price / days_in_period * days_remaining
    new_amount = max(0, new_price - credit)

    Example:
        15 days left, 30 -> 60: credit 15.00, new amount 45.00.
    """
    if days_in_period <= 0:
        raise ValueError("days_in_period must be positive")

    remaining = days_remaining(current_period_end, now)
    current = Decimal(str(current_price))
    new = Decimal(str(new_price))

    credit = (current / days_in_period * remaining).quantize(CENT, rounding=ROUND_HALF_UP)
    new_amount = max(Decimal("0"), new - credit).quantize(CENT, rounding=ROUND_HALF_UP)

    return ProrationResult(
        credit_amount=credit,
        new_amount=new_amount,
        days_remaining=remaining,
        days_in_period=days_in_period,
    )
