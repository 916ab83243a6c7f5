"""Clocks for time-driven billing.

Everything that decides "is this due?" asks a Clock instead of the wall clock,
so sweeps and dunning runs can be driven by a VirtualClock in tests.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

from cadence.core.datetime_utils import ensure_naive_utc, utc_now_naive


class Clock(Protocol):
    """Source of the current time as naive UTC."""

    def now(self) -> datetime:
        """Return the current naive UTC datetime."""
        ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        """Return the current naive UTC datetime."""
        return utc_now_naive()


class VirtualClock:
    """Manually advanced clock.

    Example:
    -------
        clock = VirtualClock(datetime(2024, 1, 1))
        clock.advance(hours=6)
    """

    def __init__(self, start: Optional[datetime] = None):
        """Initialize the clock at `start` (defaults to the current time)."""
        self._now = ensure_naive_utc(start) if start else utc_now_naive()

    def now(self) -> datetime:
        """Return the frozen current time."""
        return self._now

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """Move the clock forward by `delta` or by timedelta keyword arguments."""
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError("VirtualClock cannot move backwards")
        self._now = self._now + step
        return self._now

    def set(self, when: datetime) -> None:
        """Jump to an absolute time."""
        self._now = ensure_naive_utc(when)


system_clock = SystemClock()
