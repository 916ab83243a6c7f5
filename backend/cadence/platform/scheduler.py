"""Scheduler for billing runs.

Each run is driven by a Ticker: a cron schedule checked against an injected
clock. In production a background loop polls the tickers; tests call `tick()`
directly after moving a VirtualClock.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional

from croniter import croniter

from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.logging import LoggerConfigurator

logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "scheduler"})

Job = Callable[[datetime], Awaitable[Any]]


class Ticker:
    """Fires a job whenever its cron schedule comes due on the clock.

    Missed slots are coalesced: if the clock jumps past several slots the job
    runs once and the next slot is computed from the current time.
    """

    def __init__(self, name: str, schedule: str, job: Job, clock: Optional[Clock] = None):
        """Initialize the ticker.

        Args:
            name: Label used in logs.
            schedule: Cron expression.
            job: Coroutine function called with the time it fires at.
            clock: Time source.
        """
        if not croniter.is_valid(schedule):
            raise ValueError(f"Invalid cron schedule for {name}: {schedule}")
        self.name = name
        self.schedule = schedule
        self.job = job
        self.clock = clock or system_clock
        self.next_run: datetime = self._next_after(self.clock.now())
        self.last_run: Optional[datetime] = None
        self.last_result: Any = None
        self._lock = asyncio.Lock()

    def _next_after(self, moment: datetime) -> datetime:
        return croniter(self.schedule, moment).get_next(datetime)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return (now or self.clock.now()) >= self.next_run

    async def tick(self) -> bool:
        """Run the job if it is due; returns whether it ran.

        A failing job is logged and the ticker moves on to the next slot.
        """
        async with self._lock:
            now = self.clock.now()
            if now < self.next_run:
                return False

            logger.debug(f"{self.name} due at {self.next_run.isoformat()}, running at {now.isoformat()}")
            try:
                self.last_result = await self.job(now)
            except Exception as e:
                logger.error(f"Error in scheduled job {self.name}: {e}", exc_info=True)
                self.last_result = None
            finally:
                self.last_run = now
                self.next_run = self._next_after(now)
            return True


class BillingScheduler:
    """Runs the billing sweep and the dunning controller on their schedules."""

    def __init__(
        self,
        tickers: List[Ticker],
        check_interval: Optional[float] = None,
    ):
        """Initialize the scheduler."""
        self.tickers = tickers
        self.check_interval = (
            check_interval if check_interval is not None else settings.SCHEDULER_CHECK_INTERVAL
        )
        self.running = False
        self.task: Optional[asyncio.Task] = None

    @classmethod
    def for_billing(
        cls,
        sweep_job: Job,
        dunning_job: Job,
        clock: Optional[Clock] = None,
        *,
        sweep_schedule: Optional[str] = None,
        dunning_schedule: Optional[str] = None,
        check_interval: Optional[float] = None,
    ) -> "BillingScheduler":
        """Scheduler with the sweep and dunning tickers on their configured schedules."""
        return cls(
            [
                Ticker(
                    "billing_sweep",
                    sweep_schedule or settings.BILLING_SWEEP_SCHEDULE,
                    sweep_job,
                    clock,
                ),
                Ticker(
                    "dunning",
                    dunning_schedule or settings.DUNNING_SCHEDULE,
                    dunning_job,
                    clock,
                ),
            ],
            check_interval=check_interval,
        )

    async def tick(self) -> List[str]:
        """Run every due ticker once, in order; returns the names that ran."""
        ran = []
        for ticker in self.tickers:
            if await ticker.tick():
                ran.append(ticker.name)
        return ran

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.running = True
        self.task = asyncio.create_task(self._scheduler_loop())
        for ticker in self.tickers:
            logger.info(f"Scheduled {ticker.name} ({ticker.schedule}), next run {ticker.next_run.isoformat()}")

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            logger.warning("Scheduler is not running")
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                logger.debug("Scheduler task cancelled successfully")
            self.task = None
        logger.info("Billing scheduler stopped")

    async def _scheduler_loop(self):
        """Poll the tickers until stopped."""
        while self.running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
            await asyncio.sleep(self.check_interval)
