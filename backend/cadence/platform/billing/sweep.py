"""Billing sweep.

Finds subscriptions whose trial or period has ended and hands each to the
state machine: deferred cancellations are applied, trials converted and
periods renewed. Running it twice for the same time bills nothing twice.
"""

from datetime import datetime
from typing import Optional

from cadence import crud
from cadence.core.clock import Clock, system_clock
from cadence.core.config import settings
from cadence.core.logging import LoggerConfigurator
from cadence.db.session import SessionFactory, get_db_context
from cadence.platform.billing.batch import BatchReport, run_batch
from cadence.platform.billing.state_machine import SubscriptionStateMachine

logger = LoggerConfigurator.configure_logger(__name__, dimensions={"component": "billing_sweep"})


class BillingSweep:
    """Time-driven renewal of due subscriptions."""

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        session_factory: Optional[SessionFactory] = None,
        clock: Optional[Clock] = None,
        *,
        concurrency: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        """Initialize the sweep.

        Args:
            state_machine: Applies the transition chosen for each subscription.
            session_factory: Source of per-item sessions; the process-wide one when omitted.
            clock: Time the sweep considers "now" when no time is passed to `run`.
            concurrency: Subscriptions processed at once.
            batch_size: Cap on subscriptions selected per run; unbounded when omitted.
        """
        self.state_machine = state_machine
        self.session_factory = session_factory
        self.clock = clock or system_clock
        self.concurrency = concurrency or settings.BILLING_SWEEP_CONCURRENCY
        self.batch_size = batch_size

    async def run(self, now: Optional[datetime] = None) -> BatchReport:
        """Process every subscription due at `now`.

        Returns:
            BatchReport counting renewed, converted, past_due, cancelled,
            skipped and errored subscriptions.
        """
        now = now or self.clock.now()
        report = BatchReport(name="billing_sweep", started_at=now)
        log = logger.with_context(sweep_time=now.isoformat())

        async with get_db_context(self.session_factory) as db:
            cancelling = await crud.subscription.get_due_for_cancellation(
                db, now=now, limit=self.batch_size
            )
            due = await crud.subscription.get_due_for_billing(db, now=now, limit=self.batch_size)
            # A flagged trial shows up in both selections
            ids = list(dict.fromkeys([s.id for s in cancelling] + [s.id for s in due]))

        if not ids:
            log.debug("No subscriptions due")
        else:
            log.info(f"Processing {len(ids)} due subscriptions")

        async def _process(db, subscription_id):
            action = await self.state_machine.process_due(db, subscription_id, now)
            return action.value

        await run_batch(
            report,
            ids,
            _process,
            session_factory=self.session_factory,
            concurrency=self.concurrency,
            log=log,
            item_label="subscription_id",
        )
        report.finished_at = self.clock.now()
        log.info(report.summary())
        return report
