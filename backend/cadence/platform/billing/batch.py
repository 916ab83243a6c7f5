"""Shared machinery for billing batch runs.

A run walks a list of IDs and handles each one in its own session. One item
failing never stops the batch: the error is logged and counted, and the item
is picked up again by the next run because its persisted state did not change.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cadence.core.exceptions import ConcurrencyConflictError
from cadence.core.logging import ContextualLogger
from cadence.db.session import SessionFactory, get_db_context

SKIPPED = "skipped"
ERRORS = "errors"

ItemHandler = Callable[[AsyncSession, UUID], Awaitable[str]]


@dataclass
class BatchReport:
    """Summary of one sweep or dunning run."""

    name: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    selected: int = 0
    outcomes: Counter = field(default_factory=Counter)
    failed_ids: list[UUID] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return self.outcomes[ERRORS]

    @property
    def skipped(self) -> int:
        return self.outcomes[SKIPPED]

    def count(self, outcome: str) -> int:
        """Number of items that ended with `outcome`."""
        return self.outcomes[outcome]

    def summary(self) -> str:
        parts = ", ".join(f"{k}={v}" for k, v in sorted(self.outcomes.items()))
        return f"{self.name}: {self.selected} selected ({parts or 'nothing to do'})"


async def run_batch(
    report: BatchReport,
    item_ids: Iterable[UUID],
    handler: ItemHandler,
    *,
    session_factory: Optional[SessionFactory],
    concurrency: int,
    log: ContextualLogger,
    item_label: str,
) -> BatchReport:
    """Run `handler` over every ID with at most `concurrency` items in flight.

    Each item gets its own session, so nothing is shared between items. The
    handler returns an outcome name that is tallied in the report.
    """
    ids = list(item_ids)
    report.selected = len(ids)
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _one(item_id: UUID) -> None:
        item_log = log.with_context(**{item_label: str(item_id)})
        async with semaphore:
            try:
                async with get_db_context(session_factory) as db:
                    outcome = await handler(db, item_id)
            except ConcurrencyConflictError as e:
                item_log.info(f"Skipped, changed concurrently: {e.message}")
                outcome = SKIPPED
            except Exception as e:
                item_log.error(f"Failed to process {item_label} {item_id}: {e}", exc_info=True)
                report.failed_ids.append(item_id)
                outcome = ERRORS
        report.outcomes[outcome] += 1

    await asyncio.gather(*(_one(item_id) for item_id in ids))
    return report
