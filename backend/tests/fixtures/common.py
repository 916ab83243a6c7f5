"""Common test fixtures."""

import asyncio
import uuid
from collections import deque
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

import pytest

from cadence import crud, schemas
from cadence.core.cache import MemoryCache
from cadence.core.clock import VirtualClock
from cadence.integrations.payment_processor import ChargeResult
from cadence.platform.billing.ledger import BillingLedger
from cadence.platform.billing.plan_catalog import PlanCatalog
from cadence.platform.billing.state_machine import SubscriptionStateMachine
from cadence.platform.billing.usage_tracker import UsageTracker
from cadence.schemas.pricing_plan import BillingCycle

START = datetime(2024, 1, 15, 12, 0, 0)


class FakePaymentProcessor:
    """In-memory processor with scripted outcomes.

    Like a real processor, a repeated idempotency key returns the settled
    charge without charging again; a key whose last attempt failed is tried
    afresh.
    """

    def __init__(self):
        self.outcomes: deque = deque()
        self.calls: List[dict] = []
        self.results_by_key: Dict[str, ChargeResult] = {}
        self.settled: List[str] = []
        self.delay: float = 0
        self.delay_after_settling: float = 0

    def script(self, *outcomes: Union[ChargeResult, Exception]) -> None:
        self.outcomes.extend(outcomes)

    def decline(self, reason: str = "Card declined", retryable: bool = True) -> None:
        self.script(ChargeResult.failed(reason, retryable=retryable))

    @property
    def charges(self) -> List[dict]:
        """Calls that reached the processor without a settled charge for their key."""
        return [c for c in self.calls if not c["replayed"]]

    async def charge(
        self,
        amount: Decimal,
        payment_method_ref: str,
        idempotency_key: str,
        *,
        customer_ref: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        replayed = idempotency_key in self.results_by_key
        self.calls.append(
            {
                "amount": amount,
                "payment_method_ref": payment_method_ref,
                "idempotency_key": idempotency_key,
                "customer_ref": customer_ref,
                "metadata": metadata,
                "replayed": replayed,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if replayed:
            return self.results_by_key[idempotency_key]

        outcome = self.outcomes.popleft() if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        result = outcome or ChargeResult.succeeded(f"pi_{len(self.calls)}")
        if result.success:
            self.results_by_key[idempotency_key] = result
            self.settled.append(idempotency_key)
            if self.delay_after_settling:
                # Money moved, but the caller never hears back in time
                await asyncio.sleep(self.delay_after_settling)
        return result


@pytest.fixture
def clock():
    """Virtual clock starting mid-January 2024."""
    return VirtualClock(START)


@pytest.fixture
def processor():
    """Fake payment processor that succeeds unless told otherwise."""
    return FakePaymentProcessor()


@pytest.fixture
def ledger(processor, clock):
    """Ledger over the fake processor."""
    return BillingLedger(processor, clock, payment_timeout=1.0, due_days=7, initial_retry_hours=2)


@pytest.fixture
def state_machine(ledger, clock):
    """State machine with default policy."""
    return SubscriptionStateMachine(ledger, PlanCatalog(), clock, proration_period_days=30)


@pytest.fixture
def usage_tracker(clock):
    """Usage tracker with an in-memory cache on the virtual clock."""
    return UsageTracker(MemoryCache(ttl_seconds=300, clock=clock), clock, near_limit_percent=80)


@pytest.fixture
def user_id():
    """A subscriber."""
    return uuid.uuid4()


async def _create_plan(db, **overrides) -> schemas.PricingPlan:
    values = {
        "name": "Basic",
        "price": Decimal("30.00"),
        "billing_cycle": BillingCycle.MONTHLY,
        "trial_days": 0,
        "is_active": True,
        "usage_limits": {"api_calls": 100},
    }
    values.update(overrides)
    db_plan = await crud.pricing_plan.create(db, obj_in=schemas.PricingPlanCreate(**values))
    return schemas.PricingPlan.model_validate(db_plan)


@pytest.fixture
async def basic_plan(db):
    """Monthly plan at 30.00 without trial."""
    return await _create_plan(db)


@pytest.fixture
async def premium_plan(db):
    """Monthly plan at 60.00."""
    return await _create_plan(db, name="Premium", price=Decimal("60.00"), usage_limits=None)


@pytest.fixture
async def trial_plan(db):
    """Monthly plan at 30.00 with a 14-day trial."""
    return await _create_plan(db, name="Trial", trial_days=14)


@pytest.fixture
async def retired_plan(db):
    """Plan no longer open to new subscriptions."""
    return await _create_plan(db, name="Legacy", is_active=False)


@pytest.fixture
async def payment_method(db, user_id):
    """Default card of the subscriber."""
    db_method = await crud.payment_method.create(
        db,
        obj_in=schemas.PaymentMethodCreate(
            user_id=user_id, processor_ref="pm_card", customer_ref="cus_1", is_default=True
        ),
    )
    return schemas.PaymentMethod.model_validate(db_method)
