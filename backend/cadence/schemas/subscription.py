"""Subscription schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from cadence.schemas.pricing_plan import PricingPlan


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"  # Dunning exhausted; needs a new payment method
    CANCELLED = "cancelled"  # Terminal; needs a new subscription


# At most one subscription per user may hold one of these statuses
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

NON_TERMINAL_STATUSES = frozenset(
    {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.SUSPENDED,
    }
)

PLAN_CHANGE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


class SubscriptionCreate(BaseModel):
    """Request to start a subscription."""

    user_id: UUID = Field(..., description="Subscribing user")
    plan_id: UUID = Field(..., description="Plan to subscribe to")
    payment_method_ref: Optional[str] = Field(
        None, description="Processor reference of the instrument to charge immediately"
    )
    trial_days: Optional[int] = Field(
        None, ge=0, description="Overrides the plan's trial length when set"
    )


class SubscriptionUpdate(BaseModel):
    """Request to change a subscription."""

    plan_id: Optional[UUID] = None
    cancel_at_period_end: Optional[bool] = None


class SubscriptionInDBBase(BaseModel):
    """Subscription as stored."""

    model_config = {"from_attributes": True}

    id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    start_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    version: int
    created_at: datetime
    modified_at: datetime

    @model_validator(mode="after")
    def check_period_bounds(self) -> "SubscriptionInDBBase":
        """Period end must be after period start."""
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        return self


class Subscription(SubscriptionInDBBase):
    """Subscription representation."""

    pass


class SubscriptionWithPlan(Subscription):
    """Subscription with its pricing plan."""

    plan: PricingPlan

    @property
    def is_live(self) -> bool:
        """Whether the subscription currently grants access (ACTIVE or TRIALING)."""
        return self.status in LIVE_STATUSES

    @property
    def needs_payment_update(self) -> bool:
        """Suspended subscriptions are recovered by a new payment method, not a new plan."""
        return self.status in {SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED}
