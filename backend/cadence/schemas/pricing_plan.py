"""Pricing plan schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class BillingCycle(str, Enum):
    """Recurrence unit of a plan."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class PricingPlanBase(BaseModel):
    """Pricing plan base schema."""

    name: str = Field(..., description="Display name of the plan")
    price: Decimal = Field(..., ge=0, description="Price charged per billing cycle")
    billing_cycle: BillingCycle = Field(..., description="Billing cycle")
    trial_days: int = Field(0, ge=0, description="Default trial length in days")
    is_active: bool = Field(True, description="Whether new subscriptions may use the plan")
    usage_limits: Optional[Dict[str, float]] = Field(
        None, description="Per-metric usage limits for one billing period"
    )


class PricingPlanCreate(PricingPlanBase):
    """Pricing plan creation schema."""

    pass


class PricingPlanUpdate(BaseModel):
    """Pricing plan update schema."""

    name: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    trial_days: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    usage_limits: Optional[Dict[str, float]] = None


class PricingPlan(PricingPlanBase):
    """Pricing plan as stored."""

    model_config = {"from_attributes": True}

    id: UUID
    created_at: datetime
    modified_at: datetime
