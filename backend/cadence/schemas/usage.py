"""Usage metering schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UsageLevel(str, Enum):
    """Usage relative to the limit."""

    OK = "OK"
    WARNING = "WARNING"
    EXCEEDED = "EXCEEDED"


class UsageRecordCreate(BaseModel):
    """Schema for appending a usage event."""

    subscription_id: UUID
    user_id: UUID
    metric_name: str = Field(..., min_length=1, max_length=100)
    quantity: Decimal = Field(..., ge=0)
    timestamp: datetime
    usage_metadata: Optional[Dict[str, Any]] = None


class UsageRecord(UsageRecordCreate):
    """Usage event as stored."""

    model_config = {"from_attributes": True}

    id: UUID
    created_at: datetime


class UsageStatus(BaseModel):
    """Aggregated usage of one metric over the current billing period."""

    subscription_id: UUID
    metric_name: str
    usage: float = Field(..., description="Sum of quantities recorded this period")
    limit: float = Field(..., description="Limit for this period")
    remaining: float
    percentage: float = Field(..., description="usage / limit * 100; 0 when limit is 0")
    is_near_limit: bool
    is_over_limit: bool
    status: UsageLevel
    current_period_start: datetime
    current_period_end: datetime
