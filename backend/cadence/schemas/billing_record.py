"""Billing record schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class BillingRecordStatus(str, Enum):
    """Status of a billing attempt."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class BillingKind(str, Enum):
    """Why a billing record was created."""

    INITIAL = "initial"  # First period of a subscription without trial
    TRIAL_CONVERSION = "trial_conversion"  # First paid period after trial
    RENEWAL = "renewal"  # Period roll-over
    PRORATION = "proration"  # Mid-period plan change
    USAGE = "usage"  # Usage-based add-on


PERIOD_KINDS = frozenset({BillingKind.INITIAL, BillingKind.TRIAL_CONVERSION, BillingKind.RENEWAL})


class BillingRecordCreate(BaseModel):
    """Schema for creating a billing record."""

    subscription_id: UUID
    kind: BillingKind
    amount: Decimal = Field(..., ge=0)
    billed_date: datetime
    due_date: datetime
    status: BillingRecordStatus = BillingRecordStatus.PENDING
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    billing_key: Optional[str] = None
    payment_method_ref: Optional[str] = None
    note: Optional[str] = None


class BillingRecordUpdate(BaseModel):
    """Schema for updating a billing record."""

    status: Optional[BillingRecordStatus] = None
    retry_count: Optional[int] = Field(None, ge=0)
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    paid_date: Optional[datetime] = None
    payment_method_ref: Optional[str] = None
    external_id: Optional[str] = None


class BillingRecord(BaseModel):
    """Billing record as stored."""

    model_config = {"from_attributes": True}

    id: UUID
    subscription_id: UUID
    kind: BillingKind
    amount: Decimal
    billed_date: datetime
    due_date: datetime
    status: BillingRecordStatus
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    paid_date: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    billing_key: Optional[str] = None
    payment_method_ref: Optional[str] = None
    external_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime
    modified_at: datetime

    @property
    def covers_period(self) -> bool:
        """Whether this charge pays for a subscription period."""
        return self.kind in PERIOD_KINDS and self.period_start is not None
