"""Billing record model: one row per billing attempt, kept forever as the audit trail."""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Optional
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import CheckConstraint, Index

from cadence.models._base import Base

if TYPE_CHECKING:
    from cadence.models.subscription import Subscription


class BillingRecord(Base):
    """A single charge against a subscription."""

    __tablename__ = "billing_record"

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscription.id", ondelete="RESTRICT"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    billed_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    # Dunning state
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    # Period this charge pays for; null for one-off charges such as prorations
    period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )
    period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    # "{subscription_id}:{period_start}" for period charges; at most one row per period
    billing_key: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, unique=True)

    payment_method_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    subscription: Mapped["Subscription"] = relationship(
        "Subscription", back_populates="billing_records", lazy="noload"
    )

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="check_retry_count_non_negative"),
        CheckConstraint("amount >= 0", name="check_amount_non_negative"),
        Index("ix_billing_record_subscription", "subscription_id"),
        Index("ix_billing_record_dunning", "status", "retry_count", "next_retry_at"),
    )
