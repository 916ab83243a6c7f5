"""Subscription model."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import CheckConstraint, Index

from cadence.models._base import Base

if TYPE_CHECKING:
    from cadence.models.billing_record import BillingRecord
    from cadence.models.pricing_plan import PricingPlan


class Subscription(Base):
    """A user's subscription to a pricing plan.

    Never hard-deleted; CANCELLED is terminal. `version` is bumped on every
    write so concurrent writers can detect each other.
    """

    __tablename__ = "subscription"

    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    plan_id: Mapped[UUID] = mapped_column(ForeignKey("pricing_plan.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    # Period boundaries (inclusive start, exclusive end)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=False), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    plan: Mapped["PricingPlan"] = relationship("PricingPlan", lazy="selectin")
    billing_records: Mapped[List["BillingRecord"]] = relationship(
        "BillingRecord", back_populates="subscription", lazy="noload"
    )

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start", name="check_period_end_after_start"
        ),
        Index("ix_subscription_user_status", "user_id", "status"),
        Index("ix_subscription_status_period_end", "status", "current_period_end"),
        Index("ix_subscription_status_trial_end", "status", "trial_ends_at"),
        # One ACTIVE or TRIALING subscription per user
        Index(
            "uq_subscription_user_live",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'trialing')"),
            sqlite_where=text("status IN ('active', 'trialing')"),
        ),
    )
