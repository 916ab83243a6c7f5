"""Pricing plan model."""

from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import CheckConstraint

from cadence.models._base import Base


class PricingPlan(Base):
    """A plan a user can subscribe to. Owned by the plan catalog; read-only to billing."""

    __tablename__ = "pricing_plan"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Per-metric limits, e.g. {"api_calls": 10000}
    usage_limits: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        CheckConstraint("price >= 0", name="check_plan_price_non_negative"),
        CheckConstraint("trial_days >= 0", name="check_plan_trial_days_non_negative"),
    )
