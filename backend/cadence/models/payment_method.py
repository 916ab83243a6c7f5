"""Payment method model: a reference to an instrument stored at the processor."""

from typing import Optional
from uuid import UUID

from sqlalchemy import Boolean, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import Index

from cadence.models._base import Base


class PaymentMethod(Base):
    """A user's saved payment instrument."""

    __tablename__ = "payment_method"

    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    processor_ref: Mapped[str] = mapped_column(String, nullable=False)
    customer_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_payment_method_user_default", "user_id", "is_default"),)
