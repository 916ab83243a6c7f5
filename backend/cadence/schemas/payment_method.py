"""Payment method schemas."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class PaymentMethodCreate(BaseModel):
    """Schema for saving a payment method reference."""

    user_id: UUID
    processor_ref: str
    customer_ref: Optional[str] = None
    is_default: bool = False
    is_active: bool = True


class PaymentMethod(PaymentMethodCreate):
    """Payment method as stored."""

    model_config = {"from_attributes": True}

    id: UUID
