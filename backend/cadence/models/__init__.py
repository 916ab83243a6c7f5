"""Models for the application."""

from ._base import Base
from .billing_record import BillingRecord
from .payment_method import PaymentMethod
from .pricing_plan import PricingPlan
from .subscription import Subscription
from .usage_record import UsageRecord

__all__ = [
    "Base",
    "BillingRecord",
    "PaymentMethod",
    "PricingPlan",
    "Subscription",
    "UsageRecord",
]
