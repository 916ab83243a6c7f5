"""CRUD operations for the application."""

from .crud_billing_record import billing_record
from .crud_payment_method import payment_method
from .crud_pricing_plan import pricing_plan
from .crud_subscription import subscription
from .crud_usage_record import usage_record

__all__ = [
    "billing_record",
    "payment_method",
    "pricing_plan",
    "subscription",
    "usage_record",
]
