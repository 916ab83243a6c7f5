"""Schemas for the application."""

from .billing_record import (
    BillingKind,
    BillingRecord,
    BillingRecordCreate,
    BillingRecordStatus,
    BillingRecordUpdate,
)
from .payment_method import PaymentMethod, PaymentMethodCreate
from .pricing_plan import BillingCycle, PricingPlan, PricingPlanCreate, PricingPlanUpdate
from .subscription import (
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
    SubscriptionUpdate,
    SubscriptionWithPlan,
)
from .usage import UsageLevel, UsageRecord, UsageRecordCreate, UsageStatus
