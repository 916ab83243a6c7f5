"""CRUD operations for PricingPlan model."""

from cadence.crud._base import CRUDBase
from cadence.models.pricing_plan import PricingPlan
from cadence.schemas.pricing_plan import PricingPlanCreate, PricingPlanUpdate


class CRUDPricingPlan(CRUDBase[PricingPlan, PricingPlanCreate, PricingPlanUpdate]):
    """CRUD operations for PricingPlan model."""

    pass


pricing_plan = CRUDPricingPlan(PricingPlan)
