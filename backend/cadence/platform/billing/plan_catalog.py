"""Plan catalog.

Read access to pricing plans for the billing engine. Plans are administered
elsewhere; billing only reads them and refuses inactive ones for new
subscriptions and plan changes.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cadence import crud, schemas
from cadence.core.exceptions import PlanNotFoundException, SubscriptionValidationError


class PlanCatalog:
    """Looks up pricing plans."""

    async def get_plan(self, db: AsyncSession, plan_id: UUID) -> schemas.PricingPlan:
        """Get a plan by ID, active or not.

        Raises:
            PlanNotFoundException: If no plan has this ID.
        """
        db_plan = await crud.pricing_plan.get(db, plan_id)
        if not db_plan:
            raise PlanNotFoundException(f"Pricing plan {plan_id} not found")
        return schemas.PricingPlan.model_validate(db_plan)

    async def get_subscribable_plan(self, db: AsyncSession, plan_id: UUID) -> schemas.PricingPlan:
        """Get a plan a subscription may move onto.

        Raises:
            PlanNotFoundException: If no plan has this ID.
            SubscriptionValidationError: If the plan is no longer offered.
        """
        plan = await self.get_plan(db, plan_id)
        if not plan.is_active:
            raise SubscriptionValidationError(f"Pricing plan {plan_id} is not active")
        return plan

    async def create_plan(
        self, db: AsyncSession, plan_in: schemas.PricingPlanCreate
    ) -> schemas.PricingPlan:
        """Add a plan to the catalog."""
        db_plan = await crud.pricing_plan.create(db, obj_in=plan_in)
        return schemas.PricingPlan.model_validate(db_plan)

    async def list_plans(self, db: AsyncSession, *, active_only: bool = True) -> list[schemas.PricingPlan]:
        """List plans, by default only those open to new subscriptions."""
        plans = [schemas.PricingPlan.model_validate(p) for p in await crud.pricing_plan.get_all(db)]
        if active_only:
            plans = [p for p in plans if p.is_active]
        return plans


plan_catalog = PlanCatalog()
