"""Plan catalog: canonical plan definitions, feature limits and persistence."""

from .catalog import PLAN_CATALOG, build_plan_catalog, get_plan_definition
from .models import BillingInterval, Money, PlanFeatures, PlanId, SubscriptionPlan, SupportLevel
from .repository import (
    CatalogPlanRepository,
    PlanRepository,
    PostgresPlanRepository,
    find_by_price_id,
    list_active_plans,
    seed_default_plans,
)

__all__ = [
    "PLAN_CATALOG",
    "BillingInterval",
    "CatalogPlanRepository",
    "Money",
    "PlanFeatures",
    "PlanId",
    "PlanRepository",
    "PostgresPlanRepository",
    "SubscriptionPlan",
    "SupportLevel",
    "build_plan_catalog",
    "find_by_price_id",
    "get_plan_definition",
    "list_active_plans",
    "seed_default_plans",
]
