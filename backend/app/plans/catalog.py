"""Static catalog definitions for the canonical subscription plans."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Optional

from .models import BillingInterval, Money, PlanFeatures, PlanId, SubscriptionPlan, SupportLevel

FREE_FEATURES = PlanFeatures(
    max_invoices=19,
    max_users=1,
    support_level=SupportLevel.COMMUNITY,
    custom_branding=False,
    api_access=False,
)

PRO_FEATURES = PlanFeatures(
    max_invoices=1000,
    max_users=10,
    support_level=SupportLevel.EMAIL,
    custom_branding=True,
    api_access=True,
)

# 0 is the unlimited sentinel.
ENTERPRISE_FEATURES = PlanFeatures(
    max_invoices=0,
    max_users=0,
    support_level=SupportLevel.PRIORITY,
    custom_branding=True,
    api_access=True,
)


def free_plan() -> SubscriptionPlan:
    return SubscriptionPlan(
        id=PlanId.FREE.value,
        name="Free Plan",
        description="Perfect for getting started with invoice management",
        price=Money.zero(),
        interval=BillingInterval.MONTH,
        features=FREE_FEATURES,
    )


def pro_plan(price_id: Optional[str] = None) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=PlanId.PRO.value,
        name="Pro Plan",
        description="Advanced features for growing businesses",
        price=Money(amount=Decimal("29"), currency="USD"),
        interval=BillingInterval.MONTH,
        features=PRO_FEATURES,
        external_price_id=price_id or None,
    )


def enterprise_plan(price_id: Optional[str] = None) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=PlanId.ENTERPRISE.value,
        name="Enterprise Plan",
        description="Unlimited features for large organizations",
        price=Money(amount=Decimal("99"), currency="USD"),
        interval=BillingInterval.MONTH,
        features=ENTERPRISE_FEATURES,
        external_price_id=price_id or None,
    )


def build_plan_catalog(
    *,
    pro_price_id: Optional[str] = None,
    enterprise_price_id: Optional[str] = None,
) -> Dict[str, SubscriptionPlan]:
    """Return the canonical plans keyed by plan id."""

    plans = (free_plan(), pro_plan(pro_price_id), enterprise_plan(enterprise_price_id))
    return {plan.id: plan for plan in plans}


PLAN_CATALOG: Dict[str, SubscriptionPlan] = build_plan_catalog()


def get_plan_definition(plan_id: str) -> SubscriptionPlan:
    """Return a canonical plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_id]
    except KeyError as exc:
        raise KeyError(f"Unknown plan id: {plan_id}") from exc
