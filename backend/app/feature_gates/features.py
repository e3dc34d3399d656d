"""Metered features, boolean plan capabilities and their plan accessors."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

from ..billing.exceptions import UnknownFeatureError
from ..billing.models import SubscriptionUsage
from ..plans.models import SubscriptionPlan


class MeteredFeature(str, Enum):
    """Counted features limited per plan."""

    INVOICE = "invoice"
    USER = "user"

    @classmethod
    def parse(cls, value: Union[str, "MeteredFeature"]) -> "MeteredFeature":
        """Resolve an API feature name case-insensitively."""

        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower()
        try:
            return cls(key)
        except ValueError:
            raise UnknownFeatureError(f"Unknown feature '{value}'") from None


class PlanCapability(str, Enum):
    """Boolean plan features."""

    CUSTOM_BRANDING = "customBranding"
    API_ACCESS = "apiAccess"

    @classmethod
    def parse(cls, value: Union[str, "PlanCapability"]) -> "PlanCapability":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("_", "")
        for member in cls:
            if member.value.lower() == key:
                return member
        raise UnknownFeatureError(f"Unknown capability '{value}'")


@dataclass(frozen=True)
class FeatureLimit:
    """Where a metered feature's counter and limit live."""

    usage_field: str
    plan_field: str


FEATURE_LIMITS: Dict[MeteredFeature, FeatureLimit] = {
    MeteredFeature.INVOICE: FeatureLimit(usage_field="invoice_count", plan_field="max_invoices"),
    MeteredFeature.USER: FeatureLimit(usage_field="user_count", plan_field="max_users"),
}

CAPABILITY_FIELDS: Dict[PlanCapability, str] = {
    PlanCapability.CUSTOM_BRANDING: "custom_branding",
    PlanCapability.API_ACCESS: "api_access",
}


def limit_for(plan: SubscriptionPlan, feature: MeteredFeature) -> int:
    return int(getattr(plan.features, FEATURE_LIMITS[feature].plan_field))


def usage_for(usage: SubscriptionUsage, feature: MeteredFeature) -> int:
    return usage.count_for(FEATURE_LIMITS[feature].usage_field)


def is_unlimited(limit: int) -> bool:
    # 0 is the unlimited sentinel
    return limit <= 0


def capability_enabled(plan: SubscriptionPlan, capability: PlanCapability) -> bool:
    return bool(getattr(plan.features, CAPABILITY_FIELDS[capability]))


__all__ = [
    "CAPABILITY_FIELDS",
    "FEATURE_LIMITS",
    "FeatureLimit",
    "MeteredFeature",
    "PlanCapability",
    "capability_enabled",
    "is_unlimited",
    "limit_for",
    "usage_for",
]
