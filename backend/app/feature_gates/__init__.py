"""Feature gating: usage metering against plan limits and capability checks."""
from .enforcement import assert_within_limit, has_capability, require_capability
from .exceptions import FeatureGateError, UsageLimitExceededError
from .features import FEATURE_LIMITS, MeteredFeature, PlanCapability, is_unlimited, limit_for, usage_for
from .meter import UsageEvaluation, UsageMeter, evaluate_usage

__all__ = [
    "FEATURE_LIMITS",
    "FeatureGateError",
    "MeteredFeature",
    "PlanCapability",
    "UsageEvaluation",
    "UsageLimitExceededError",
    "UsageMeter",
    "assert_within_limit",
    "evaluate_usage",
    "has_capability",
    "is_unlimited",
    "limit_for",
    "require_capability",
    "usage_for",
]
