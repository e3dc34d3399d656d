"""Helpers for enforcing plan capability checks on API and service layers."""
from __future__ import annotations

from typing import Union

from ..plans.models import SubscriptionPlan
from .exceptions import FeatureGateError, UsageLimitExceededError
from .features import PlanCapability, capability_enabled
from .meter import UsageEvaluation


def has_capability(plan: SubscriptionPlan, capability: Union[str, PlanCapability]) -> bool:
    """Return whether ``plan`` grants the boolean ``capability``."""

    return capability_enabled(plan, PlanCapability.parse(capability))


def require_capability(
    plan: SubscriptionPlan,
    capability: Union[str, PlanCapability],
    *,
    error_code: str = "plan_upgrade_required",
    message: str | None = None,
) -> None:
    """Ensure a boolean plan capability is enabled before proceeding.

    Parameters
    ----------
    plan:
        The subscription plan currently in effect for the caller.
    capability:
        The capability that must be granted, e.g. ``"apiAccess"``.
    error_code:
        Optional override for the surfaced error code when the capability is
        not granted. Defaults to ``"plan_upgrade_required"``.
    message:
        Optional human-friendly message explaining the failure. If omitted, a
        default message mentioning the capability and plan is used.
    """

    resolved = PlanCapability.parse(capability)
    if not capability_enabled(plan, resolved):
        failure_message = message or f"The {plan.name} does not include '{resolved.value}'."
        raise FeatureGateError(
            code=error_code,
            message=failure_message,
            detail={"missing_capability": resolved.value, "plan_id": plan.id},
        )


def assert_within_limit(evaluation: UsageEvaluation) -> UsageEvaluation:
    """Raise when an evaluated usage request does not fit the plan limit."""

    if not evaluation.allowed:
        raise UsageLimitExceededError(
            feature=evaluation.feature.value,
            limit=evaluation.limit,
            current=evaluation.current,
            requested=evaluation.requested,
        )
    return evaluation


__all__ = ["assert_within_limit", "has_capability", "require_capability"]
