"""Usage metering with admission control against plan limits."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from ..billing.concurrency import DEFAULT_MAX_ATTEMPTS, expect_written, retry_on_conflict
from ..billing.exceptions import InvalidUsageAmountError
from ..billing.interfaces import SubscriptionRepository, UsageRepository
from ..billing.models import SubscriptionUsage, UserSubscription, utcnow
from ..billing.provisioning import ensure_subscription, ensure_usage
from ..plans.catalog import free_plan
from ..plans.models import PlanId, SubscriptionPlan
from ..plans.repository import PlanRepository
from .exceptions import UsageLimitExceededError
from .features import FEATURE_LIMITS, MeteredFeature, is_unlimited, limit_for, usage_for

logger = logging.getLogger("billing.usage")


@dataclass(frozen=True)
class UsageEvaluation:
    """Represents the outcome of a usage limit check."""

    feature: MeteredFeature
    plan_id: str
    limit: int
    current: int
    requested: int
    allowed: bool

    @property
    def unlimited(self) -> bool:
        return is_unlimited(self.limit)

    @property
    def remaining(self) -> Optional[int]:
        if self.unlimited:
            return None
        return max(self.limit - self.current, 0)

    def to_dict(self) -> dict[str, object]:
        """Serialize the evaluation for logging or responses."""

        return {
            "feature": self.feature.value,
            "plan_id": self.plan_id,
            "limit": self.limit,
            "current": self.current,
            "requested": self.requested,
            "allowed": self.allowed,
            "unlimited": self.unlimited,
            "remaining": self.remaining,
        }


def evaluate_usage(
    *,
    plan: SubscriptionPlan,
    usage: SubscriptionUsage,
    feature: MeteredFeature,
    amount: int = 1,
) -> UsageEvaluation:
    """Determine whether ``amount`` more units of ``feature`` fit the plan."""

    limit = limit_for(plan, feature)
    current = usage_for(usage, feature)
    allowed = is_unlimited(limit) or current + amount <= limit
    return UsageEvaluation(
        feature=feature,
        plan_id=plan.id,
        limit=limit,
        current=current,
        requested=amount,
        allowed=allowed,
    )


@dataclass
class UsageMeter:
    """Track per-user feature consumption and gate it on the active plan.

    Increments are compare-and-swap writes on the usage row's ``version``; a
    lost race re-reads the counters and re-checks the limit before retrying,
    so concurrent callers can never jointly exceed a limit.
    """

    subscriptions: SubscriptionRepository
    usage: UsageRepository
    plans: PlanRepository
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    clock: Callable[[], datetime] = field(default=utcnow)

    def active_plan(self, subscription: Optional[UserSubscription]) -> SubscriptionPlan:
        """Plan whose limits apply; cancelled or missing subscriptions get Free limits."""

        if subscription is not None and not subscription.is_cancelled:
            plan = self.plans.get(subscription.plan_id)
            if plan is not None:
                return plan
            logger.warning(
                "Subscription %s references unknown plan %s; applying free limits",
                subscription.id,
                subscription.plan_id,
            )
        return self.plans.get(PlanId.FREE.value) or free_plan()

    def track_usage(
        self,
        user_id: str,
        feature: Union[str, MeteredFeature],
        amount: int = 1,
    ) -> SubscriptionUsage:
        """Increment ``feature`` by ``amount`` or raise :class:`UsageLimitExceededError`."""

        metered = MeteredFeature.parse(feature)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidUsageAmountError("Amount must be a positive integer")

        def _increment() -> SubscriptionUsage:
            now = self.clock()
            subscription, _ = ensure_subscription(self.subscriptions, user_id, now=now)
            usage, _ = ensure_usage(self.usage, user_id, now=now)
            evaluation = evaluate_usage(
                plan=self.active_plan(subscription),
                usage=usage,
                feature=metered,
                amount=amount,
            )
            if not evaluation.allowed:
                logger.warning(
                    "Usage limit reached for user %s: %s %s/%s (+%s)",
                    user_id,
                    metered.value,
                    evaluation.current,
                    evaluation.limit,
                    amount,
                )
                raise UsageLimitExceededError(
                    feature=metered.value,
                    limit=evaluation.limit,
                    current=evaluation.current,
                    requested=amount,
                )
            updated = usage.incremented(FEATURE_LIMITS[metered].usage_field, amount, now=now)
            return expect_written(self.usage.update(updated, expected_version=usage.version))

        stored = retry_on_conflict(
            _increment,
            description=f"{metered.value} usage for user {user_id}",
            attempts=self.max_attempts,
        )
        logger.info("Tracked %s %s usage for user %s", amount, metered.value, user_id)
        return stored

    def evaluate(
        self,
        user_id: str,
        feature: Union[str, MeteredFeature],
        amount: int = 1,
    ) -> UsageEvaluation:
        """Read-only limit check; absent records are treated as Free plan with zero usage."""

        metered = MeteredFeature.parse(feature)
        subscription = self.subscriptions.get_by_user_id(user_id)
        usage = self.usage.get(user_id) or SubscriptionUsage.create(user_id, now=self.clock())
        return evaluate_usage(
            plan=self.active_plan(subscription),
            usage=usage,
            feature=metered,
            amount=max(amount, 1),
        )

    def can_use_feature(self, user_id: str, feature: Union[str, MeteredFeature]) -> bool:
        return self.evaluate(user_id, feature).allowed


__all__ = ["UsageEvaluation", "UsageMeter", "evaluate_usage"]
