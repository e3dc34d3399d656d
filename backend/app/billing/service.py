"""Core service coordinating subscription flows with the payment provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence, Tuple, Union

from ..feature_gates.features import MeteredFeature
from ..feature_gates.meter import UsageEvaluation, UsageMeter
from ..plans.models import SubscriptionPlan
from ..plans.repository import PlanRepository, list_active_plans
from .concurrency import DEFAULT_MAX_ATTEMPTS, expect_written, retry_on_conflict
from .exceptions import (
    CannotCancelFreePlanError,
    InvalidPlanConfigurationError,
    NoProviderCustomerError,
    NoSubscriptionError,
    PlanNotFoundError,
)
from .interfaces import PaymentProvider, SubscriptionRepository, UsageRepository
from .models import CheckoutSession, PortalSession, SubscriptionUsage, UserSubscription, WebhookResult, utcnow
from .provisioning import ensure_subscription, ensure_usage, normalize_user_id
from .state_machine import SubscriptionStateMachine
from .webhooks import WebhookNormalizer

logger = logging.getLogger("billing")


@dataclass
class SubscriptionService:
    """Entry point for subscription, checkout and usage operations.

    Reads provision lazily: a user without records gets a Free subscription
    and zeroed usage the first time an ``ensure``/``get`` call needs them.
    Checkout never mutates local state; the subscription changes when the
    provider's webhook arrives.
    """

    subscriptions: SubscriptionRepository
    usage: UsageRepository
    plans: PlanRepository
    provider: PaymentProvider
    normalizer: WebhookNormalizer
    max_write_attempts: int = DEFAULT_MAX_ATTEMPTS
    clock: Callable[[], datetime] = field(default=utcnow)
    state_machine: SubscriptionStateMachine = field(init=False)
    meter: UsageMeter = field(init=False)

    def __post_init__(self) -> None:
        self.state_machine = SubscriptionStateMachine(
            subscriptions=self.subscriptions,
            plans=self.plans,
            max_attempts=self.max_write_attempts,
            clock=self.clock,
        )
        self.meter = UsageMeter(
            subscriptions=self.subscriptions,
            usage=self.usage,
            plans=self.plans,
            max_attempts=self.max_write_attempts,
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Plans

    def list_plans(self) -> Sequence[SubscriptionPlan]:
        return list_active_plans(self.plans)

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        plan = self.plans.get((plan_id or "").strip().lower())
        if plan is None or not plan.is_active:
            raise PlanNotFoundError(f"Plan '{plan_id}' not found")
        return plan

    # ------------------------------------------------------------------
    # Subscriptions

    def ensure_subscription(self, user_id: str) -> Tuple[UserSubscription, bool]:
        user_id = normalize_user_id(user_id)
        return ensure_subscription(self.subscriptions, user_id, now=self.clock())

    def get_current_subscription(self, user_id: str) -> UserSubscription:
        subscription, _ = self.ensure_subscription(user_id)
        return subscription

    def get_current_plan(self, user_id: str) -> SubscriptionPlan:
        """Plan whose limits currently apply to the user."""

        return self.meter.active_plan(self.get_current_subscription(user_id))

    def create_checkout_session(
        self,
        user_id: str,
        plan_id: str,
        *,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        user_id = normalize_user_id(user_id)
        plan = self.get_plan(plan_id)
        if not plan.is_purchasable:
            raise InvalidPlanConfigurationError(f"Plan '{plan.id}' has no price configured for checkout")

        session = self.provider.create_checkout_session(
            user_id=user_id,
            plan_id=plan.id,
            price_id=plan.external_price_id or "",
            success_url=success_url,
            cancel_url=cancel_url,
        )
        logger.info("Created checkout session %s for user %s plan=%s", session.session_id, user_id, plan.id)
        return session

    def create_portal_session(self, user_id: str, *, return_url: str) -> PortalSession:
        user_id = normalize_user_id(user_id)
        subscription = self.subscriptions.get_by_user_id(user_id)
        if subscription is None or not subscription.external_customer_id:
            raise NoProviderCustomerError("No payment provider customer found for this user")
        return self.provider.create_portal_session(
            customer_id=subscription.external_customer_id,
            return_url=return_url,
        )

    def cancel_subscription(self, user_id: str) -> UserSubscription:
        """Cancel remotely first, then locally; the local record never runs ahead of the provider."""

        user_id = normalize_user_id(user_id)
        subscription = self.subscriptions.get_by_user_id(user_id)
        if subscription is None:
            raise NoSubscriptionError("No subscription found")
        if subscription.is_free:
            raise CannotCancelFreePlanError("Cannot cancel free plan")
        if subscription.is_cancelled:
            return subscription

        if subscription.external_subscription_id:
            self.provider.cancel_subscription(subscription.external_subscription_id)
        else:
            logger.warning("Subscription %s has no provider id; cancelling locally only", subscription.id)

        def _cancel() -> UserSubscription:
            current = self.subscriptions.get_by_user_id(user_id)
            if current is None:
                raise NoSubscriptionError("No subscription found")
            if current.is_cancelled:
                return current
            cancelled = current.cancel(now=self.clock())
            return expect_written(self.subscriptions.update(cancelled, expected_version=current.version))

        stored = retry_on_conflict(
            _cancel,
            description=f"cancellation for user {user_id}",
            attempts=self.max_write_attempts,
        )
        logger.info("Cancelled subscription %s for user %s", stored.id, user_id)
        return stored

    def activate_subscription(self, user_id: str) -> UserSubscription:
        user_id = normalize_user_id(user_id)

        def _activate() -> UserSubscription:
            current = self.subscriptions.get_by_user_id(user_id)
            if current is None:
                raise NoSubscriptionError("No subscription found")
            activated = current.activate(now=self.clock())
            if activated is current:
                return current
            return expect_written(self.subscriptions.update(activated, expected_version=current.version))

        stored = retry_on_conflict(
            _activate,
            description=f"activation for user {user_id}",
            attempts=self.max_write_attempts,
        )
        logger.info("Activated subscription %s for user %s", stored.id, user_id)
        return stored

    def refresh_from_provider(self, user_id: str) -> UserSubscription:
        """Re-synchronise the user's subscription with the provider's current state."""

        user_id = normalize_user_id(user_id)
        subscription = self.subscriptions.get_by_user_id(user_id)
        if subscription is None or not subscription.external_subscription_id:
            raise NoSubscriptionError("No provider subscription linked to this user")
        snapshot = self.provider.fetch_subscription(subscription.external_subscription_id)
        return self.state_machine.reconcile(user_id, snapshot)

    # ------------------------------------------------------------------
    # Usage

    def ensure_usage(self, user_id: str) -> Tuple[SubscriptionUsage, bool]:
        user_id = normalize_user_id(user_id)
        now = self.clock()
        ensure_subscription(self.subscriptions, user_id, now=now)
        return ensure_usage(self.usage, user_id, now=now)

    def get_usage(self, user_id: str) -> SubscriptionUsage:
        usage, _ = self.ensure_usage(user_id)
        return usage

    def track_usage(
        self,
        user_id: str,
        feature: Union[str, MeteredFeature],
        amount: int = 1,
    ) -> SubscriptionUsage:
        return self.meter.track_usage(normalize_user_id(user_id), feature, amount)

    def evaluate_feature(self, user_id: str, feature: Union[str, MeteredFeature]) -> UsageEvaluation:
        return self.meter.evaluate(normalize_user_id(user_id), feature)

    def can_use_feature(self, user_id: str, feature: Union[str, MeteredFeature]) -> bool:
        return self.evaluate_feature(user_id, feature).allowed

    # ------------------------------------------------------------------
    # Webhooks

    def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        """Authenticate, normalise and apply one provider delivery.

        Raises ``WebhookSignatureError``/``WebhookPayloadError`` for rejected
        deliveries; infrastructure failures propagate unchanged.
        """

        event = self.normalizer.handle_inbound(raw_body, signature_header)
        result = self.state_machine.apply(event)
        if result.success:
            logger.info("Webhook %s (%s) %s", event.id, event.type, result.outcome.value)
        else:
            logger.warning("Webhook %s (%s) rejected: %s", event.id, event.type, result.error)
        return result


__all__ = ["SubscriptionService"]
