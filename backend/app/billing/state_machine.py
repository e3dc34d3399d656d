"""Webhook-driven transitions of the user subscription aggregate."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..plans.models import SubscriptionPlan
from ..plans.repository import PlanRepository, find_by_price_id
from .concurrency import DEFAULT_MAX_ATTEMPTS, expect_written, retry_on_conflict
from .exceptions import PlanNotFoundError
from .interfaces import SubscriptionRepository
from .models import (
    ProviderSubscription,
    SubscriptionStatus,
    UserSubscription,
    WebhookResult,
    map_provider_status,
    utcnow,
)
from .webhooks import (
    InvoicePaymentFailedEvent,
    InvoicePaymentSucceededEvent,
    MalformedEvent,
    NormalizedEvent,
    SubscriptionCreatedEvent,
    SubscriptionDeletedEvent,
    SubscriptionUpdatedEvent,
    UnhandledEvent,
)

logger = logging.getLogger("billing")

SUBSCRIPTION_NOT_FOUND = "Subscription not found"

# Fields that do not describe billing state; a transition that only changes
# these is reported as a no-op.
_BOOKKEEPING_FIELDS = {"updated_at", "version"}


def _same_state(left: UserSubscription, right: UserSubscription) -> bool:
    return left.model_dump(exclude=_BOOKKEEPING_FIELDS) == right.model_dump(exclude=_BOOKKEEPING_FIELDS)


@dataclass
class SubscriptionStateMachine:
    """Apply normalised provider events to local subscription records.

    Every handler is a read-modify-write over a single row committed with a
    compare-and-swap on ``version``; a lost race re-reads and re-applies the
    event. Duplicate and out-of-order deliveries resolve to no-ops:

    * ``subscription.updated``/``subscription.deleted`` for an unknown
      subscription are acknowledged without creating anything.
    * events older than the newest applied event do not change status
      (``subscription.deleted`` excepted).
    * a cancelled record only becomes active again through
      ``invoice.payment_succeeded``.
    """

    subscriptions: SubscriptionRepository
    plans: PlanRepository
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    clock: Callable[[], datetime] = field(default=utcnow)

    def apply(self, event: NormalizedEvent) -> WebhookResult:
        logger.info("Processing webhook event %s (%s)", event.id, event.type)
        if isinstance(event, MalformedEvent):
            logger.warning("Rejecting malformed %s event %s: %s", event.type, event.id, event.error)
            return WebhookResult.failure(event.id, event.type, event.error)
        if isinstance(event, UnhandledEvent):
            logger.info("Received unhandled event type %s (%s)", event.type, event.id)
            return WebhookResult.noop(event.id, event.type)

        handlers = {
            SubscriptionCreatedEvent: self._subscription_created,
            SubscriptionUpdatedEvent: self._subscription_updated,
            SubscriptionDeletedEvent: self._subscription_deleted,
            InvoicePaymentSucceededEvent: self._payment_succeeded,
            InvoicePaymentFailedEvent: self._payment_failed,
        }
        handler = handlers[type(event)]
        try:
            return retry_on_conflict(
                lambda: handler(event),
                description=f"{event.type} event {event.id}",
                attempts=self.max_attempts,
            )
        except ValueError as exc:
            # Payload values that violate record invariants (e.g. inverted periods).
            logger.warning("Rejecting %s event %s: %s", event.type, event.id, exc)
            return WebhookResult.failure(event.id, event.type, f"Invalid event payload: {exc}")

    # ------------------------------------------------------------------
    # Handlers

    def _subscription_created(self, event: SubscriptionCreatedEvent) -> WebhookResult:
        plan = self.plans.get(event.plan_id)
        if plan is None:
            logger.warning("Unknown plan %s on subscription %s", event.plan_id, event.subscription_id)
            return WebhookResult.failure(event.id, event.type, f"Plan {event.plan_id} not found")

        existing = self.subscriptions.get_by_external_id(event.subscription_id)
        if existing is not None:
            logger.info("Subscription %s already exists, skipping creation", event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        now = self.clock()
        current = self.subscriptions.get_by_user_id(event.user_id)
        if current is None:
            created = self.subscriptions.add(
                UserSubscription.create_paid(
                    user_id=event.user_id,
                    plan_id=plan.id,
                    external_subscription_id=event.subscription_id,
                    external_customer_id=event.customer_id,
                    current_period_start=event.current_period_start,
                    current_period_end=event.current_period_end,
                    event_at=event.created,
                    now=now,
                ).evolve(trial_end=event.trial_end)
            )
            logger.info(
                "Created subscription %s on plan %s for user %s",
                event.subscription_id,
                plan.id,
                event.user_id,
            )
            return WebhookResult.applied(event.id, event.type, created.id)

        # One record per user: the free (or previously cancelled) record becomes the paid one.
        # Events seen so far belong to another external subscription, so the clock restarts here.
        converted = current.evolve(
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            external_subscription_id=event.subscription_id,
            external_customer_id=event.customer_id or current.external_customer_id,
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            cancelled_at=None,
            trial_end=event.trial_end,
            last_event_at=event.created,
            updated_at=now,
        )
        stored = expect_written(self.subscriptions.update(converted, expected_version=current.version))
        logger.info(
            "Linked subscription %s on plan %s to existing record for user %s",
            event.subscription_id,
            plan.id,
            event.user_id,
        )
        return WebhookResult.applied(event.id, event.type, stored.id)

    def _subscription_updated(self, event: SubscriptionUpdatedEvent) -> WebhookResult:
        existing = self.subscriptions.get_by_external_id(event.subscription_id)
        if existing is None:
            logger.info("Subscription %s not found for update; acknowledging", event.subscription_id)
            return WebhookResult.noop(event.id, event.type)
        if existing.is_stale(event.created):
            logger.info("Ignoring stale update %s for subscription %s", event.id, event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        now = self.clock()
        plan = self._resolve_plan(event.plan_id, event.price_id)
        target_status = map_provider_status(event.status)
        if existing.is_cancelled and target_status not in (None, SubscriptionStatus.CANCELLED):
            logger.info(
                "Subscription %s is cancelled; ignoring provider status %s",
                event.subscription_id,
                event.status,
            )
            target_status = None

        updated = existing.evolve(
            plan_id=plan.id if plan else existing.plan_id,
            external_customer_id=event.customer_id or existing.external_customer_id,
            current_period_start=event.current_period_start,
            current_period_end=event.current_period_end,
            trial_end=event.trial_end if event.trial_end is not None else existing.trial_end,
            last_event_at=existing.observe_event(event.created),
            updated_at=now,
        )
        if target_status is not None:
            updated = updated.with_status(target_status, now=now)

        if _same_state(existing, updated):
            logger.info("Subscription %s already reflects update %s", event.subscription_id, event.id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        stored = expect_written(self.subscriptions.update(updated, expected_version=existing.version))
        logger.info(
            "Updated subscription %s with status %s",
            event.subscription_id,
            stored.status.value,
        )
        return WebhookResult.applied(event.id, event.type, stored.id)

    def _subscription_deleted(self, event: SubscriptionDeletedEvent) -> WebhookResult:
        existing = self.subscriptions.get_by_external_id(event.subscription_id)
        if existing is None:
            logger.info("Subscription %s not found for deletion; treating as cancelled", event.subscription_id)
            return WebhookResult.noop(event.id, event.type)
        if existing.is_cancelled:
            logger.info("Subscription %s already cancelled", event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        now = self.clock()
        cancelled = existing.cancel(now=now).evolve(last_event_at=existing.observe_event(event.created))
        stored = expect_written(self.subscriptions.update(cancelled, expected_version=existing.version))
        logger.info("Cancelled subscription %s", event.subscription_id)
        return WebhookResult.applied(event.id, event.type, stored.id)

    def _payment_succeeded(self, event: InvoicePaymentSucceededEvent) -> WebhookResult:
        if not event.subscription_id:
            logger.info("Invoice %s has no subscription, skipping", event.invoice_id)
            return WebhookResult.noop(event.id, event.type)

        existing = self.subscriptions.get_by_external_id(event.subscription_id)
        if existing is None:
            logger.warning("Subscription %s not found for invoice payment", event.subscription_id)
            return WebhookResult.failure(event.id, event.type, SUBSCRIPTION_NOT_FOUND, retryable=True)
        if existing.is_stale(event.created):
            logger.info("Ignoring stale payment %s for subscription %s", event.id, event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        now = self.clock()
        activated = existing.activate(now=now).evolve(last_event_at=existing.observe_event(event.created))
        if _same_state(existing, activated):
            return WebhookResult.noop(event.id, event.type, existing.id)

        stored = expect_written(self.subscriptions.update(activated, expected_version=existing.version))
        logger.info("Activated subscription %s after successful payment", event.subscription_id)
        return WebhookResult.applied(event.id, event.type, stored.id)

    def _payment_failed(self, event: InvoicePaymentFailedEvent) -> WebhookResult:
        if not event.subscription_id:
            logger.info("Invoice %s has no subscription, skipping", event.invoice_id)
            return WebhookResult.noop(event.id, event.type)

        existing = self.subscriptions.get_by_external_id(event.subscription_id)
        if existing is None:
            logger.warning("Subscription %s not found for invoice payment failure", event.subscription_id)
            return WebhookResult.failure(event.id, event.type, SUBSCRIPTION_NOT_FOUND, retryable=True)
        if existing.is_cancelled:
            logger.info("Subscription %s is cancelled; ignoring payment failure", event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)
        if existing.is_stale(event.created):
            logger.info("Ignoring stale payment failure %s for subscription %s", event.id, event.subscription_id)
            return WebhookResult.noop(event.id, event.type, existing.id)

        now = self.clock()
        past_due = existing.mark_past_due(now=now).evolve(last_event_at=existing.observe_event(event.created))
        if _same_state(existing, past_due):
            return WebhookResult.noop(event.id, event.type, existing.id)

        stored = expect_written(self.subscriptions.update(past_due, expected_version=existing.version))
        logger.info("Updated subscription %s to past due after payment failure", event.subscription_id)
        return WebhookResult.applied(event.id, event.type, stored.id)

    # ------------------------------------------------------------------
    # Provider reconciliation

    def reconcile(self, user_id: str, snapshot: ProviderSubscription) -> UserSubscription:
        """Bring the user's record in line with the provider's current view.

        The provider status is authoritative except that a cancelled record is
        not reactivated here.
        """

        return retry_on_conflict(
            lambda: self._reconcile_once(user_id, snapshot),
            description=f"reconciliation of {snapshot.id}",
            attempts=self.max_attempts,
        )

    def _reconcile_once(self, user_id: str, snapshot: ProviderSubscription) -> UserSubscription:
        now = self.clock()
        existing = self.subscriptions.get_by_user_id(user_id)
        plan = self._resolve_plan(snapshot.metadata.get("planId"), snapshot.price_id)
        status = map_provider_status(snapshot.status)

        if existing is None:
            if plan is None:
                raise PlanNotFoundError(f"Cannot determine plan for subscription {snapshot.id}")
            created = UserSubscription.create_paid(
                user_id=user_id,
                plan_id=plan.id,
                external_subscription_id=snapshot.id,
                external_customer_id=snapshot.customer_id,
                current_period_start=snapshot.current_period_start,
                current_period_end=snapshot.current_period_end,
                now=now,
            )
            if status is not None:
                created = created.with_status(status, now=now)
            return self.subscriptions.add(created)

        if existing.is_cancelled and status not in (None, SubscriptionStatus.CANCELLED):
            status = None
        updated = existing.evolve(
            plan_id=plan.id if plan else existing.plan_id,
            external_subscription_id=snapshot.id,
            external_customer_id=snapshot.customer_id or existing.external_customer_id,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            updated_at=now,
        )
        if status is not None:
            updated = updated.with_status(status, now=now)
        if _same_state(existing, updated):
            return existing
        stored = expect_written(self.subscriptions.update(updated, expected_version=existing.version))
        logger.info("Reconciled subscription %s for user %s (%s)", snapshot.id, user_id, stored.status.value)
        return stored

    def _resolve_plan(self, plan_id: Optional[str], price_id: Optional[str]) -> Optional[SubscriptionPlan]:
        if plan_id:
            plan = self.plans.get(plan_id.strip().lower())
            if plan is not None:
                return plan
            logger.warning("Ignoring unknown plan %s", plan_id)
        if price_id:
            return find_by_price_id(self.plans, price_id)
        return None


__all__ = ["SUBSCRIPTION_NOT_FOUND", "SubscriptionStateMachine"]
