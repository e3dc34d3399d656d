"""Collaborator protocols consumed by the subscription domain."""
from __future__ import annotations

from typing import Optional, Protocol

from .models import CheckoutSession, PortalSession, ProviderSubscription, SubscriptionUsage, UserSubscription


class SubscriptionRepository(Protocol):
    """Transactional access to user subscriptions.

    ``add`` raises :class:`DuplicateRecordError` when the user (or external
    subscription id) already has a record. ``update`` is a compare-and-swap on
    ``expected_version`` and returns ``None`` when another writer got there first.
    """

    def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        ...

    def get_by_external_id(self, external_subscription_id: str) -> Optional[UserSubscription]:
        ...

    def add(self, subscription: UserSubscription) -> UserSubscription:
        ...

    def update(self, subscription: UserSubscription, *, expected_version: int) -> Optional[UserSubscription]:
        ...


class UsageRepository(Protocol):
    """Transactional access to usage counters, with the same CAS contract."""

    def get(self, user_id: str) -> Optional[SubscriptionUsage]:
        ...

    def add(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        ...

    def update(self, usage: SubscriptionUsage, *, expected_version: int) -> Optional[SubscriptionUsage]:
        ...


class PaymentProvider(Protocol):
    """Synchronous command/query API of the external payment provider."""

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """Create a hosted checkout for a subscription purchase."""

    def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        """Create a hosted customer portal session."""

    def cancel_subscription(self, external_subscription_id: str) -> None:
        """Cancel a subscription at the provider."""

    def fetch_subscription(self, external_subscription_id: str) -> ProviderSubscription:
        """Return the provider's current view of a subscription."""


__all__ = ["PaymentProvider", "SubscriptionRepository", "UsageRepository"]
