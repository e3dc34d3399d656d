"""Payment provider adapters: Stripe and a local sandbox."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

import stripe

from .exceptions import PaymentProviderError
from .interfaces import PaymentProvider
from .models import CheckoutSession, PortalSession, ProviderSubscription
from .webhooks import period_bounds, primary_price_id

logger = logging.getLogger("billing.provider")


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def snapshot_from_payload(payload: Mapping[str, Any]) -> ProviderSubscription:
    """Build a :class:`ProviderSubscription` from a provider subscription object."""

    start, end = period_bounds(payload)
    if start is None or end is None:
        raise PaymentProviderError(f"Subscription {payload.get('id')} has no billing period")
    customer = payload.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")
    metadata = payload.get("metadata") or {}
    return ProviderSubscription(
        id=payload["id"],
        customer_id=customer or None,
        status=payload.get("status") or "",
        current_period_start=_timestamp(start),
        current_period_end=_timestamp(end),
        price_id=primary_price_id(payload),
        metadata={str(key): str(value) for key, value in dict(metadata).items()},
    )


class StripePaymentProvider(PaymentProvider):
    """Provider backed by the Stripe API.

    Every request is bounded by ``timeout_seconds``; Stripe failures of any
    kind surface as :class:`PaymentProviderError`.
    """

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 30.0,
        max_network_retries: int = 2,
        client: Optional[Any] = None,
    ) -> None:
        if client is None:
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.new_default_http_client(timeout=timeout_seconds),
                max_network_retries=max_network_retries,
            )
        self._client = client

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        metadata = {"userId": user_id, "planId": plan_id}
        try:
            session = self._client.checkout.sessions.create(
                params={
                    "mode": "subscription",
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "client_reference_id": user_id,
                    "metadata": metadata,
                    # Subscription metadata is what the subscription webhooks carry.
                    "subscription_data": {"metadata": metadata},
                }
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session failed for user %s", user_id)
            raise PaymentProviderError("Unable to create checkout session") from exc
        return CheckoutSession(session_id=session.id, url=session.url or "")

    def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        try:
            session = self._client.billing_portal.sessions.create(
                params={"customer": customer_id, "return_url": return_url}
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe portal session failed for customer %s", customer_id)
            raise PaymentProviderError("Unable to create billing portal session") from exc
        return PortalSession(url=session.url)

    def cancel_subscription(self, external_subscription_id: str) -> None:
        try:
            self._client.subscriptions.cancel(external_subscription_id)
        except stripe.InvalidRequestError as exc:
            # Already cancelled remotely; local state may proceed.
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("Stripe subscription %s no longer exists", external_subscription_id)
                return
            logger.exception("Stripe cancellation failed for %s", external_subscription_id)
            raise PaymentProviderError("Unable to cancel subscription") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe cancellation failed for %s", external_subscription_id)
            raise PaymentProviderError("Unable to cancel subscription") from exc

    def fetch_subscription(self, external_subscription_id: str) -> ProviderSubscription:
        try:
            subscription = self._client.subscriptions.retrieve(external_subscription_id)
        except stripe.StripeError as exc:
            logger.exception("Stripe lookup failed for %s", external_subscription_id)
            raise PaymentProviderError("Unable to fetch subscription") from exc
        return snapshot_from_payload(_as_mapping(subscription))


class LocalSandboxPaymentProvider(PaymentProvider):
    """Minimal provider implementation for local development and tests."""

    def __init__(self, base_url: str = "https://billing.local") -> None:
        self._base_url = base_url.rstrip("/")
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, ProviderSubscription] = {}
        self.cancelled: set[str] = set()

    def register(self, subscription: ProviderSubscription) -> None:
        with self._lock:
            self._subscriptions[subscription.id] = subscription

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session_id = f"cs_{uuid4().hex}"
        logger.info("Sandbox checkout %s for user %s plan=%s price=%s", session_id, user_id, plan_id, price_id)
        return CheckoutSession(session_id=session_id, url=f"{self._base_url}/checkout/{session_id}")

    def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        return PortalSession(url=f"{self._base_url}/portal/{customer_id}")

    def cancel_subscription(self, external_subscription_id: str) -> None:
        with self._lock:
            self.cancelled.add(external_subscription_id)
            current = self._subscriptions.get(external_subscription_id)
            if current is not None:
                self._subscriptions[external_subscription_id] = current.model_copy(update={"status": "canceled"})

    def fetch_subscription(self, external_subscription_id: str) -> ProviderSubscription:
        with self._lock:
            current = self._subscriptions.get(external_subscription_id)
        if current is None:
            raise PaymentProviderError(f"Unknown sandbox subscription {external_subscription_id}")
        return current

    def simulate_subscription(
        self,
        *,
        user_id: str,
        plan_id: str,
        customer_id: Optional[str] = None,
        period_days: int = 30,
    ) -> ProviderSubscription:
        """Register an active subscription as if checkout had completed."""

        now = datetime.now(timezone.utc).replace(microsecond=0)
        subscription = ProviderSubscription(
            id=f"sub_{uuid4().hex[:14]}",
            customer_id=customer_id or f"cus_{uuid4().hex[:14]}",
            status="active",
            current_period_start=now,
            current_period_end=now + timedelta(days=period_days),
            metadata={"userId": user_id, "planId": plan_id},
        )
        self.register(subscription)
        return subscription


__all__ = ["LocalSandboxPaymentProvider", "StripePaymentProvider", "snapshot_from_payload"]
