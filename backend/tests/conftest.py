from __future__ import annotations

import hashlib
import hmac
import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from backend.app.billing.exceptions import DuplicateRecordError, PaymentProviderError
from backend.app.billing.interfaces import PaymentProvider, SubscriptionRepository, UsageRepository
from backend.app.billing.models import (
    CheckoutSession,
    PortalSession,
    ProviderSubscription,
    SubscriptionUsage,
    UserSubscription,
)
from backend.app.billing.service import SubscriptionService
from backend.app.billing.webhooks import WebhookNormalizer
from backend.app.plans import CatalogPlanRepository, build_plan_catalog

WEBHOOK_SECRET = "whsec_test_secret"
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: Dict[str, UserSubscription] = {}
        self.update_calls = 0

    def get_by_user_id(self, user_id: str) -> Optional[UserSubscription]:
        with self._lock:
            return next((sub for sub in self.records.values() if sub.user_id == user_id), None)

    def get_by_external_id(self, external_subscription_id: str) -> Optional[UserSubscription]:
        with self._lock:
            return next(
                (
                    sub
                    for sub in self.records.values()
                    if sub.external_subscription_id == external_subscription_id
                ),
                None,
            )

    def add(self, subscription: UserSubscription) -> UserSubscription:
        with self._lock:
            for existing in self.records.values():
                if existing.user_id == subscription.user_id:
                    raise DuplicateRecordError(f"user {subscription.user_id}")
                if (
                    subscription.external_subscription_id
                    and existing.external_subscription_id == subscription.external_subscription_id
                ):
                    raise DuplicateRecordError(f"external id {subscription.external_subscription_id}")
            stored = subscription.model_copy(update={"version": 0})
            self.records[stored.id] = stored
            return stored

    def update(self, subscription: UserSubscription, *, expected_version: int) -> Optional[UserSubscription]:
        with self._lock:
            self.update_calls += 1
            current = self.records.get(subscription.id)
            if current is None or current.version != expected_version:
                return None
            stored = subscription.model_copy(update={"version": expected_version + 1})
            self.records[stored.id] = stored
            return stored


class InMemoryUsageRepository(UsageRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: Dict[str, SubscriptionUsage] = {}

    def get(self, user_id: str) -> Optional[SubscriptionUsage]:
        with self._lock:
            return self.records.get(user_id)

    def add(self, usage: SubscriptionUsage) -> SubscriptionUsage:
        with self._lock:
            if usage.user_id in self.records:
                raise DuplicateRecordError(f"usage {usage.user_id}")
            stored = usage.model_copy(update={"version": 0})
            self.records[usage.user_id] = stored
            return stored

    def update(self, usage: SubscriptionUsage, *, expected_version: int) -> Optional[SubscriptionUsage]:
        with self._lock:
            current = self.records.get(usage.user_id)
            if current is None or current.version != expected_version:
                return None
            stored = usage.model_copy(update={"version": expected_version + 1})
            self.records[usage.user_id] = stored
            return stored


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.calls: List[tuple[str, Dict[str, Any]]] = []
        self.remote: Dict[str, ProviderSubscription] = {}
        self.fail_with: Optional[Exception] = None

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))
        if self.fail_with is not None:
            raise self.fail_with

    def create_checkout_session(
        self,
        *,
        user_id: str,
        plan_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        self._record(
            "checkout",
            user_id=user_id,
            plan_id=plan_id,
            price_id=price_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        return CheckoutSession(session_id="cs_test_1", url="https://checkout.test/cs_test_1")

    def create_portal_session(self, *, customer_id: str, return_url: str) -> PortalSession:
        self._record("portal", customer_id=customer_id, return_url=return_url)
        return PortalSession(url=f"https://portal.test/{customer_id}")

    def cancel_subscription(self, external_subscription_id: str) -> None:
        self._record("cancel", external_subscription_id=external_subscription_id)

    def fetch_subscription(self, external_subscription_id: str) -> ProviderSubscription:
        self._record("fetch", external_subscription_id=external_subscription_id)
        try:
            return self.remote[external_subscription_id]
        except KeyError:
            raise PaymentProviderError(f"unknown subscription {external_subscription_id}") from None

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]


def unix(value: datetime) -> int:
    return int(value.timestamp())


def signature_header(body: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Sign ``body`` the way the provider does; defaults to the current wall clock."""

    signed_at = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{signed_at}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"t={signed_at},v1={digest}"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def plans() -> CatalogPlanRepository:
    catalog = build_plan_catalog(pro_price_id="price_pro", enterprise_price_id="price_enterprise")
    return CatalogPlanRepository(catalog.values())


@pytest.fixture
def subscriptions() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def usage_repository() -> InMemoryUsageRepository:
    return InMemoryUsageRepository()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def normalizer() -> WebhookNormalizer:
    return WebhookNormalizer(secret=WEBHOOK_SECRET, tolerance_seconds=300)


@pytest.fixture
def service(subscriptions, usage_repository, plans, provider, normalizer, clock) -> SubscriptionService:
    return SubscriptionService(
        subscriptions=subscriptions,
        usage=usage_repository,
        plans=plans,
        provider=provider,
        normalizer=normalizer,
        max_write_attempts=5,
        clock=clock,
    )


@pytest.fixture
def make_event() -> Callable[..., Dict[str, Any]]:
    """Build a provider event envelope around ``data.object``."""

    counter = {"value": 0}

    def _make(event_type: str, obj: Dict[str, Any], *, created: Optional[datetime] = None, event_id: Optional[str] = None):
        counter["value"] += 1
        return {
            "id": event_id or f"evt_{counter['value']}",
            "object": "event",
            "type": event_type,
            "created": unix(created or NOW),
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def subscription_object() -> Callable[..., Dict[str, Any]]:
    def _make(
        subscription_id: str = "sub_123",
        *,
        user_id: Optional[str] = "user-1",
        plan_id: Optional[str] = "pro",
        status: str = "active",
        customer: str = "cus_123",
        start: datetime = NOW,
        days: int = 30,
        **extra: Any,
    ) -> Dict[str, Any]:
        metadata: Dict[str, str] = {}
        if user_id is not None:
            metadata["userId"] = user_id
        if plan_id is not None:
            metadata["planId"] = plan_id
        obj: Dict[str, Any] = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "current_period_start": unix(start),
            "current_period_end": unix(start + timedelta(days=days)),
            "metadata": metadata,
        }
        obj.update(extra)
        return obj

    return _make


@pytest.fixture
def sign() -> Callable[..., tuple[bytes, str]]:
    """Serialise an event and sign it as if delivered ``age_seconds`` ago."""

    def _sign(event: Dict[str, Any], *, secret: str = WEBHOOK_SECRET, age_seconds: int = 0):
        body = json.dumps(event).encode("utf-8")
        return body, signature_header(body, secret, int(time.time()) - age_seconds)

    return _sign
