from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
import stripe

from backend.app.billing.exceptions import PaymentProviderError
from backend.app.billing.providers import (
    LocalSandboxPaymentProvider,
    StripePaymentProvider,
    snapshot_from_payload,
)

from .conftest import NOW, unix


class _Recorder:
    """Stands in for one Stripe resource service, recording each call."""

    def __init__(self, calls: List[tuple], name: str, result: Any = None, error: Exception = None) -> None:
        self._calls = calls
        self._name = name
        self._result = result
        self._error = error

    def _call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        self._calls.append((f"{self._name}.{method}", args, kwargs))
        if self._error is not None:
            raise self._error
        return self._result

    def create(self, *args: Any, **kwargs: Any) -> Any:
        return self._call("create", *args, **kwargs)

    def cancel(self, *args: Any, **kwargs: Any) -> Any:
        return self._call("cancel", *args, **kwargs)

    def retrieve(self, *args: Any, **kwargs: Any) -> Any:
        return self._call("retrieve", *args, **kwargs)


def _stripe_client(calls: List[tuple], *, subscriptions: _Recorder = None) -> SimpleNamespace:
    return SimpleNamespace(
        checkout=SimpleNamespace(
            sessions=_Recorder(calls, "checkout", SimpleNamespace(id="cs_live_1", url="https://stripe.test/cs_live_1"))
        ),
        billing_portal=SimpleNamespace(
            sessions=_Recorder(calls, "portal", SimpleNamespace(url="https://stripe.test/portal"))
        ),
        subscriptions=subscriptions or _Recorder(calls, "subscriptions"),
    )


def _subscription_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "current_period_start": unix(NOW),
        "current_period_end": unix(NOW + timedelta(days=30)),
        "items": {"data": [{"price": {"id": "price_pro"}}]},
        "metadata": {"userId": "user-1", "planId": "pro"},
    }
    payload.update(overrides)
    return payload


def test_snapshot_from_payload_reads_subscription_fields() -> None:
    snapshot = snapshot_from_payload(_subscription_payload(customer={"id": "cus_456"}))

    assert snapshot.id == "sub_123"
    assert snapshot.customer_id == "cus_456"
    assert snapshot.current_period_start == NOW
    assert snapshot.current_period_end == NOW + timedelta(days=30)
    assert snapshot.price_id == "price_pro"
    assert snapshot.metadata == {"userId": "user-1", "planId": "pro"}


def test_snapshot_without_period_is_rejected() -> None:
    payload = _subscription_payload()
    del payload["current_period_end"]

    with pytest.raises(PaymentProviderError):
        snapshot_from_payload(payload)


def test_stripe_checkout_carries_user_and_plan_metadata() -> None:
    calls: List[tuple] = []
    provider = StripePaymentProvider("sk_test_123", client=_stripe_client(calls))

    session = provider.create_checkout_session(
        user_id="user-1",
        plan_id="pro",
        price_id="price_pro",
        success_url="https://app.test/ok",
        cancel_url="https://app.test/no",
    )

    assert session.session_id == "cs_live_1"
    name, _, kwargs = calls[0]
    params = kwargs["params"]
    assert name == "checkout.create"
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert params["subscription_data"]["metadata"] == {"userId": "user-1", "planId": "pro"}


def test_stripe_portal_session_uses_customer() -> None:
    calls: List[tuple] = []
    provider = StripePaymentProvider("sk_test_123", client=_stripe_client(calls))

    session = provider.create_portal_session(customer_id="cus_123", return_url="https://app.test")

    assert session.url == "https://stripe.test/portal"
    assert calls[0][2]["params"] == {"customer": "cus_123", "return_url": "https://app.test"}


def test_stripe_errors_become_provider_errors() -> None:
    calls: List[tuple] = []
    failing = _Recorder(calls, "subscriptions", error=stripe.APIConnectionError("network down"))
    provider = StripePaymentProvider("sk_test_123", client=_stripe_client(calls, subscriptions=failing))

    with pytest.raises(PaymentProviderError):
        provider.cancel_subscription("sub_123")
    with pytest.raises(PaymentProviderError):
        provider.fetch_subscription("sub_123")


def test_cancelling_missing_stripe_subscription_is_tolerated() -> None:
    calls: List[tuple] = []
    missing = _Recorder(
        calls,
        "subscriptions",
        error=stripe.InvalidRequestError("No such subscription", "id", code="resource_missing"),
    )
    provider = StripePaymentProvider("sk_test_123", client=_stripe_client(calls, subscriptions=missing))

    provider.cancel_subscription("sub_gone")

    assert calls == [("subscriptions.cancel", ("sub_gone",), {})]


def test_stripe_fetch_subscription_builds_snapshot() -> None:
    calls: List[tuple] = []
    remote = _Recorder(calls, "subscriptions", result=_subscription_payload(status="past_due"))
    provider = StripePaymentProvider("sk_test_123", client=_stripe_client(calls, subscriptions=remote))

    snapshot = provider.fetch_subscription("sub_123")

    assert snapshot.status == "past_due"
    assert snapshot.customer_id == "cus_123"


def test_sandbox_provider_round_trip() -> None:
    provider = LocalSandboxPaymentProvider(base_url="https://billing.test/")

    checkout = provider.create_checkout_session(
        user_id="user-1",
        plan_id="pro",
        price_id="price_pro",
        success_url="s",
        cancel_url="c",
    )
    simulated = provider.simulate_subscription(user_id="user-1", plan_id="pro", customer_id="cus_local")
    provider.cancel_subscription(simulated.id)

    assert checkout.url.startswith("https://billing.test/checkout/cs_")
    assert provider.create_portal_session(customer_id="cus_local", return_url="r").url == "https://billing.test/portal/cus_local"
    assert provider.fetch_subscription(simulated.id).status == "canceled"
    assert simulated.id in provider.cancelled
    with pytest.raises(PaymentProviderError):
        provider.fetch_subscription("sub_unknown")
