from __future__ import annotations

import json
from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from backend.app.billing.exceptions import PaymentProviderError
from backend.app.billing.models import UserSubscription
from backend.app.routes import billing as billing_routes
from backend.app.routes import webhooks as webhook_routes
from backend.app.schemas.billing import (
    CanUseFeatureResponse,
    CheckoutSessionRequest,
    PortalSessionRequest,
    SubscriptionResponse,
    TrackUsageRequest,
)

from .conftest import NOW, WEBHOOK_SECRET, signature_header

USER = SimpleNamespace(id="user-1")


@pytest.fixture(autouse=True)
def _use_test_service(monkeypatch, service):
    monkeypatch.setattr(billing_routes, "get_subscription_service", lambda: service)
    monkeypatch.setattr(webhook_routes, "get_subscription_service", lambda: service)


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    app.include_router(webhook_routes.router)
    return TestClient(app)


def _link_pro(subscriptions) -> UserSubscription:
    return subscriptions.add(
        UserSubscription.create_paid(
            user_id="user-1",
            plan_id="pro",
            external_subscription_id="sub_123",
            external_customer_id="cus_123",
            current_period_start=NOW,
            current_period_end=NOW + timedelta(days=30),
            now=NOW,
        )
    )


def test_list_plans_serialises_catalog() -> None:
    plans = billing_routes.list_plans()

    assert [plan.id for plan in plans] == ["free", "pro", "enterprise"]
    payload = plans[2].model_dump(by_alias=True)
    assert payload["features"]["maxInvoices"] == 0
    assert payload["features"]["apiAccess"] is True


def test_current_subscription_is_provisioned_on_read(subscriptions) -> None:
    response = billing_routes.get_current_subscription(current_user=USER)

    assert isinstance(response, SubscriptionResponse)
    assert response.plan_id == "free"
    assert response.model_dump(by_alias=True)["userId"] == "user-1"
    assert len(subscriptions.records) == 1


def test_checkout_route_returns_session() -> None:
    response = billing_routes.create_checkout_session(
        CheckoutSessionRequest(planId="pro", successUrl="https://app.test/ok", cancelUrl="https://app.test/no"),
        current_user=USER,
    )

    assert response.model_dump(by_alias=True) == {"sessionId": "cs_test_1", "url": "https://checkout.test/cs_test_1"}


def test_checkout_for_unknown_plan_maps_to_not_found() -> None:
    with pytest.raises(HTTPException) as exc:
        billing_routes.create_checkout_session(
            CheckoutSessionRequest(planId="platinum", successUrl="s", cancelUrl="c"),
            current_user=USER,
        )

    assert exc.value.status_code == 404
    assert exc.value.detail["error"] == "plan_not_found"


def test_cancel_free_plan_maps_to_bad_request() -> None:
    billing_routes.get_current_subscription(current_user=USER)

    with pytest.raises(HTTPException) as exc:
        billing_routes.cancel_subscription(current_user=USER)

    assert exc.value.status_code == 400
    assert exc.value.detail == {"error": "cannot_cancel_free_plan", "message": "Cannot cancel free plan"}


def test_provider_failure_maps_to_generic_server_error(subscriptions, provider) -> None:
    _link_pro(subscriptions)
    provider.fail_with = PaymentProviderError("stripe exploded: sk_live_secret")

    with pytest.raises(HTTPException) as exc:
        billing_routes.cancel_subscription(current_user=USER)

    assert exc.value.status_code == 500
    assert "sk_live_secret" not in str(exc.value.detail)


def test_portal_without_customer_is_rejected() -> None:
    with pytest.raises(HTTPException) as exc:
        billing_routes.create_portal_session(PortalSessionRequest(returnUrl="https://app.test"), current_user=USER)

    assert exc.value.status_code == 400
    assert exc.value.detail["error"] == "no_stripe_customer"


def test_track_usage_and_limit_response(service) -> None:
    limit = service.get_current_plan("user-1").features.max_invoices
    usage = billing_routes.track_usage(TrackUsageRequest(feature="invoice", amount=limit), current_user=USER)
    assert usage.invoice_count == limit

    with pytest.raises(HTTPException) as exc:
        billing_routes.track_usage(TrackUsageRequest(feature="invoice"), current_user=USER)

    assert exc.value.status_code == 403
    assert exc.value.detail["error"] == "usage_limit_exceeded"
    assert exc.value.detail["limit"] == limit


def test_can_use_feature_route() -> None:
    response = billing_routes.can_use_feature("user", current_user=USER)

    assert isinstance(response, CanUseFeatureResponse)
    assert response.model_dump(by_alias=True)["canUse"] is True
    assert response.remaining == 1

    with pytest.raises(HTTPException) as exc:
        billing_routes.can_use_feature("storage", current_user=USER)
    assert exc.value.status_code == 400


def test_webhook_requires_signature_header(client) -> None:
    response = client.post("/api/webhooks/stripe", content=b"{}")

    assert response.status_code == 400


def test_webhook_with_bad_signature_is_unauthorised(client, make_event, subscription_object, sign) -> None:
    body, header = sign(make_event("customer.subscription.created", subscription_object()), secret="whsec_wrong")

    response = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": header})

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid signature"}


def test_webhook_with_invalid_json_is_bad_request(client) -> None:
    body = b"not json"
    header = signature_header(body, WEBHOOK_SECRET)

    response = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": header})

    assert response.status_code == 400


def test_webhook_applies_event(client, subscriptions, make_event, subscription_object, sign) -> None:
    body, header = sign(make_event("customer.subscription.created", subscription_object(), event_id="evt_created"))

    response = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": header})

    assert response.status_code == 200
    assert response.json() == {"received": True, "eventId": "evt_created", "outcome": "applied", "error": None}
    assert subscriptions.get_by_external_id("sub_123").plan_id == "pro"


def test_webhook_acknowledges_malformed_event(client, make_event, subscription_object, sign) -> None:
    body, header = sign(make_event("customer.subscription.created", subscription_object(user_id=None)))

    response = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": header})

    assert response.status_code == 200
    assert response.json()["outcome"] == "rejected"
    assert response.json()["error"] == "User ID not found in metadata"


def test_webhook_for_unknown_subscription_asks_for_retry(client, make_event, sign) -> None:
    body, header = sign(make_event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_999"}))

    response = client.post("/api/webhooks/stripe", content=body, headers={"Stripe-Signature": header})

    assert response.status_code == 400
    assert response.json() == {"detail": "Subscription not found"}


def test_webhook_infrastructure_failure_is_server_error(monkeypatch, client) -> None:
    def explode(raw_body: bytes, signature_header: str):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(
        webhook_routes,
        "get_subscription_service",
        lambda: SimpleNamespace(handle_webhook=explode),
    )

    response = client.post(
        "/api/webhooks/stripe",
        content=json.dumps({"id": "evt_1", "type": "ping"}).encode(),
        headers={"Stripe-Signature": "t=1,v1=abc"},
    )

    assert response.status_code == 500
    assert response.json() == {"detail": "Webhook processing failed"}
