"""API routes exposing subscription and usage functionality."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Iterator, List, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, status

try:  # pragma: no cover - resolve the shared context when imported from the app package
    from backend import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]

from ..billing.exceptions import BillingError, ConcurrencyConflictError, PaymentProviderError
from ..feature_gates.exceptions import FeatureGateError
from ..schemas.billing import (
    CanUseFeatureResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PlanResponse,
    PortalSessionRequest,
    PortalSessionResponse,
    SubscriptionResponse,
    TrackUsageRequest,
    UsageResponse,
)
from ..services.billing import get_subscription_service

logger = logging.getLogger("billing")


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
    authorization: Optional[str] = Header(None),
):
    return app_context.get_current_user(session_token=session_token, authorization=authorization)


@contextmanager
def _billing_errors(action: str) -> Iterator[None]:
    """Translate domain errors to 4xx and infrastructure failures to a generic 500."""

    try:
        yield
    except (BillingError, FeatureGateError) as exc:
        raise exc.to_http_exception() from exc
    except (PaymentProviderError, ConcurrencyConflictError) as exc:
        logger.exception("Failed to %s", action)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unable to {action} right now",
        ) from exc


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("/plans", response_model=List[PlanResponse])
def list_plans() -> List[PlanResponse]:
    service = get_subscription_service()
    return [PlanResponse.from_plan(plan) for plan in service.list_plans()]


@router.get("/current", response_model=SubscriptionResponse)
def get_current_subscription(*, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    service = get_subscription_service()
    with _billing_errors("load subscription"):
        subscription = service.get_current_subscription(str(current_user.id))
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/usage", response_model=UsageResponse)
def get_usage(*, current_user=Depends(_get_current_user)) -> UsageResponse:
    service = get_subscription_service()
    with _billing_errors("load usage"):
        usage = service.get_usage(str(current_user.id))
    return UsageResponse.from_usage(usage)


@router.post("/checkout", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CheckoutSessionResponse:
    service = get_subscription_service()
    with _billing_errors("create checkout session"):
        session = service.create_checkout_session(
            str(current_user.id),
            payload.plan_id,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    return CheckoutSessionResponse.from_checkout(session)


@router.post("/portal", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PortalSessionResponse:
    service = get_subscription_service()
    with _billing_errors("create portal session"):
        session = service.create_portal_session(str(current_user.id), return_url=payload.return_url)
    return PortalSessionResponse.from_portal(session)


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel_subscription(*, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    service = get_subscription_service()
    with _billing_errors("cancel subscription"):
        subscription = service.cancel_subscription(str(current_user.id))
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/refresh", response_model=SubscriptionResponse)
def refresh_subscription(*, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    service = get_subscription_service()
    with _billing_errors("refresh subscription"):
        subscription = service.refresh_from_provider(str(current_user.id))
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/usage/track", response_model=UsageResponse)
def track_usage(
    payload: TrackUsageRequest,
    *,
    current_user=Depends(_get_current_user),
) -> UsageResponse:
    service = get_subscription_service()
    with _billing_errors("track usage"):
        usage = service.track_usage(str(current_user.id), payload.feature, payload.amount)
    return UsageResponse.from_usage(usage)


@router.get("/can-use/{feature}", response_model=CanUseFeatureResponse)
def can_use_feature(
    feature: str,
    *,
    current_user=Depends(_get_current_user),
) -> CanUseFeatureResponse:
    service = get_subscription_service()
    with _billing_errors("check feature usage"):
        evaluation = service.evaluate_feature(str(current_user.id), feature)
    return CanUseFeatureResponse.from_evaluation(evaluation)
