"""Error taxonomy for the subscription domain."""
from __future__ import annotations

from typing import Any, Dict

from fastapi import HTTPException, status


class BillingError(Exception):
    """Domain rule violation surfaced to API callers as a 4xx response."""

    code = "billing_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def payload(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.payload)


class InvalidUserIdError(BillingError, ValueError):
    code = "invalid_user_id"


class PlanNotFoundError(BillingError, LookupError):
    code = "plan_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidPlanConfigurationError(BillingError):
    code = "invalid_configuration"
    status_code = status.HTTP_409_CONFLICT


class NoSubscriptionError(BillingError, LookupError):
    code = "no_subscription"
    status_code = status.HTTP_404_NOT_FOUND


class CannotCancelFreePlanError(BillingError, ValueError):
    code = "cannot_cancel_free_plan"


class NoProviderCustomerError(BillingError, LookupError):
    code = "no_stripe_customer"


class UnknownFeatureError(BillingError, ValueError):
    code = "unknown_feature"


class InvalidUsageAmountError(BillingError, ValueError):
    code = "invalid_amount"


class WebhookSignatureError(Exception):
    """Inbound webhook failed authenticity checks. Carries no verification detail."""

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")


class WebhookPayloadError(ValueError):
    """Verified webhook body is not a well-formed event envelope."""


class PaymentProviderError(RuntimeError):
    """Payment provider could not be reached or rejected a command."""


class ConcurrencyConflictError(RuntimeError):
    """Optimistic concurrency retries were exhausted for a record."""


class DuplicateRecordError(RuntimeError):
    """An insert collided with a uniqueness constraint."""


__all__ = [
    "BillingError",
    "CannotCancelFreePlanError",
    "ConcurrencyConflictError",
    "DuplicateRecordError",
    "InvalidPlanConfigurationError",
    "InvalidUsageAmountError",
    "InvalidUserIdError",
    "NoProviderCustomerError",
    "NoSubscriptionError",
    "PaymentProviderError",
    "PlanNotFoundError",
    "UnknownFeatureError",
    "WebhookPayloadError",
    "WebhookSignatureError",
]
