"""Subscription lifecycle: records, webhook normalisation and state transitions.

The orchestrating :class:`~.service.SubscriptionService` lives in
``backend.app.billing.service``; it depends on ``feature_gates`` which in turn
depends on the modules exported here.
"""

from .concurrency import retry_on_conflict
from .exceptions import (
    BillingError,
    CannotCancelFreePlanError,
    ConcurrencyConflictError,
    DuplicateRecordError,
    InvalidPlanConfigurationError,
    InvalidUsageAmountError,
    InvalidUserIdError,
    NoProviderCustomerError,
    NoSubscriptionError,
    PaymentProviderError,
    PlanNotFoundError,
    UnknownFeatureError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from .interfaces import PaymentProvider, SubscriptionRepository, UsageRepository
from .models import (
    CheckoutSession,
    PortalSession,
    ProviderSubscription,
    SubscriptionStatus,
    SubscriptionUsage,
    UserSubscription,
    WebhookOutcome,
    WebhookResult,
)
from .state_machine import SubscriptionStateMachine
from .webhooks import EventKind, NormalizedEvent, WebhookNormalizer, parse_event, verify_signature

__all__ = [
    "BillingError",
    "CannotCancelFreePlanError",
    "CheckoutSession",
    "ConcurrencyConflictError",
    "DuplicateRecordError",
    "EventKind",
    "InvalidPlanConfigurationError",
    "InvalidUsageAmountError",
    "InvalidUserIdError",
    "NoProviderCustomerError",
    "NoSubscriptionError",
    "NormalizedEvent",
    "PaymentProvider",
    "PaymentProviderError",
    "PlanNotFoundError",
    "PortalSession",
    "ProviderSubscription",
    "SubscriptionRepository",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "SubscriptionUsage",
    "UnknownFeatureError",
    "UsageRepository",
    "UserSubscription",
    "WebhookNormalizer",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookResult",
    "WebhookSignatureError",
    "parse_event",
    "retry_on_conflict",
    "verify_signature",
]
