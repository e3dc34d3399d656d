"""Verification and normalisation of inbound payment provider webhooks.

Signatures are checked with the Stripe SDK against the endpoint secret. A
verified body is parsed into one of the typed events below; nothing here
touches persistence.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Dict, Literal, Mapping, Optional, Tuple, Type, Union

import stripe
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .exceptions import WebhookPayloadError, WebhookSignatureError

logger = logging.getLogger("billing.webhooks")

DEFAULT_TOLERANCE_SECONDS = 300


class EventKind(str, Enum):
    """Event kinds the subscription state machine understands."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNHANDLED = "unhandled"


PROVIDER_EVENT_TYPES: Dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": EventKind.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": EventKind.INVOICE_PAYMENT_FAILED,
}


def event_kind_for(event_type: str) -> EventKind:
    return PROVIDER_EVENT_TYPES.get(event_type.strip().lower(), EventKind.UNHANDLED)


def _from_unix(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("timestamp must be a unix time in seconds")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip().isdigit():
        return datetime.fromtimestamp(int(value.strip()), tz=timezone.utc)
    return value


UnixTimestamp = Annotated[datetime, BeforeValidator(_from_unix)]


class WebhookEvent(BaseModel):
    """Fields shared by every normalised event."""

    id: str = Field(min_length=1)
    type: str
    created: Optional[UnixTimestamp] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionCreatedEvent(WebhookEvent):
    kind: Literal[EventKind.SUBSCRIPTION_CREATED] = EventKind.SUBSCRIPTION_CREATED
    subscription_id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    status: Optional[str] = None
    current_period_start: UnixTimestamp
    current_period_end: UnixTimestamp
    trial_end: Optional[UnixTimestamp] = None


class SubscriptionUpdatedEvent(WebhookEvent):
    kind: Literal[EventKind.SUBSCRIPTION_UPDATED] = EventKind.SUBSCRIPTION_UPDATED
    subscription_id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    status: Optional[str] = None
    plan_id: Optional[str] = None
    current_period_start: UnixTimestamp
    current_period_end: UnixTimestamp
    trial_end: Optional[UnixTimestamp] = None
    price_id: Optional[str] = None


class SubscriptionDeletedEvent(WebhookEvent):
    kind: Literal[EventKind.SUBSCRIPTION_DELETED] = EventKind.SUBSCRIPTION_DELETED
    subscription_id: str = Field(min_length=1)


class InvoicePaymentSucceededEvent(WebhookEvent):
    kind: Literal[EventKind.INVOICE_PAYMENT_SUCCEEDED] = EventKind.INVOICE_PAYMENT_SUCCEEDED
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None


class InvoicePaymentFailedEvent(WebhookEvent):
    kind: Literal[EventKind.INVOICE_PAYMENT_FAILED] = EventKind.INVOICE_PAYMENT_FAILED
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None


class UnhandledEvent(WebhookEvent):
    kind: Literal[EventKind.UNHANDLED] = EventKind.UNHANDLED


class MalformedEvent(WebhookEvent):
    """A recognised event kind whose payload is missing or has invalid fields."""

    kind: EventKind
    error: str


NormalizedEvent = Union[
    SubscriptionCreatedEvent,
    SubscriptionUpdatedEvent,
    SubscriptionDeletedEvent,
    InvoicePaymentSucceededEvent,
    InvoicePaymentFailedEvent,
    UnhandledEvent,
    MalformedEvent,
]


# ---------------------------------------------------------------------------
# Signatures


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Validate ``header`` for ``payload`` with the provider SDK.

    Raises :class:`WebhookSignatureError` on any failure. The reason is logged
    at debug level only and never includes the expected digest.
    """

    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        raise WebhookSignatureError()
    if not header:
        logger.debug("Webhook signature header missing")
        raise WebhookSignatureError()

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.debug("Webhook body is not UTF-8")
        raise WebhookSignatureError() from exc

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=tolerance_seconds or None)
    except stripe.SignatureVerificationError as exc:
        logger.debug("Webhook signature rejected: %s", exc)
        raise WebhookSignatureError() from exc


# ---------------------------------------------------------------------------
# Parsing


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = obj.get("items")
    if isinstance(items, Mapping):
        data = items.get("data")
        if isinstance(data, list) and data and isinstance(data[0], Mapping):
            return data[0]
    return {}


def period_bounds(obj: Mapping[str, Any]) -> Tuple[Any, Any]:
    # Newer API versions report the period on the subscription item.
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        item = _first_item(obj)
        start = start if start is not None else item.get("current_period_start")
        end = end if end is not None else item.get("current_period_end")
    return start, end


def primary_price_id(obj: Mapping[str, Any]) -> Optional[str]:
    price = _first_item(obj).get("price")
    if isinstance(price, Mapping):
        return price.get("id")
    return None


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _invoice_subscription(obj: Mapping[str, Any]) -> Optional[str]:
    subscription = obj.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    if not subscription:
        parent = obj.get("parent")
        if isinstance(parent, Mapping):
            details = parent.get("subscription_details")
            if isinstance(details, Mapping):
                subscription = details.get("subscription")
    return subscription or None


def _subscription_fields(obj: Mapping[str, Any], *, require_metadata: bool) -> Dict[str, Any]:
    metadata = _metadata(obj)
    if not obj.get("id"):
        raise WebhookPayloadError("Subscription ID not found")
    if require_metadata:
        if not metadata.get("userId"):
            raise WebhookPayloadError("User ID not found in metadata")
        if not metadata.get("planId"):
            raise WebhookPayloadError("Plan ID not found")
    start, end = period_bounds(obj)
    if start is None or end is None:
        raise WebhookPayloadError("Missing period information")

    customer = obj.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")
    fields: Dict[str, Any] = {
        "subscription_id": obj["id"],
        "customer_id": customer or None,
        "status": obj.get("status"),
        "current_period_start": start,
        "current_period_end": end,
        "trial_end": obj.get("trial_end"),
    }
    if require_metadata:
        fields["user_id"] = str(metadata["userId"]).strip()
    if metadata.get("planId"):
        fields["plan_id"] = str(metadata["planId"]).strip().lower()
    return fields


def _created_fields(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return _subscription_fields(obj, require_metadata=True)


def _updated_fields(obj: Mapping[str, Any]) -> Dict[str, Any]:
    fields = _subscription_fields(obj, require_metadata=False)
    fields["price_id"] = primary_price_id(obj)
    return fields


def _deleted_fields(obj: Mapping[str, Any]) -> Dict[str, Any]:
    if not obj.get("id"):
        raise WebhookPayloadError("Subscription ID not found")
    return {"subscription_id": obj["id"]}


def _invoice_fields(obj: Mapping[str, Any]) -> Dict[str, Any]:
    return {"invoice_id": obj.get("id"), "subscription_id": _invoice_subscription(obj)}


_EVENT_BUILDERS: Dict[EventKind, Tuple[Type[WebhookEvent], Callable[[Mapping[str, Any]], Dict[str, Any]]]] = {
    EventKind.SUBSCRIPTION_CREATED: (SubscriptionCreatedEvent, _created_fields),
    EventKind.SUBSCRIPTION_UPDATED: (SubscriptionUpdatedEvent, _updated_fields),
    EventKind.SUBSCRIPTION_DELETED: (SubscriptionDeletedEvent, _deleted_fields),
    EventKind.INVOICE_PAYMENT_SUCCEEDED: (InvoicePaymentSucceededEvent, _invoice_fields),
    EventKind.INVOICE_PAYMENT_FAILED: (InvoicePaymentFailedEvent, _invoice_fields),
}


def _describe_validation_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid event payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid {location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "")


def parse_event(raw_body: bytes) -> NormalizedEvent:
    """Parse a verified request body into a typed event.

    Raises :class:`WebhookPayloadError` when the body is not a JSON event
    envelope. Recognised kinds with unusable payloads become
    :class:`MalformedEvent`; unknown kinds become :class:`UnhandledEvent`.
    """

    try:
        envelope = json.loads(raw_body)
    except (TypeError, ValueError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(envelope, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise WebhookPayloadError("Webhook event id is missing")
    if not isinstance(event_type, str) or not event_type:
        raise WebhookPayloadError("Webhook event type is missing")

    try:
        base = WebhookEvent(id=event_id, type=event_type, created=envelope.get("created"))
    except ValidationError as exc:
        raise WebhookPayloadError(_describe_validation_error(exc)) from exc

    kind = event_kind_for(event_type)
    if kind == EventKind.UNHANDLED:
        return UnhandledEvent(id=base.id, type=base.type, created=base.created)

    event_cls, build_fields = _EVENT_BUILDERS[kind]
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        return MalformedEvent(
            id=base.id,
            type=base.type,
            created=base.created,
            kind=kind,
            error="No data in webhook event",
        )

    try:
        fields = build_fields(obj)
        return event_cls(id=base.id, type=base.type, created=base.created, **_known_fields(event_cls, fields))
    except WebhookPayloadError as exc:
        error = str(exc)
    except ValidationError as exc:
        error = _describe_validation_error(exc)
    return MalformedEvent(id=base.id, type=base.type, created=base.created, kind=kind, error=error)


def _known_fields(event_cls: Type[WebhookEvent], fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if key in event_cls.model_fields}


@dataclass
class WebhookNormalizer:
    """Authenticate and parse inbound deliveries: ``handle_inbound(body, header)``."""

    secret: str
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS

    def handle_inbound(self, raw_body: bytes, signature_header: Optional[str]) -> NormalizedEvent:
        verify_signature(
            raw_body,
            signature_header,
            self.secret,
            tolerance_seconds=self.tolerance_seconds,
        )
        return parse_event(raw_body)


__all__ = [
    "DEFAULT_TOLERANCE_SECONDS",
    "EventKind",
    "InvoicePaymentFailedEvent",
    "InvoicePaymentSucceededEvent",
    "MalformedEvent",
    "NormalizedEvent",
    "PROVIDER_EVENT_TYPES",
    "SubscriptionCreatedEvent",
    "SubscriptionDeletedEvent",
    "SubscriptionUpdatedEvent",
    "UnhandledEvent",
    "WebhookEvent",
    "WebhookNormalizer",
    "event_kind_for",
    "parse_event",
    "verify_signature",
]
