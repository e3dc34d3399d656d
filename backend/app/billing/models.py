"""Domain models for the subscription lifecycle."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..plans.models import PlanId

FREE_PLAN_TERM_YEARS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _add_years(value: datetime, years: int) -> datetime:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return value.replace(year=value.year + years, day=28)


class SubscriptionStatus(str, Enum):
    """Lifecycle state for a user subscription."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIALING = "trialing"


# Provider status strings understood on ``subscription.updated``; anything else
# leaves the local status unchanged.
PROVIDER_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "past_due": SubscriptionStatus.PAST_DUE,
    "trialing": SubscriptionStatus.TRIALING,
}


def map_provider_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    if not value:
        return None
    return PROVIDER_STATUS_MAP.get(value.strip().lower())


class UserSubscription(BaseModel):
    """The billing relationship owned by exactly one user.

    Instances are immutable; every transition returns a revalidated copy so the
    period and cancellation invariants hold for every stored version.
    ``version`` is the optimistic concurrency token checked by the repository.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    current_period_start: datetime
    current_period_end: datetime
    cancelled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_invariants(self) -> "UserSubscription":
        if self.current_period_end <= self.current_period_start:
            raise ValueError("current_period_end must be after current_period_start")
        if self.status == SubscriptionStatus.CANCELLED and self.cancelled_at is None:
            raise ValueError("cancelled subscriptions require cancelled_at")
        return self

    @classmethod
    def create_free(cls, user_id: str, *, now: Optional[datetime] = None) -> "UserSubscription":
        """Lazily provisioned Free subscription; the free term effectively never expires."""

        moment = now or utcnow()
        return cls(
            user_id=user_id,
            plan_id=PlanId.FREE.value,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=moment,
            current_period_end=_add_years(moment, FREE_PLAN_TERM_YEARS),
            created_at=moment,
            updated_at=moment,
        )

    @classmethod
    def create_paid(
        cls,
        *,
        user_id: str,
        plan_id: str,
        external_subscription_id: str,
        external_customer_id: Optional[str],
        current_period_start: datetime,
        current_period_end: datetime,
        event_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> "UserSubscription":
        moment = now or utcnow()
        return cls(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
            last_event_at=event_at,
            created_at=moment,
            updated_at=moment,
        )

    @property
    def is_free(self) -> bool:
        return self.plan_id == PlanId.FREE.value

    @property
    def is_cancelled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def is_stale(self, event_at: Optional[datetime]) -> bool:
        """Return ``True`` when ``event_at`` predates the newest applied provider event."""

        if event_at is None or self.last_event_at is None:
            return False
        return event_at < self.last_event_at

    def evolve(self, **changes: Any) -> "UserSubscription":
        """Return a validated copy with ``changes`` applied."""

        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def observe_event(self, event_at: Optional[datetime]) -> Optional[datetime]:
        if event_at is None:
            return self.last_event_at
        if self.last_event_at is None or event_at > self.last_event_at:
            return event_at
        return self.last_event_at

    def cancel(self, *, now: Optional[datetime] = None) -> "UserSubscription":
        if self.is_cancelled:
            return self
        moment = now or utcnow()
        return self.evolve(status=SubscriptionStatus.CANCELLED, cancelled_at=moment, updated_at=moment)

    def activate(self, *, now: Optional[datetime] = None) -> "UserSubscription":
        """Transition to Active; reactivating a cancelled record clears ``cancelled_at``."""

        if self.status == SubscriptionStatus.ACTIVE and self.cancelled_at is None:
            return self
        moment = now or utcnow()
        return self.evolve(status=SubscriptionStatus.ACTIVE, cancelled_at=None, updated_at=moment)

    def mark_past_due(self, *, now: Optional[datetime] = None) -> "UserSubscription":
        if self.status == SubscriptionStatus.PAST_DUE:
            return self
        moment = now or utcnow()
        return self.evolve(status=SubscriptionStatus.PAST_DUE, updated_at=moment)

    def with_status(self, status: SubscriptionStatus, *, now: Optional[datetime] = None) -> "UserSubscription":
        if status == SubscriptionStatus.CANCELLED:
            return self.cancel(now=now)
        if status == SubscriptionStatus.ACTIVE:
            return self.activate(now=now)
        if status == self.status:
            return self
        moment = now or utcnow()
        return self.evolve(status=status, updated_at=moment)


class SubscriptionUsage(BaseModel):
    """Per-user consumption counters checked against plan limits."""

    user_id: str = Field(min_length=1)
    invoice_count: int = Field(default=0, ge=0)
    user_count: int = Field(default=0, ge=0)
    last_updated: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def create(cls, user_id: str, *, now: Optional[datetime] = None) -> "SubscriptionUsage":
        return cls(user_id=user_id, last_updated=now or utcnow())

    def count_for(self, counter: str) -> int:
        return int(getattr(self, counter))

    def incremented(self, counter: str, amount: int, *, now: Optional[datetime] = None) -> "SubscriptionUsage":
        data = self.model_dump()
        data[counter] = self.count_for(counter) + amount
        data["last_updated"] = now or utcnow()
        return type(self).model_validate(data)


class ProviderSubscription(BaseModel):
    """Subscription state fetched synchronously from the payment provider."""

    id: str
    customer_id: Optional[str] = None
    status: str = ""
    current_period_start: datetime
    current_period_end: datetime
    price_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class CheckoutSession(BaseModel):
    """Redirect target returned by the provider for a checkout."""

    session_id: str
    url: str

    model_config = ConfigDict(frozen=True)


class PortalSession(BaseModel):
    url: str

    model_config = ConfigDict(frozen=True)


class WebhookOutcome(str, Enum):
    """How an event affected local state."""

    APPLIED = "applied"
    NOOP = "noop"
    REJECTED = "rejected"


class WebhookResult(BaseModel):
    """Result of applying one normalized webhook event."""

    success: bool
    outcome: WebhookOutcome
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    subscription_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def applied(cls, event_id: str, event_type: str, subscription_id: Optional[str] = None) -> "WebhookResult":
        return cls(
            success=True,
            outcome=WebhookOutcome.APPLIED,
            event_id=event_id,
            event_type=event_type,
            subscription_id=subscription_id,
        )

    @classmethod
    def noop(cls, event_id: str, event_type: str, subscription_id: Optional[str] = None) -> "WebhookResult":
        return cls(
            success=True,
            outcome=WebhookOutcome.NOOP,
            event_id=event_id,
            event_type=event_type,
            subscription_id=subscription_id,
        )

    @classmethod
    def failure(
        cls,
        event_id: str,
        event_type: str,
        error: str,
        *,
        retryable: bool = False,
    ) -> "WebhookResult":
        return cls(
            success=False,
            outcome=WebhookOutcome.REJECTED,
            event_id=event_id,
            event_type=event_type,
            error=error,
            retryable=retryable,
        )
