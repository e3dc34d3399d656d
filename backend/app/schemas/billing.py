"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import CheckoutSession, PortalSession, SubscriptionStatus, SubscriptionUsage, UserSubscription
from ..feature_gates.meter import UsageEvaluation
from ..plans.models import BillingInterval, SubscriptionPlan, SupportLevel


class PlanFeaturesResponse(BaseModel):
    max_invoices: int = Field(alias="maxInvoices")
    max_users: int = Field(alias="maxUsers")
    support_level: SupportLevel = Field(alias="supportLevel")
    custom_branding: bool = Field(alias="customBranding")
    api_access: bool = Field(alias="apiAccess")

    model_config = ConfigDict(populate_by_name=True)


class PlanResponse(BaseModel):
    id: str
    name: str
    description: str
    price: Decimal
    currency: str
    interval: BillingInterval
    features: PlanFeaturesResponse
    is_active: bool = Field(alias="isActive")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: SubscriptionPlan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=plan.price.amount,
            currency=plan.price.currency,
            interval=plan.interval,
            features=PlanFeaturesResponse(
                max_invoices=plan.features.max_invoices,
                max_users=plan.features.max_users,
                support_level=plan.features.support_level,
                custom_branding=plan.features.custom_branding,
                api_access=plan.features.api_access,
            ),
            is_active=plan.is_active,
        )


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str = Field(alias="userId")
    plan_id: str = Field(alias="planId")
    status: SubscriptionStatus
    stripe_subscription_id: Optional[str] = Field(alias="stripeSubscriptionId", default=None)
    stripe_customer_id: Optional[str] = Field(alias="stripeCustomerId", default=None)
    current_period_start: datetime = Field(alias="currentPeriodStart")
    current_period_end: datetime = Field(alias="currentPeriodEnd")
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)
    trial_end: Optional[datetime] = Field(alias="trialEnd", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: Optional[datetime] = Field(alias="updatedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: UserSubscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            stripe_subscription_id=subscription.external_subscription_id,
            stripe_customer_id=subscription.external_customer_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancelled_at=subscription.cancelled_at,
            trial_end=subscription.trial_end,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
        )


class UsageResponse(BaseModel):
    user_id: str = Field(alias="userId")
    invoice_count: int = Field(alias="invoiceCount")
    user_count: int = Field(alias="userCount")
    last_updated: datetime = Field(alias="lastUpdated")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_usage(cls, usage: SubscriptionUsage) -> "UsageResponse":
        return cls(
            user_id=usage.user_id,
            invoice_count=usage.invoice_count,
            user_count=usage.user_count,
            last_updated=usage.last_updated,
        )


class CheckoutSessionRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(session_id=session.session_id, url=session.url)


class PortalSessionRequest(BaseModel):
    return_url: str = Field(alias="returnUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str

    @classmethod
    def from_portal(cls, session: PortalSession) -> "PortalSessionResponse":
        return cls(url=session.url)


class TrackUsageRequest(BaseModel):
    feature: str = Field(min_length=1)
    amount: int = Field(default=1, ge=1)


class CanUseFeatureResponse(BaseModel):
    feature: str
    can_use: bool = Field(alias="canUse")
    limit: int
    current: int
    unlimited: bool
    remaining: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_evaluation(cls, evaluation: UsageEvaluation) -> "CanUseFeatureResponse":
        return cls(
            feature=evaluation.feature.value,
            can_use=evaluation.allowed,
            limit=evaluation.limit,
            current=evaluation.current,
            unlimited=evaluation.unlimited,
            remaining=evaluation.remaining,
        )


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: Optional[str] = Field(alias="eventId", default=None)
    outcome: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)
