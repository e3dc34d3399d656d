"""Domain models describing subscription plans and their limits."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanId(str, Enum):
    """Canonical identifiers for the seeded subscription plans."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTH = "month"
    YEAR = "year"


class SupportLevel(str, Enum):
    """Support tier bundled with a plan."""

    COMMUNITY = "community"
    EMAIL = "email"
    PRIORITY = "priority"


class Money(BaseModel):
    """Amount and ISO currency code."""

    amount: Decimal = Field(default=Decimal("0"))
    currency: str = "USD"

    model_config = ConfigDict(frozen=True)

    @field_validator("amount")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("Amount cannot be negative")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Currency is required")
        return value.strip().upper()

    @classmethod
    def zero(cls, currency: str = "USD") -> "Money":
        return cls(amount=Decimal("0"), currency=currency)

    @classmethod
    def from_cents(cls, cents: int, currency: str = "USD") -> "Money":
        return cls(amount=Decimal(cents) / 100, currency=currency)


class PlanFeatures(BaseModel):
    """Feature limits attached to a plan.

    A numeric limit of ``0`` means the feature is unlimited.
    """

    max_invoices: int = Field(default=0, ge=0)
    max_users: int = Field(default=0, ge=0)
    support_level: SupportLevel = SupportLevel.COMMUNITY
    custom_branding: bool = False
    api_access: bool = False

    model_config = ConfigDict(frozen=True)


class SubscriptionPlan(BaseModel):
    """Immutable plan definition seeded at startup."""

    id: str
    name: str
    description: str = ""
    price: Money = Field(default_factory=Money.zero)
    interval: BillingInterval = BillingInterval.MONTH
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    is_active: bool = True
    external_product_id: Optional[str] = None
    external_price_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def is_free(self) -> bool:
        return self.id == PlanId.FREE.value

    @property
    def is_purchasable(self) -> bool:
        """Return ``True`` when the plan can be sold through the provider."""
        return self.is_active and bool(self.external_price_id)
