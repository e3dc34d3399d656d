"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from .concurrency import DEFAULT_MAX_ATTEMPTS
from .webhooks import DEFAULT_TOLERANCE_SECONDS

SUPPORTED_PROVIDERS = {"stripe", "sandbox"}


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the payment provider and subscription engine."""

    provider_name: str
    stripe_secret_key: Optional[str]
    webhook_secret: str
    webhook_tolerance_seconds: int
    pro_price_id: Optional[str]
    enterprise_price_id: Optional[str]
    provider_timeout_seconds: float
    provider_max_network_retries: int
    max_write_attempts: int
    app_base_url: str

    @property
    def uses_stripe(self) -> bool:
        return self.provider_name == "stripe"


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    default_provider = "stripe" if stripe_secret_key else "sandbox"
    provider_name = (env_mapping.get("BILLING_PROVIDER") or default_provider).strip().lower() or default_provider
    if provider_name not in SUPPORTED_PROVIDERS:
        raise ValueError(f"Unsupported BILLING_PROVIDER {provider_name!r}")
    if provider_name == "stripe" and not stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is required when BILLING_PROVIDER is 'stripe'")

    webhook_secret = (env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    webhook_tolerance_seconds = max(
        0,
        _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"), default=DEFAULT_TOLERANCE_SECONDS),
    )

    pro_price_id = (env_mapping.get("STRIPE_PRICE_PRO") or "").strip() or None
    enterprise_price_id = (env_mapping.get("STRIPE_PRICE_ENTERPRISE") or "").strip() or None

    provider_timeout_seconds = max(1.0, _to_float(env_mapping.get("STRIPE_TIMEOUT_SECONDS"), default=30.0))
    provider_max_network_retries = max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2))
    max_write_attempts = max(
        1,
        _to_int(env_mapping.get("BILLING_MAX_WRITE_ATTEMPTS"), default=DEFAULT_MAX_ATTEMPTS),
    )
    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:5173")

    return BillingConfig(
        provider_name=provider_name,
        stripe_secret_key=stripe_secret_key,
        webhook_secret=webhook_secret,
        webhook_tolerance_seconds=webhook_tolerance_seconds,
        pro_price_id=pro_price_id,
        enterprise_price_id=enterprise_price_id,
        provider_timeout_seconds=provider_timeout_seconds,
        provider_max_network_retries=provider_max_network_retries,
        max_write_attempts=max_write_attempts,
        app_base_url=app_base_url.rstrip("/"),
    )


__all__ = ["BillingConfig", "SUPPORTED_PROVIDERS", "load_billing_config"]
