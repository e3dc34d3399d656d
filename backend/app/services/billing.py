"""Application wiring for the subscription service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing.config import BillingConfig, load_billing_config
from ..billing.interfaces import PaymentProvider
from ..billing.providers import LocalSandboxPaymentProvider, StripePaymentProvider
from ..billing.repository import PostgresSubscriptionRepository, PostgresUsageRepository
from ..billing.service import SubscriptionService
from ..billing.webhooks import WebhookNormalizer
from ..plans.catalog import build_plan_catalog
from ..plans.models import SubscriptionPlan
from ..plans.repository import PostgresPlanRepository, seed_default_plans

logger = logging.getLogger("billing")


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def build_payment_provider(config: BillingConfig) -> PaymentProvider:
    if config.uses_stripe:
        return StripePaymentProvider(
            config.stripe_secret_key or "",
            timeout_seconds=config.provider_timeout_seconds,
            max_network_retries=config.provider_max_network_retries,
        )
    logger.warning("Using local sandbox payment provider; no real charges will be made")
    return LocalSandboxPaymentProvider(base_url=f"{config.app_base_url}/billing/sandbox")


def seed_plans(config: BillingConfig) -> list[SubscriptionPlan]:
    """Insert the canonical plans (with configured price ids) that are missing."""

    catalog = build_plan_catalog(
        pro_price_id=config.pro_price_id,
        enterprise_price_id=config.enterprise_price_id,
    )
    repository = PostgresPlanRepository()
    added = seed_default_plans(repository, catalog.values())
    for plan in repository.list_all():
        if not plan.is_free and plan.is_active and not plan.external_price_id:
            logger.warning("Plan %s has no provider price id; checkout is disabled for it", plan.id)
    return added


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    config = get_billing_config()
    if not config.webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; all webhook deliveries will be rejected")
    service = SubscriptionService(
        subscriptions=PostgresSubscriptionRepository(),
        usage=PostgresUsageRepository(),
        plans=PostgresPlanRepository(),
        provider=build_payment_provider(config),
        normalizer=WebhookNormalizer(
            secret=config.webhook_secret,
            tolerance_seconds=config.webhook_tolerance_seconds,
        ),
        max_write_attempts=config.max_write_attempts,
    )
    return service


__all__ = ["build_payment_provider", "get_billing_config", "get_subscription_service", "seed_plans"]
