"""Persistence for subscription plans and startup seeding."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol, Sequence

from ..db import PostgresRepository
from .catalog import build_plan_catalog
from .models import BillingInterval, Money, PlanFeatures, SubscriptionPlan, SupportLevel

logger = logging.getLogger("billing.plans")


class PlanRepository(Protocol):
    """Read and seed operations for plan definitions."""

    def get(self, plan_id: str) -> Optional[SubscriptionPlan]:
        ...

    def list_all(self) -> Sequence[SubscriptionPlan]:
        ...

    def add(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        ...


class CatalogPlanRepository:
    """Plan repository backed by an in-process catalog."""

    def __init__(self, plans: Optional[Iterable[SubscriptionPlan]] = None) -> None:
        source = plans if plans is not None else build_plan_catalog().values()
        self._plans: Dict[str, SubscriptionPlan] = {plan.id: plan for plan in source}

    def get(self, plan_id: str) -> Optional[SubscriptionPlan]:
        return self._plans.get(plan_id)

    def list_all(self) -> Sequence[SubscriptionPlan]:
        return list(self._plans.values())

    def add(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        self._plans.setdefault(plan.id, plan)
        return self._plans[plan.id]


def _row_to_plan(row: dict) -> SubscriptionPlan:
    return SubscriptionPlan(
        id=row["id"],
        name=row["name"],
        description=row.get("description") or "",
        price=Money(amount=Decimal(row["price_amount"]), currency=row["price_currency"]),
        interval=BillingInterval(row["interval"]),
        features=PlanFeatures(
            max_invoices=int(row["max_invoices"]),
            max_users=int(row["max_users"]),
            support_level=SupportLevel(row["support_level"]),
            custom_branding=bool(row["custom_branding"]),
            api_access=bool(row["api_access"]),
        ),
        is_active=bool(row["is_active"]),
        external_product_id=row.get("external_product_id"),
        external_price_id=row.get("external_price_id"),
        created_at=row["created_at"],
    )


class PostgresPlanRepository(PostgresRepository):
    """Concrete repository persisting plan definitions in PostgreSQL."""

    def get(self, plan_id: str) -> Optional[SubscriptionPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscription_plans
                WHERE id = %s
                LIMIT 1
                """,
                (plan_id,),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def list_all(self) -> Sequence[SubscriptionPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscription_plans
                ORDER BY price_amount ASC, id ASC
                """
            )
            return [_row_to_plan(row) for row in cursor.fetchall() or []]

    def add(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        """Insert a plan unless one with the same id exists; return the stored row."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscription_plans (
                    id,
                    name,
                    description,
                    price_amount,
                    price_currency,
                    interval,
                    max_invoices,
                    max_users,
                    support_level,
                    custom_branding,
                    api_access,
                    is_active,
                    external_product_id,
                    external_price_id,
                    created_at
                )
                VALUES (%(id)s, %(name)s, %(description)s, %(price_amount)s, %(price_currency)s,
                        %(interval)s, %(max_invoices)s, %(max_users)s, %(support_level)s,
                        %(custom_branding)s, %(api_access)s, %(is_active)s,
                        %(external_product_id)s, %(external_price_id)s, %(created_at)s)
                ON CONFLICT (id) DO NOTHING
                """,
                {
                    "id": plan.id,
                    "name": plan.name,
                    "description": plan.description,
                    "price_amount": plan.price.amount,
                    "price_currency": plan.price.currency,
                    "interval": plan.interval.value,
                    "max_invoices": plan.features.max_invoices,
                    "max_users": plan.features.max_users,
                    "support_level": plan.features.support_level.value,
                    "custom_branding": plan.features.custom_branding,
                    "api_access": plan.features.api_access,
                    "is_active": plan.is_active,
                    "external_product_id": plan.external_product_id,
                    "external_price_id": plan.external_price_id,
                    "created_at": plan.created_at,
                },
            )
            cursor.execute("SELECT * FROM billing_subscription_plans WHERE id = %s", (plan.id,))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription plan")
            return _row_to_plan(row)


def list_active_plans(repository: PlanRepository) -> list[SubscriptionPlan]:
    return [plan for plan in repository.list_all() if plan.is_active]


def find_by_price_id(repository: PlanRepository, price_id: Optional[str]) -> Optional[SubscriptionPlan]:
    """Resolve a plan from the provider's price reference."""

    if not price_id:
        return None
    for plan in repository.list_all():
        if plan.external_price_id == price_id:
            return plan
    return None


def seed_default_plans(
    repository: PlanRepository,
    plans: Optional[Iterable[SubscriptionPlan]] = None,
) -> list[SubscriptionPlan]:
    """Insert canonical plans that are missing; existing rows are left untouched."""

    existing_ids = {plan.id for plan in repository.list_all()}
    added: list[SubscriptionPlan] = []
    for plan in plans if plans is not None else build_plan_catalog().values():
        if plan.id in existing_ids:
            continue
        logger.info("Adding subscription plan %s: %s", plan.id, plan.name)
        added.append(repository.add(plan))
    return added
