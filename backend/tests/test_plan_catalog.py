from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError

from backend.app.plans import (
    CatalogPlanRepository,
    Money,
    PlanId,
    SupportLevel,
    build_plan_catalog,
    find_by_price_id,
    get_plan_definition,
    list_active_plans,
    seed_default_plans,
)


def test_catalog_contains_canonical_plans_with_limits() -> None:
    catalog = build_plan_catalog()

    assert set(catalog) == {"free", "pro", "enterprise"}

    free = catalog["free"]
    assert free.price.amount == Decimal("0")
    assert free.features.max_invoices == 19
    assert free.features.max_users == 1
    assert free.features.support_level == SupportLevel.COMMUNITY
    assert free.is_free is True

    pro = catalog["pro"]
    assert pro.price.amount == Decimal("29")
    assert pro.features.max_invoices == 1000
    assert pro.features.max_users == 10
    assert pro.features.custom_branding is True
    assert pro.features.api_access is True

    enterprise = catalog["enterprise"]
    assert enterprise.price.amount == Decimal("99")
    assert enterprise.features.max_invoices == 0
    assert enterprise.features.max_users == 0
    assert enterprise.features.support_level == SupportLevel.PRIORITY


def test_paid_plans_need_price_ids_to_be_purchasable() -> None:
    unconfigured = build_plan_catalog()
    configured = build_plan_catalog(pro_price_id="price_pro", enterprise_price_id="price_ent")

    assert unconfigured["pro"].is_purchasable is False
    assert configured["pro"].is_purchasable is True
    assert configured["enterprise"].external_price_id == "price_ent"
    assert configured["free"].is_purchasable is False


def test_money_validation() -> None:
    assert Money(amount=Decimal("5"), currency=" usd ").currency == "USD"
    assert Money.from_cents(2900).amount == Decimal("29")

    with pytest.raises(ValidationError):
        Money(amount=Decimal("-1"))
    with pytest.raises(ValidationError):
        Money(amount=Decimal("1"), currency="  ")


def test_get_plan_definition_unknown_plan() -> None:
    assert get_plan_definition(PlanId.PRO.value).name == "Pro Plan"
    with pytest.raises(KeyError):
        get_plan_definition("platinum")


def test_seed_default_plans_only_adds_missing_plans() -> None:
    edited = build_plan_catalog()["pro"].model_copy(update={"name": "Pro (legacy)"})
    repository = CatalogPlanRepository([edited])

    added = seed_default_plans(repository, build_plan_catalog(pro_price_id="price_pro").values())

    assert {plan.id for plan in added} == {"free", "enterprise"}
    assert repository.get("pro").name == "Pro (legacy)"
    assert seed_default_plans(repository) == []


def test_find_by_price_id_and_active_listing() -> None:
    catalog = build_plan_catalog(pro_price_id="price_pro")
    retired = catalog["enterprise"].model_copy(update={"is_active": False})
    repository = CatalogPlanRepository([catalog["free"], catalog["pro"], retired])

    assert find_by_price_id(repository, "price_pro").id == "pro"
    assert find_by_price_id(repository, "price_missing") is None
    assert find_by_price_id(repository, None) is None
    assert [plan.id for plan in list_active_plans(repository)] == ["free", "pro"]
