from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlmodel import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models.pricing import PricingRule, PricingRuleType
from app.schemas.pricing import PricingRuleCreate, TierInput
from app.services.pricing import PricingRuleService


def _tiered_payload(plan_id, entity_id=None, **overrides) -> PricingRuleCreate:
    data = {
        "name": "Lab reports",
        "rule_type": PricingRuleType.TIERED,
        "plan_id": plan_id,
        "entity_id": entity_id,
        "tiers": [
            TierInput(min_units=0, max_units=10, unit_price=Decimal("1.00")),
            TierInput(min_units=10, max_units=None, unit_price=Decimal("0.50")),
        ],
    }
    data.update(overrides)
    return PricingRuleCreate(**data)


def test_create_and_evaluate_tiered_rule(db_session, factory):
    plan = factory.plan("basic", "100.00", 1)
    service = PricingRuleService(db_session)

    rule = service.create_rule(_tiered_payload(plan.id))

    assert [tier.min_units for tier in rule.tiers] == [0, 10]
    assert service.evaluate(rule.id, 15) == Decimal("12.50")


def test_invalid_tiers_are_not_persisted(db_session, factory):
    plan = factory.plan("basic", "100.00", 1)
    service = PricingRuleService(db_session)
    payload = _tiered_payload(
        plan.id,
        tiers=[
            TierInput(min_units=0, max_units=10, unit_price=Decimal("1")),
            TierInput(min_units=15, max_units=None, unit_price=Decimal("0.5")),
        ],
    )

    with pytest.raises(ValidationError):
        service.create_rule(payload)
    assert db_session.exec(select(PricingRule)).all() == []


def test_rule_for_unknown_plan_is_rejected(db_session):
    with pytest.raises(NotFoundError):
        PricingRuleService(db_session).create_rule(_tiered_payload(uuid4()))


def test_update_rule_replaces_children(db_session, factory):
    plan = factory.plan("basic", "100.00", 1)
    service = PricingRuleService(db_session)
    rule = service.create_rule(_tiered_payload(plan.id))

    updated = service.update_rule(
        rule.id,
        PricingRuleCreate(
            name="Lab reports (per unit)",
            rule_type=PricingRuleType.PER_UNIT,
            plan_id=plan.id,
            configuration={"unit_price": "2.00"},
        ),
    )

    assert updated.rule_type == PricingRuleType.PER_UNIT
    assert updated.tiers == []
    assert service.evaluate(rule.id, 15) == Decimal("30.00")


def test_deactivated_rules_drop_out_of_listing(db_session, factory):
    plan = factory.plan("basic", "100.00", 1)
    service = PricingRuleService(db_session)
    first = service.create_rule(_tiered_payload(plan.id, display_order=2))
    second = service.create_rule(
        PricingRuleCreate(name="Flat", rule_type=PricingRuleType.FLAT, plan_id=plan.id, configuration={"amount": "5"}, display_order=1)
    )

    assert [rule.id for rule in service.list_rules(plan_id=plan.id)] == [second.id, first.id]

    service.deactivate_rule(second.id)
    assert [rule.id for rule in service.list_rules(plan_id=plan.id)] == [first.id]
    assert len(service.list_rules(plan_id=plan.id, active_only=False)) == 2


def test_get_missing_rule_raises_not_found(db_session):
    with pytest.raises(NotFoundError):
        PricingRuleService(db_session).get_rule(uuid4())


def test_simulate_estimates_without_persisting(db_session, factory):
    plan = factory.plan("basic", "100.00", 1)
    reports = factory.entity("lab_report")
    service = PricingRuleService(db_session)
    service.create_rule(_tiered_payload(plan.id, entity_id=reports.id))

    estimate = service.simulate(plan.id, {reports.id: 15})

    assert estimate["base_price"] == Decimal("100.00")
    assert estimate["usage_charges"] == Decimal("12.50")
    assert estimate["estimated_total"] == Decimal("112.50")
    assert len(estimate["lines"]) == 2
