from __future__ import annotations

from decimal import Decimal

import pytest

from app.core.exceptions import ValidationError
from app.models.pricing import PricingRuleType
from app.schemas.pricing import MultiplierInput, TierInput
from app.services.pricing import (
    RuleDefinition,
    evaluate_rule,
    tier_overlaps,
    validate_rule_definition,
    validate_tiers,
)


def _tiers(*bounds: tuple[int, int | None, str]) -> list[TierInput]:
    return [TierInput(min_units=lo, max_units=hi, unit_price=Decimal(price)) for lo, hi, price in bounds]


TWO_TIERS = _tiers((0, 10, "1.00"), (10, None, "0.50"))
THREE_TIERS = _tiers((0, 100, "2.00"), (100, 500, "1.50"), (500, None, "1.00"))


def test_flat_rule_ignores_units():
    rule = RuleDefinition(PricingRuleType.FLAT, {"amount": "49.90"})
    assert evaluate_rule(rule, 0) == Decimal("49.90")
    assert evaluate_rule(rule, 1000) == Decimal("49.90")


def test_per_unit_rule_multiplies_and_rounds_half_up():
    rule = RuleDefinition(PricingRuleType.PER_UNIT, {"unit_price": "0.125"})
    assert evaluate_rule(rule, 3) == Decimal("0.38")  # 0.375 rounds up
    assert evaluate_rule(rule, 0) == Decimal("0.00")


def test_tiered_rule_matches_worked_example():
    rule = RuleDefinition(PricingRuleType.TIERED, tiers=TWO_TIERS)
    assert evaluate_rule(rule, 15) == Decimal("12.50")


@pytest.mark.parametrize("units", [0, 1, 99, 100, 101, 499, 500, 501, 12345])
def test_tier_overlaps_partition_units(units):
    assert sum(tier_overlaps(THREE_TIERS, units)) == units


def test_tiered_total_is_additive_across_a_boundary():
    rule = RuleDefinition(PricingRuleType.TIERED, tiers=THREE_TIERS)
    below = evaluate_rule(rule, 100)
    total = evaluate_rule(rule, 160)
    # the extra 60 units all land in the second tier
    assert total - below == Decimal("90.00")
    assert total == Decimal("290.00")


def test_multiplier_rule_uses_case_insensitive_label():
    rule = RuleDefinition(
        PricingRuleType.MULTIPLIER,
        {"base_unit_price": "10"},
        multipliers=[
            MultiplierInput(complexity_level="high", multiplier=Decimal("1.5")),
            MultiplierInput(complexity_level="low", multiplier=Decimal("0.8")),
        ],
    )
    assert evaluate_rule(rule, 4, complexity="HIGH") == Decimal("60.00")
    assert evaluate_rule(rule, 4, complexity="low") == Decimal("32.00")


def test_multiplier_rule_defaults_to_one_for_unknown_label():
    rule = RuleDefinition(
        PricingRuleType.MULTIPLIER,
        {"base_unit_price": "10"},
        multipliers=[MultiplierInput(complexity_level="high", multiplier=Decimal("2"))],
    )
    assert evaluate_rule(rule, 3, complexity="medium") == Decimal("30.00")
    assert evaluate_rule(rule, 3) == Decimal("30.00")


def test_percentage_rule_needs_basis():
    rule = RuleDefinition(PricingRuleType.PERCENTAGE, {"percentage": "18"})
    assert evaluate_rule(rule, 0, basis=Decimal("100.00")) == Decimal("18.00")
    with pytest.raises(ValidationError):
        evaluate_rule(rule, 0)


def test_bundle_rule_charges_bundles_then_overage():
    rule = RuleDefinition(
        PricingRuleType.BUNDLE,
        {"bundle_size": 100, "bundle_price": "80.00", "overage_unit_price": "1.25"},
    )
    assert evaluate_rule(rule, 250) == Decimal("222.50")
    assert evaluate_rule(rule, 99) == Decimal("123.75")
    assert evaluate_rule(rule, 0) == Decimal("0.00")


def test_negative_units_are_rejected():
    rule = RuleDefinition(PricingRuleType.PER_UNIT, {"unit_price": "1"})
    with pytest.raises(ValidationError):
        evaluate_rule(rule, -1)


def test_tiers_with_gap_are_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_tiers(_tiers((0, 10, "1"), (12, None, "0.5")))
    assert "gap" in exc.value.message


def test_tiers_with_overlap_are_rejected():
    with pytest.raises(ValidationError) as exc:
        validate_tiers(_tiers((0, 10, "1"), (8, None, "0.5")))
    assert "overlap" in exc.value.message


def test_only_last_tier_may_be_unbounded():
    with pytest.raises(ValidationError):
        validate_tiers(_tiers((0, None, "1"), (10, None, "0.5")))
    with pytest.raises(ValidationError):
        validate_tiers(_tiers((0, 10, "1"), (10, 20, "0.5")))


def test_tiers_must_start_at_zero():
    with pytest.raises(ValidationError):
        validate_tiers(_tiers((1, None, "1")))


def test_unknown_configuration_keys_are_rejected():
    with pytest.raises(ValidationError):
        validate_rule_definition(PricingRuleType.FLAT, {"amount": "1", "bogus": 2})
    with pytest.raises(ValidationError):
        validate_rule_definition(PricingRuleType.BUNDLE, {"bundle_size": 0, "bundle_price": "1", "overage_unit_price": "1"})


def test_duplicate_complexity_labels_are_rejected():
    with pytest.raises(ValidationError):
        validate_rule_definition(
            PricingRuleType.MULTIPLIER,
            {"base_unit_price": "1"},
            multipliers=[
                MultiplierInput(complexity_level="High", multiplier=Decimal("1.5")),
                MultiplierInput(complexity_level="high ", multiplier=Decimal("2")),
            ],
        )
