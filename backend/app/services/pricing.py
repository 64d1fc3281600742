"""Pricing rule evaluation.

``evaluate_rule`` is pure: it turns a rule definition, a unit count, an
optional complexity label and (for percentage rules) a basis amount into a
non-negative amount rounded half-up to cents. Rounding happens exactly once,
at the end of each rule's computation.

``PricingRuleService`` persists rules, validating the type-specific
configuration when a rule is saved so evaluation never sees a gap in tiers.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Protocol, Sequence
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session, select

from app.core.exceptions import NotFoundError, ValidationError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.billing import BillingCycle, SubscriptionPlan
from app.models.pricing import ComplexityMultiplier, PricingRule, PricingRuleType, PricingTier
from app.models.usage import BillableEntity
from app.schemas.pricing import (
    RULE_CONFIG_MODELS,
    MultiplierInput,
    PricingRuleCreate,
    RuleConfig,
    TierInput,
)
from app.utils.money import ZERO, non_negative, quantize2, to_decimal

DEFAULT_MULTIPLIER = Decimal("1.0")


class TierLike(Protocol):
    min_units: int
    max_units: int | None
    unit_price: Decimal


class MultiplierLike(Protocol):
    complexity_level: str
    multiplier: Decimal


@dataclass
class RuleDefinition:
    """Unsaved rule, shaped like a ``PricingRule`` row for evaluation."""

    rule_type: PricingRuleType
    configuration: dict = field(default_factory=dict)
    tiers: list[TierInput] = field(default_factory=list)
    multipliers: list[MultiplierInput] = field(default_factory=list)


def cycle_price(plan: SubscriptionPlan, billing_cycle: BillingCycle) -> Decimal:
    """Price of one billing cycle of ``plan``."""
    if billing_cycle == BillingCycle.YEARLY:
        return quantize2(plan.price_yearly)
    if billing_cycle == BillingCycle.QUARTERLY:
        if plan.price_quarterly is not None:
            return quantize2(plan.price_quarterly)
        return quantize2(to_decimal(plan.price_monthly) * 3)
    return quantize2(plan.price_monthly)


# ---------------------------------------------------------------------------
# Validation (save time)
# ---------------------------------------------------------------------------

def parse_config(rule_type: PricingRuleType, configuration: Mapping[str, Any] | None) -> RuleConfig:
    model = RULE_CONFIG_MODELS[PricingRuleType(rule_type)]
    try:
        return model.model_validate(dict(configuration or {}))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid configuration for {PricingRuleType(rule_type).value} rule",
            {"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc


def validate_tiers(tiers: Sequence[TierLike]) -> list[TierLike]:
    """Tiers must cover [0, inf) contiguously; returns them sorted by min_units."""
    if not tiers:
        raise ValidationError("Tiered rule needs at least one tier")
    ordered = sorted(tiers, key=lambda tier: tier.min_units)
    expected_min = 0
    for index, tier in enumerate(ordered):
        is_last = index == len(ordered) - 1
        if tier.min_units != expected_min:
            kind = "gap" if tier.min_units > expected_min else "overlap"
            raise ValidationError(
                f"Tier {kind} at unit {expected_min}",
                {"tier_index": index, "expected_min": expected_min, "min_units": tier.min_units},
            )
        if to_decimal(tier.unit_price) < 0:
            raise ValidationError("Tier unit price must not be negative", {"tier_index": index})
        if tier.max_units is None:
            if not is_last:
                raise ValidationError("Only the last tier may be unbounded", {"tier_index": index})
            break
        if tier.max_units <= tier.min_units:
            raise ValidationError(
                "Tier max_units must be greater than min_units",
                {"tier_index": index, "min_units": tier.min_units, "max_units": tier.max_units},
            )
        if is_last:
            raise ValidationError("Last tier must be unbounded (max_units = null)", {"tier_index": index})
        expected_min = tier.max_units
    return ordered


def validate_multipliers(multipliers: Sequence[MultiplierLike]) -> None:
    seen: set[str] = set()
    for item in multipliers:
        label = item.complexity_level.strip().lower()
        if not label:
            raise ValidationError("Complexity label must not be empty")
        if label in seen:
            raise ValidationError(f"Duplicate complexity label '{label}'")
        if to_decimal(item.multiplier) < 0:
            raise ValidationError(f"Multiplier for '{label}' must not be negative")
        seen.add(label)


def validate_rule_definition(
    rule_type: PricingRuleType,
    configuration: Mapping[str, Any] | None,
    tiers: Sequence[TierLike] = (),
    multipliers: Sequence[MultiplierLike] = (),
) -> RuleConfig:
    rule_type = PricingRuleType(rule_type)
    config = parse_config(rule_type, configuration)
    if rule_type == PricingRuleType.TIERED:
        validate_tiers(tiers)
    elif tiers:
        raise ValidationError("Only tiered rules accept tiers")
    if rule_type == PricingRuleType.MULTIPLIER:
        validate_multipliers(multipliers)
    elif multipliers:
        raise ValidationError("Only multiplier rules accept complexity multipliers")
    return config


# ---------------------------------------------------------------------------
# Evaluation (pure)
# ---------------------------------------------------------------------------

def tier_overlaps(tiers: Iterable[TierLike], units: int) -> list[int]:
    """Units falling into each tier, in ascending ``min_units`` order."""
    overlaps: list[int] = []
    for tier in sorted(tiers, key=lambda t: t.min_units):
        upper = units if tier.max_units is None else min(units, tier.max_units)
        overlaps.append(max(0, upper - tier.min_units))
    return overlaps


def complexity_factor(multipliers: Iterable[MultiplierLike], complexity: str | None) -> Decimal:
    if not complexity:
        return DEFAULT_MULTIPLIER
    wanted = complexity.strip().lower()
    for item in multipliers:
        if item.complexity_level.strip().lower() == wanted:
            return to_decimal(item.multiplier)
    return DEFAULT_MULTIPLIER


def evaluate_rule(
    rule: Any,
    units: int,
    complexity: str | None = None,
    basis: Decimal | None = None,
) -> Decimal:
    """Amount charged by ``rule`` for ``units``.

    ``rule`` is a ``PricingRule`` row or a ``RuleDefinition``; anything with
    ``rule_type``, ``configuration``, ``tiers`` and ``multipliers`` works.
    """
    if units < 0:
        raise ValidationError("Units must not be negative", {"units": units})
    rule_type = PricingRuleType(rule.rule_type)
    config = parse_config(rule_type, rule.configuration)

    if rule_type == PricingRuleType.FLAT:
        raw = config.amount
    elif rule_type == PricingRuleType.PER_UNIT:
        raw = config.unit_price * units
    elif rule_type == PricingRuleType.TIERED:
        tiers = sorted(rule.tiers or [], key=lambda t: t.min_units)
        raw = sum(
            (overlap * to_decimal(tier.unit_price) for tier, overlap in zip(tiers, tier_overlaps(tiers, units))),
            Decimal("0"),
        )
    elif rule_type == PricingRuleType.MULTIPLIER:
        raw = config.base_unit_price * units * complexity_factor(rule.multipliers or [], complexity)
    elif rule_type == PricingRuleType.PERCENTAGE:
        if basis is None:
            raise ValidationError("Percentage rules need a basis amount")
        raw = to_decimal(basis) * (config.percentage / Decimal("100"))
    else:
        full_bundles, overage = divmod(units, config.bundle_size)
        raw = full_bundles * config.bundle_price + overage * config.overage_unit_price

    return non_negative(quantize2(raw))


def rule_units(rule: PricingRule, units_by_entity: Mapping[UUID, int]) -> int:
    """Units a rule bills: its own entity's aggregate, or everything if unscoped."""
    if rule.entity_id is None:
        return sum(units_by_entity.values())
    return int(units_by_entity.get(rule.entity_id, 0))


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class PricingRuleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_rule(self, rule_id: UUID) -> PricingRule:
        rule = self.session.get(PricingRule, rule_id)
        if not rule:
            raise NotFoundError("Pricing rule not found", {"rule_id": str(rule_id)})
        return rule

    def list_rules(self, plan_id: UUID | None = None, active_only: bool = True) -> list[PricingRule]:
        statement = select(PricingRule)
        if plan_id is not None:
            statement = statement.where(PricingRule.plan_id == plan_id)
        if active_only:
            statement = statement.where(PricingRule.is_active.is_(True))
        statement = statement.order_by(PricingRule.display_order, PricingRule.created_at)
        return list(self.session.exec(statement).all())

    def _check_references(self, payload: PricingRuleCreate) -> None:
        if payload.plan_id is not None and not self.session.get(SubscriptionPlan, payload.plan_id):
            raise NotFoundError("Subscription plan not found", {"plan_id": str(payload.plan_id)})
        if payload.entity_id is not None and not self.session.get(BillableEntity, payload.entity_id):
            raise NotFoundError("Billable entity not found", {"entity_id": str(payload.entity_id)})

    def _apply(self, rule: PricingRule, payload: PricingRuleCreate, config: RuleConfig) -> None:
        rule.name = payload.name
        rule.rule_type = payload.rule_type
        rule.plan_id = payload.plan_id
        rule.entity_id = payload.entity_id
        rule.configuration = config.model_dump(mode="json")
        rule.display_order = payload.display_order
        rule.is_active = payload.is_active
        rule.tiers = [
            PricingTier(min_units=tier.min_units, max_units=tier.max_units, unit_price=tier.unit_price)
            for tier in sorted(payload.tiers, key=lambda t: t.min_units)
        ]
        rule.multipliers = [
            ComplexityMultiplier(
                complexity_level=item.complexity_level.strip().lower(),
                multiplier=item.multiplier,
            )
            for item in payload.multipliers
        ]

    def create_rule(self, payload: PricingRuleCreate) -> PricingRule:
        config = validate_rule_definition(payload.rule_type, payload.configuration, payload.tiers, payload.multipliers)
        self._check_references(payload)
        rule = PricingRule(name=payload.name, rule_type=payload.rule_type)
        with atomic(self.session, "create_pricing_rule"):
            self._apply(rule, payload, config)
            self.session.add(rule)
        self.session.refresh(rule)
        logger.info("Regra de preço criada: %s (%s)", rule.id, rule.rule_type.value)
        return rule

    def update_rule(self, rule_id: UUID, payload: PricingRuleCreate) -> PricingRule:
        rule = self.get_rule(rule_id)
        config = validate_rule_definition(payload.rule_type, payload.configuration, payload.tiers, payload.multipliers)
        self._check_references(payload)
        with atomic(self.session, "update_pricing_rule"):
            self._apply(rule, payload, config)
            self.session.add(rule)
        self.session.refresh(rule)
        return rule

    def deactivate_rule(self, rule_id: UUID) -> PricingRule:
        rule = self.get_rule(rule_id)
        with atomic(self.session, "deactivate_pricing_rule"):
            rule.is_active = False
            self.session.add(rule)
        self.session.refresh(rule)
        return rule

    def evaluate(
        self,
        rule_id: UUID,
        units: int,
        complexity: str | None = None,
        basis: Decimal | None = None,
    ) -> Decimal:
        return evaluate_rule(self.get_rule(rule_id), units, complexity=complexity, basis=basis)

    def simulate(
        self,
        plan_id: UUID,
        units_by_entity: Mapping[UUID, int],
        complexity: str | None = None,
    ) -> dict[str, Any]:
        """Estimate one cycle's charges for hypothetical usage; persists nothing."""
        plan = self.session.get(SubscriptionPlan, plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found", {"plan_id": str(plan_id)})
        if any(units < 0 for units in units_by_entity.values()):
            raise ValidationError("Units must not be negative")

        base_price = cycle_price(plan, plan.billing_cycle)
        lines: list[dict[str, Any]] = [
            {"description": f"{plan.name} - Base Fee", "amount": base_price, "pricing_rule_id": None}
        ]
        usage_charges = ZERO
        for rule in self.list_rules(plan_id=plan.id):
            amount = evaluate_rule(rule, rule_units(rule, units_by_entity), complexity=complexity, basis=base_price)
            if amount > 0:
                lines.append({"description": rule.name, "amount": amount, "pricing_rule_id": rule.id})
                usage_charges += amount
        return {
            "plan_id": plan.id,
            "plan_name": plan.name,
            "base_price": base_price,
            "usage_charges": quantize2(usage_charges),
            "estimated_total": quantize2(base_price + usage_charges),
            "lines": lines,
        }
