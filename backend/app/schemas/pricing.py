from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.pricing import PricingRuleType
from app.schemas.common import IDModel, Timestamped


# Per-type configuration payloads stored in PricingRule.configuration
class RuleConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


class FlatConfig(RuleConfig):
    amount: Decimal = Field(ge=0)


class PerUnitConfig(RuleConfig):
    unit_price: Decimal = Field(ge=0)


class TieredConfig(RuleConfig):
    pass


class MultiplierConfig(RuleConfig):
    base_unit_price: Decimal = Field(ge=0)


class PercentageConfig(RuleConfig):
    percentage: Decimal = Field(ge=0)


class BundleConfig(RuleConfig):
    bundle_size: int = Field(gt=0)
    bundle_price: Decimal = Field(ge=0)
    overage_unit_price: Decimal = Field(ge=0)


RULE_CONFIG_MODELS: dict[PricingRuleType, type[RuleConfig]] = {
    PricingRuleType.FLAT: FlatConfig,
    PricingRuleType.PER_UNIT: PerUnitConfig,
    PricingRuleType.TIERED: TieredConfig,
    PricingRuleType.MULTIPLIER: MultiplierConfig,
    PricingRuleType.PERCENTAGE: PercentageConfig,
    PricingRuleType.BUNDLE: BundleConfig,
}


class TierInput(BaseModel):
    min_units: int = Field(ge=0)
    max_units: int | None = None
    unit_price: Decimal = Field(ge=0)


class MultiplierInput(BaseModel):
    complexity_level: str = Field(min_length=1, max_length=20)
    multiplier: Decimal = Field(ge=0)


class PricingRuleCreate(BaseModel):
    name: str
    rule_type: PricingRuleType
    plan_id: UUID | None = None
    entity_id: UUID | None = None
    configuration: dict = {}
    tiers: list[TierInput] = []
    multipliers: list[MultiplierInput] = []
    display_order: int = 0
    is_active: bool = True


class TierRead(IDModel):
    min_units: int
    max_units: int | None
    unit_price: Decimal


class MultiplierRead(IDModel):
    complexity_level: str
    multiplier: Decimal


class PricingRuleRead(IDModel, Timestamped):
    name: str
    rule_type: PricingRuleType
    plan_id: UUID | None
    entity_id: UUID | None
    configuration: dict | None
    display_order: int
    is_active: bool
    tiers: list[TierRead] = []
    multipliers: list[MultiplierRead] = []


class EvaluateRequest(BaseModel):
    units: int = 0
    complexity: str | None = None
    basis: Decimal | None = None


class EvaluateRead(BaseModel):
    rule_id: UUID
    rule_type: PricingRuleType
    units: int
    amount: Decimal


class SimulationRequest(BaseModel):
    plan_id: UUID
    units_by_entity: dict[UUID, int] = {}
    complexity: str | None = None


class SimulationLine(BaseModel):
    description: str
    amount: Decimal
    pricing_rule_id: UUID | None = None


class SimulationRead(BaseModel):
    plan_id: UUID
    plan_name: str
    base_price: Decimal
    usage_charges: Decimal
    estimated_total: Decimal
    lines: list[SimulationLine] = []
