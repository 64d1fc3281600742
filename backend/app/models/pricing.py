from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field, Relationship

from app.models.base import TimestampedModel, UUIDModel


class PricingRuleType(str, Enum):
    FLAT = "flat"
    PER_UNIT = "per_unit"
    TIERED = "tiered"
    MULTIPLIER = "multiplier"
    PERCENTAGE = "percentage"
    BUNDLE = "bundle"


class PricingRule(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "pricing_rules"

    plan_id: UUID | None = Field(default=None, foreign_key="subscription_plans.id", index=True)
    # Usage of this entity feeds the rule; NULL means all entities of the subscription
    entity_id: UUID | None = Field(default=None, foreign_key="billable_entities.id", index=True)
    name: str
    rule_type: PricingRuleType
    configuration: dict | None = Field(default_factory=dict, sa_type=JSON)
    display_order: int = Field(default=0)
    is_active: bool = Field(default=True)

    tiers: List["PricingTier"] = Relationship(
        back_populates="rule",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "PricingTier.min_units"},
    )
    multipliers: List["ComplexityMultiplier"] = Relationship(
        back_populates="rule",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class PricingTier(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "pricing_tiers"

    rule_id: UUID = Field(foreign_key="pricing_rules.id", index=True)
    min_units: int
    max_units: int | None = Field(default=None)
    unit_price: Decimal = Field(max_digits=16, decimal_places=4)

    rule: Optional[PricingRule] = Relationship(back_populates="tiers")


class ComplexityMultiplier(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "complexity_multipliers"

    rule_id: UUID = Field(foreign_key="pricing_rules.id", index=True)
    complexity_level: str = Field(max_length=20)
    multiplier: Decimal = Field(default=Decimal("1"), max_digits=10, decimal_places=4)

    rule: Optional[PricingRule] = Relationship(back_populates="multipliers")
