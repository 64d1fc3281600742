from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class UsageBillingStatus(str, Enum):
    UNBILLED = "unbilled"
    BILLED = "billed"
    INVOICED = "invoiced"


class AlertType(str, Enum):
    SOFT_LIMIT = "soft_limit"
    HARD_LIMIT = "hard_limit"


class BillableEntity(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "billable_entities"

    code: str = Field(unique=True, index=True)
    name: str
    module: str | None = Field(default=None, index=True)
    is_active: bool = Field(default=True)


class PlanEntityLimit(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "plan_entity_limits"
    __table_args__ = (UniqueConstraint("plan_id", "entity_id", name="uq_plan_entity_limit"),)

    plan_id: UUID = Field(foreign_key="subscription_plans.id", index=True)
    entity_id: UUID = Field(foreign_key="billable_entities.id", index=True)
    usage_limit: int | None = Field(default=None)
    soft_limit: int | None = Field(default=None)


class UsageRecord(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "usage_records"

    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    entity_id: UUID = Field(foreign_key="billable_entities.id", index=True)
    units: int
    complexity: str | None = Field(default=None, max_length=20)
    recorded_at: datetime = Field(index=True)
    billing_status: UsageBillingStatus = Field(default=UsageBillingStatus.UNBILLED, index=True)
    invoice_id: UUID | None = Field(default=None, foreign_key="invoices.id", index=True)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)


class UsageAggregate(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "usage_aggregates"
    __table_args__ = (
        UniqueConstraint("subscription_id", "entity_id", "period_start", name="uq_usage_aggregate_period"),
    )

    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    entity_id: UUID = Field(foreign_key="billable_entities.id", index=True)
    period_start: datetime
    period_end: datetime
    units: int = Field(default=0)


class UsageAlert(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "usage_alerts"

    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    entity_id: UUID = Field(foreign_key="billable_entities.id", index=True)
    alert_type: AlertType
    threshold: int
    current_usage: int
    is_resolved: bool = Field(default=False, index=True)
    resolved_at: datetime | None = Field(default=None)
    # "<subscription>:<entity>:<type>" while unresolved, NULL once resolved
    open_key: str | None = Field(default=None, unique=True)
