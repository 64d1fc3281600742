from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from app.models.usage import AlertType, UsageBillingStatus
from app.schemas.common import IDModel, Timestamped


class BillableEntityCreate(BaseModel):
    code: str
    name: str
    module: str | None = None


class BillableEntityRead(IDModel, Timestamped):
    code: str
    name: str
    module: str | None
    is_active: bool


class EntityLimitSet(BaseModel):
    entity_id: UUID
    usage_limit: int | None = None
    soft_limit: int | None = None


class EntityLimitRead(IDModel):
    plan_id: UUID
    entity_id: UUID
    usage_limit: int | None
    soft_limit: int | None


class UsageRecordCreate(BaseModel):
    subscription_id: UUID
    entity_id: UUID
    units: int
    complexity: str | None = None
    details: dict | None = None


class UsageRecordRead(IDModel, Timestamped):
    subscription_id: UUID
    entity_id: UUID
    units: int
    complexity: str | None
    recorded_at: datetime
    billing_status: UsageBillingStatus
    invoice_id: UUID | None
    details: dict | None = None


class UsageAlertRead(IDModel, Timestamped):
    subscription_id: UUID
    entity_id: UUID
    alert_type: AlertType
    threshold: int
    current_usage: int
    is_resolved: bool
    resolved_at: datetime | None


class UsageSummaryRead(BaseModel):
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    units_by_entity: dict[UUID, int]
    total_units: int
