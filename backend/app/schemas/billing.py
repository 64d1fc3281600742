from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.billing import (
    BillingCycle,
    DiscountType,
    InvoiceStatus,
    LineItemKind,
    PlanChangeType,
    SubscriptionStatus,
)
from app.schemas.common import IDModel, Timestamped


class TenantCreate(BaseModel):
    name: str
    slug: str


class TenantRead(IDModel, Timestamped):
    name: str
    slug: str
    is_active: bool


class PlanCreate(BaseModel):
    name: str
    code: str
    description: str | None = None
    price_monthly: Decimal = Field(ge=0)
    price_quarterly: Decimal | None = Field(default=None, ge=0)
    price_yearly: Decimal = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int | None = Field(default=None, ge=0)
    max_users: int | None = None
    max_entities: int | None = None
    storage_quota_gb: Decimal | None = None
    tier_rank: int = 0


class PlanUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    price_monthly: Decimal | None = Field(default=None, ge=0)
    price_quarterly: Decimal | None = Field(default=None, ge=0)
    price_yearly: Decimal | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle | None = None
    trial_days: int | None = Field(default=None, ge=0)
    max_users: int | None = None
    max_entities: int | None = None
    storage_quota_gb: Decimal | None = None
    tier_rank: int | None = None
    is_active: bool | None = None


class PlanRead(IDModel, Timestamped):
    name: str
    code: str
    description: str | None
    price_monthly: Decimal
    price_quarterly: Decimal | None
    price_yearly: Decimal
    billing_cycle: BillingCycle
    trial_days: int | None
    max_users: int | None
    max_entities: int | None
    storage_quota_gb: Decimal | None
    tier_rank: int
    is_active: bool


class SubscriptionCreate(BaseModel):
    tenant_id: UUID
    plan_id: UUID
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_trial: bool = False


class SubscriptionRead(IDModel, Timestamped):
    tenant_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    starts_at: datetime
    ends_at: datetime
    is_trial: bool
    trial_starts_at: datetime | None
    trial_ends_at: datetime | None
    auto_renew: bool
    current_user_count: int
    current_entity_count: int
    current_storage_gb: Decimal
    next_billing_at: datetime | None
    last_billing_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    pending_plan_id: UUID | None
    pending_change_at: datetime | None


class PlanChangeRequest(BaseModel):
    plan_id: UUID
    reason: str | None = None
    actor: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class ChangeRecordRead(IDModel, Timestamped):
    subscription_id: UUID
    from_plan_id: UUID
    to_plan_id: UUID
    change_type: PlanChangeType
    proration_amount: Decimal
    reason: str | None
    actor: str | None
    effective_at: datetime
    reverts_change_id: UUID | None = None


class PlanChangeRead(BaseModel):
    subscription: SubscriptionRead
    change: ChangeRecordRead
    applied: bool


class SweepRequest(BaseModel):
    now: datetime | None = None


class SweepRead(BaseModel):
    renewed: list[UUID] = []
    expired: list[UUID] = []
    trial_ended: list[UUID] = []


class UsageSnapshotUpdate(BaseModel):
    user_count: int = Field(ge=0)
    entity_count: int = Field(ge=0)
    storage_gb: Decimal = Field(ge=0)


class CapacityRead(BaseModel):
    subscription_id: UUID
    current_users: int
    max_users: int | None
    current_entities: int
    max_entities: int | None
    current_storage_gb: Decimal
    max_storage_gb: Decimal | None
    user_percent: Decimal | None = None
    entity_percent: Decimal | None = None
    storage_percent: Decimal | None = None
    is_over_limit: bool = False
    days_until_renewal: int


class InvoiceGenerateRequest(BaseModel):
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    discount_code: str | None = None
    finalize: bool = False


class LineItemRead(IDModel):
    line_number: int
    description: str
    kind: LineItemKind
    pricing_rule_id: UUID | None
    change_record_id: UUID | None = None
    quantity: int
    unit_price: Decimal
    amount: Decimal
    details: dict | None = None


class InvoiceRead(IDModel, Timestamped):
    number: str
    tenant_id: UUID
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    status: InvoiceStatus
    discount_code: str | None
    due_date: datetime | None
    sent_at: datetime | None
    paid_at: datetime | None
    cancelled_at: datetime | None
    line_items: list[LineItemRead] = []


class DiscountCodeCreate(BaseModel):
    code: str
    discount_type: DiscountType = DiscountType.PERCENTAGE
    value: Decimal = Field(gt=0)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    usage_limit: int | None = Field(default=None, ge=0)


class DiscountCodeRead(IDModel, Timestamped):
    code: str
    discount_type: DiscountType
    value: Decimal
    valid_from: datetime
    valid_until: datetime | None
    usage_limit: int | None
    used_count: int
    is_active: bool
