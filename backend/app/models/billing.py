from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from app.models.base import TimestampedModel, UUIDModel


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL_ENDED = "trial_ended"


LIVE_STATUSES = (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)


class PlanChangeType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class LineItemKind(str, Enum):
    BASE_FEE = "base_fee"
    USAGE = "usage"
    PRORATION = "proration"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class SubscriptionPlan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscription_plans"

    name: str
    code: str = Field(unique=True, index=True)
    description: str | None = Field(default=None)
    price_monthly: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    price_quarterly: Decimal | None = Field(default=None, max_digits=14, decimal_places=2)
    price_yearly: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY)
    # None falls back to the configured default; 0 means no trial
    trial_days: int | None = Field(default=None)
    # -1 (or None) means unlimited
    max_users: int | None = Field(default=None)
    max_entities: int | None = Field(default=None)
    storage_quota_gb: Decimal | None = Field(default=None, max_digits=10, decimal_places=2)
    tier_rank: int = Field(default=0, index=True)
    is_active: bool = Field(default=True)


class Subscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscriptions"

    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    plan_id: UUID = Field(foreign_key="subscription_plans.id", index=True)
    status: SubscriptionStatus = Field(default=SubscriptionStatus.ACTIVE, index=True)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY)
    starts_at: datetime
    ends_at: datetime = Field(index=True)
    is_trial: bool = Field(default=False)
    trial_starts_at: datetime | None = Field(default=None)
    trial_ends_at: datetime | None = Field(default=None)
    auto_renew: bool = Field(default=True)

    current_user_count: int = Field(default=0)
    current_entity_count: int = Field(default=0)
    current_storage_gb: Decimal = Field(default=Decimal("0"), max_digits=10, decimal_places=2)

    next_billing_at: datetime | None = Field(default=None)
    last_billing_at: datetime | None = Field(default=None)
    cancelled_at: datetime | None = Field(default=None)
    cancellation_reason: str | None = Field(default=None)

    # Downgrades wait for the cycle boundary
    pending_plan_id: UUID | None = Field(default=None, foreign_key="subscription_plans.id")
    pending_change_at: datetime | None = Field(default=None)

    # Set to the tenant id while trial/active, NULL otherwise; unique so a
    # tenant can never hold two live subscriptions.
    live_key: str | None = Field(default=None, unique=True)
    version: int = Field(default=1)


class SubscriptionChangeRecord(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscription_change_records"

    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    from_plan_id: UUID = Field(foreign_key="subscription_plans.id")
    to_plan_id: UUID = Field(foreign_key="subscription_plans.id")
    change_type: PlanChangeType
    proration_amount: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    reason: str | None = Field(default=None)
    actor: str | None = Field(default=None)
    effective_at: datetime
    # downgrade that undid an upgrade of the same cycle; that upgrade is never charged
    reverts_change_id: UUID | None = Field(default=None, foreign_key="subscription_change_records.id")


class Invoice(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoices"

    number: str = Field(unique=True, index=True)
    tenant_id: UUID = Field(foreign_key="tenants.id", index=True)
    subscription_id: UUID = Field(foreign_key="subscriptions.id", index=True)
    period_start: datetime
    period_end: datetime
    subtotal: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    tax_amount: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    discount_amount: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    total: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT, index=True)
    discount_code: str | None = Field(default=None)
    due_date: datetime | None = Field(default=None)
    sent_at: datetime | None = Field(default=None)
    paid_at: datetime | None = Field(default=None)
    cancelled_at: datetime | None = Field(default=None)
    # "<subscription>:<start>:<end>" while not cancelled; the unique index is
    # the one-invoice-per-period guard.
    period_key: str | None = Field(default=None, unique=True)


class InvoiceLineItem(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoice_line_items"

    invoice_id: UUID = Field(foreign_key="invoices.id", index=True)
    line_number: int = Field(default=0)
    description: str
    kind: LineItemKind = Field(default=LineItemKind.USAGE)
    pricing_rule_id: UUID | None = Field(default=None, foreign_key="pricing_rules.id")
    change_record_id: UUID | None = Field(default=None, foreign_key="subscription_change_records.id", index=True)
    quantity: int = Field(default=1)
    unit_price: Decimal = Field(default=Decimal("0"), max_digits=16, decimal_places=4)
    amount: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)


class DiscountCode(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "discount_codes"

    code: str = Field(unique=True, index=True)
    discount_type: DiscountType = Field(default=DiscountType.PERCENTAGE)
    value: Decimal = Field(max_digits=14, decimal_places=2)
    valid_from: datetime
    valid_until: datetime | None = Field(default=None)
    usage_limit: int | None = Field(default=None)
    used_count: int = Field(default=0)
    is_active: bool = Field(default=True)
