# noqa: F401 to ensure models are imported for metadata
from app.models.billing import (
    DiscountCode,
    Invoice,
    InvoiceLineItem,
    Subscription,
    SubscriptionChangeRecord,
    SubscriptionPlan,
)
from app.models.pricing import ComplexityMultiplier, PricingRule, PricingTier
from app.models.tenant import Tenant
from app.models.usage import BillableEntity, PlanEntityLimit, UsageAggregate, UsageAlert, UsageRecord

__all__ = [
    "DiscountCode",
    "Invoice",
    "InvoiceLineItem",
    "Subscription",
    "SubscriptionChangeRecord",
    "SubscriptionPlan",
    "ComplexityMultiplier",
    "PricingRule",
    "PricingTier",
    "Tenant",
    "BillableEntity",
    "PlanEntityLimit",
    "UsageAggregate",
    "UsageAlert",
    "UsageRecord",
]
