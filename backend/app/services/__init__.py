from app.services.invoicing import DiscountCodeService, InvoiceGenerator
from app.services.plans import PlanService
from app.services.pricing import PricingRuleService
from app.services.subscription import SubscriptionLifecycleManager
from app.services.tenant import TenantService
from app.services.usage import UsageMeter

__all__ = [
    "DiscountCodeService",
    "InvoiceGenerator",
    "PlanService",
    "PricingRuleService",
    "SubscriptionLifecycleManager",
    "TenantService",
    "UsageMeter",
]
