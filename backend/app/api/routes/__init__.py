from . import health, invoices, plans, pricing, subscriptions, tenants, usage

__all__ = [
    "health",
    "invoices",
    "plans",
    "pricing",
    "subscriptions",
    "tenants",
    "usage",
]
