from app.schemas import billing, common, pricing, usage

__all__ = [
    "billing",
    "common",
    "pricing",
    "usage",
]
