"""Typed errors raised by the billing engine.

Every engine operation either returns its value or raises exactly one of the
subclasses below. The API layer maps them to HTTP responses.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base error for all billing engine failures."""

    error_kind = "internal"
    status_code = 500

    def __init__(self, message: str = "Billing operation failed", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BillingError):
    """Raised when input is malformed (negative units, tier gaps, bad discount)."""

    error_kind = "validation"
    status_code = 422


class NotFoundError(BillingError):
    """Raised when a subscription, plan, rule, alert or invoice does not exist."""

    error_kind = "not_found"
    status_code = 404


class ConflictError(BillingError):
    """Raised on invalid state transitions and duplicate invoices."""

    error_kind = "conflict"
    status_code = 409


class InternalError(BillingError):
    """Raised when persistence fails. The only kind worth retrying."""

    error_kind = "internal"
    status_code = 500
