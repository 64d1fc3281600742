"""Translations between ``SubscriptionStatus`` and the status vocabularies
other modules speak.

The lifecycle enum is the only source of truth; onboarding screens get a
coarser view and older integrations may still send their own status names.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from app.core.exceptions import ValidationError
from app.models.billing import Subscription, SubscriptionStatus


class OnboardingState(str, Enum):
    IN_TRIAL = "in_trial"
    ACTIVE = "active"
    LAPSED = "lapsed"
    CANCELLED = "cancelled"


ONBOARDING_STATES = {
    SubscriptionStatus.TRIAL: OnboardingState.IN_TRIAL,
    SubscriptionStatus.ACTIVE: OnboardingState.ACTIVE,
    SubscriptionStatus.EXPIRED: OnboardingState.LAPSED,
    SubscriptionStatus.TRIAL_ENDED: OnboardingState.LAPSED,
    SubscriptionStatus.CANCELLED: OnboardingState.CANCELLED,
}

# Names used by older integrations, normalized to lowercase without separators.
LEGACY_STATUSES = {
    "trial": SubscriptionStatus.TRIAL,
    "intrial": SubscriptionStatus.TRIAL,
    "active": SubscriptionStatus.ACTIVE,
    "paid": SubscriptionStatus.ACTIVE,
    "successful": SubscriptionStatus.ACTIVE,
    "succeeded": SubscriptionStatus.ACTIVE,
    "approved": SubscriptionStatus.ACTIVE,
    "expired": SubscriptionStatus.EXPIRED,
    "lapsed": SubscriptionStatus.EXPIRED,
    "trialended": SubscriptionStatus.TRIAL_ENDED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "canceled": SubscriptionStatus.CANCELLED,
}


@dataclass(frozen=True)
class OnboardingSubscriptionView:
    subscription_id: UUID
    tenant_id: UUID
    plan_id: UUID
    state: OnboardingState
    is_trial: bool
    ends_at: datetime
    days_remaining: int


def onboarding_state(status: SubscriptionStatus) -> OnboardingState:
    return ONBOARDING_STATES[SubscriptionStatus(status)]


def onboarding_view(subscription: Subscription, now: datetime) -> OnboardingSubscriptionView:
    state = onboarding_state(subscription.status)
    remaining = (subscription.ends_at - now).days if state in (OnboardingState.IN_TRIAL, OnboardingState.ACTIVE) else 0
    return OnboardingSubscriptionView(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        plan_id=subscription.plan_id,
        state=state,
        is_trial=subscription.is_trial,
        ends_at=subscription.ends_at,
        days_remaining=max(remaining, 0),
    )


def from_legacy_status(value: str) -> SubscriptionStatus:
    """Map an external status name to the lifecycle enum.

    Statuses with no lifecycle counterpart ("pending", "suspended",
    "pending_payment", "failed", ...) are rejected.
    """
    normalized = "".join(ch for ch in (value or "").lower() if ch.isalnum())
    try:
        return LEGACY_STATUSES[normalized]
    except KeyError:
        raise ValidationError("Unknown subscription status", {"status": value}) from None
