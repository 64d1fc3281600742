from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import ValidationError
from app.models.billing import SubscriptionStatus
from app.services.status_adapters import (
    OnboardingState,
    from_legacy_status,
    onboarding_state,
    onboarding_view,
)
from app.services.subscription import SubscriptionLifecycleManager

START = datetime(2026, 4, 1, 9, 0, 0)


@pytest.mark.parametrize(
    "status, expected",
    [
        (SubscriptionStatus.TRIAL, OnboardingState.IN_TRIAL),
        (SubscriptionStatus.ACTIVE, OnboardingState.ACTIVE),
        (SubscriptionStatus.EXPIRED, OnboardingState.LAPSED),
        (SubscriptionStatus.TRIAL_ENDED, OnboardingState.LAPSED),
        (SubscriptionStatus.CANCELLED, OnboardingState.CANCELLED),
    ],
)
def test_every_lifecycle_status_has_an_onboarding_state(status, expected):
    assert onboarding_state(status) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("Succeeded", SubscriptionStatus.ACTIVE),
        ("in-trial", SubscriptionStatus.TRIAL),
        ("TRIAL_ENDED", SubscriptionStatus.TRIAL_ENDED),
        ("canceled", SubscriptionStatus.CANCELLED),
        ("lapsed", SubscriptionStatus.EXPIRED),
    ],
)
def test_legacy_status_names_are_normalized(raw, expected):
    assert from_legacy_status(raw) == expected


@pytest.mark.parametrize("raw", ["pending", "suspended", "pending_payment", ""])
def test_unknown_legacy_status_is_rejected(raw):
    with pytest.raises(ValidationError):
        from_legacy_status(raw)


def test_onboarding_view_counts_remaining_days(db_session, clock, factory):
    plan = factory.plan("clinic", "80.00", 1, trial_days=14)
    subscription = SubscriptionLifecycleManager(db_session, clock=clock).create(
        factory.tenant().id, plan.id, is_trial=True
    )

    view = onboarding_view(subscription, START + timedelta(days=4))

    assert view.state == OnboardingState.IN_TRIAL
    assert view.is_trial is True
    assert view.days_remaining == 10

    cancelled = SubscriptionLifecycleManager(db_session, clock=clock).cancel(subscription.id)
    assert onboarding_view(cancelled, START).days_remaining == 0
