from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlmodel import Session

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.billing import BillingCycle, PlanChangeType, SubscriptionStatus
from app.services.subscription import DowngradeState, SubscriptionLifecycleManager

START = datetime(2026, 4, 1, 9, 0, 0)
CYCLE_END = datetime(2026, 5, 1, 9, 0, 0)


@pytest.fixture()
def catalogue(factory):
    return {
        "tenant": factory.tenant(),
        "basic": factory.plan("basic", "50.00", 1, trial_days=14, max_users=10, storage_quota_gb="5"),
        "pro": factory.plan("pro", "150.00", 2, max_users=-1),
        "enterprise": factory.plan("enterprise", "400.00", 3),
    }


@pytest.fixture()
def manager(db_session, clock) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(db_session, clock=clock)


def test_create_starts_one_monthly_cycle(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id, BillingCycle.MONTHLY)

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.starts_at == START
    assert subscription.ends_at == CYCLE_END
    assert subscription.next_billing_at == CYCLE_END
    assert subscription.auto_renew is True
    assert subscription.version == 1


def test_yearly_cycle_uses_calendar_year(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id, BillingCycle.YEARLY)
    assert subscription.ends_at == datetime(2027, 4, 1, 9, 0, 0)


def test_create_trial_uses_plan_trial_days(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id, is_trial=True)

    assert subscription.status == SubscriptionStatus.TRIAL
    assert subscription.is_trial is True
    assert subscription.auto_renew is False
    assert subscription.trial_ends_at == START + timedelta(days=14)
    assert subscription.ends_at == subscription.trial_ends_at


def test_trial_days_fall_back_to_default_and_zero_disables_trials(manager, factory):
    defaulted = factory.plan("starter", "30.00", 1)
    no_trial = factory.plan("walk-in", "30.00", 1, trial_days=0)

    subscription = manager.create(factory.tenant().id, defaulted.id, is_trial=True)
    assert subscription.trial_ends_at == START + timedelta(days=30)

    with pytest.raises(ValidationError):
        manager.create(factory.tenant().id, no_trial.id, is_trial=True)
    assert manager.create(factory.tenant().id, no_trial.id).status == SubscriptionStatus.ACTIVE


def test_new_subscription_retires_previous_one(manager, catalogue):
    tenant = catalogue["tenant"]
    first = manager.create(tenant.id, catalogue["basic"].id)
    second = manager.create(tenant.id, catalogue["pro"].id)

    manager.session.refresh(first)
    assert first.status == SubscriptionStatus.CANCELLED
    assert first.live_key is None
    assert manager.get_active_subscription(tenant.id).id == second.id
    assert {item.id for item in manager.get_history(tenant.id)} == {first.id, second.id}


def test_create_validates_references(manager, catalogue, factory):
    with pytest.raises(NotFoundError):
        manager.create(uuid4(), catalogue["basic"].id)
    with pytest.raises(NotFoundError):
        manager.create(catalogue["tenant"].id, uuid4())

    retired = factory.plan("legacy", "10.00", 0)
    retired.is_active = False
    factory.session.add(retired)
    factory.session.commit()
    with pytest.raises(ValidationError):
        manager.create(catalogue["tenant"].id, retired.id)


def test_upgrade_prorates_remaining_days(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    clock.advance(days=20)  # 10 of 30 days left

    result = manager.upgrade(subscription.id, catalogue["pro"].id, reason="more beds", actor="admin@hospital")

    assert result.applied is True
    assert result.subscription.plan_id == catalogue["pro"].id
    assert result.change.change_type == PlanChangeType.UPGRADE
    assert result.change.proration_amount == Decimal("33.33")
    assert result.change.actor == "admin@hospital"
    assert result.subscription.version == 2


def test_upgrade_requires_higher_tier(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["pro"].id)

    with pytest.raises(ConflictError):
        manager.upgrade(subscription.id, catalogue["basic"].id)
    with pytest.raises(ConflictError):
        manager.upgrade(subscription.id, catalogue["pro"].id)


def test_upgrade_requires_active_subscription(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id, is_trial=True)
    with pytest.raises(ConflictError):
        manager.upgrade(subscription.id, catalogue["pro"].id)


def test_downgrade_waits_for_cycle_end(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["pro"].id)
    clock.advance(days=5)

    result = manager.downgrade(subscription.id, catalogue["basic"].id, reason="budget")

    assert result.applied is False
    assert result.change.proration_amount == Decimal("0.00")
    assert result.change.effective_at == CYCLE_END
    assert result.subscription.plan_id == catalogue["pro"].id
    assert result.subscription.pending_plan_id == catalogue["basic"].id
    assert manager.downgrade_state(subscription.id) == DowngradeState.PENDING

    clock.set(CYCLE_END + timedelta(hours=1))
    sweep = manager.sweep_expired()

    assert sweep.renewed == [subscription.id]
    renewed = manager.get_subscription(subscription.id)
    assert renewed.plan_id == catalogue["basic"].id
    assert renewed.pending_plan_id is None
    assert manager.downgrade_state(subscription.id) == DowngradeState.APPLIED


def test_downgrade_requires_lower_tier(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    with pytest.raises(ConflictError):
        manager.downgrade(subscription.id, catalogue["pro"].id)


def test_upgrade_then_downgrade_restores_original_plan(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    clock.advance(days=3)
    manager.upgrade(subscription.id, catalogue["pro"].id)
    clock.advance(minutes=1)

    result = manager.downgrade(subscription.id, catalogue["basic"].id)

    assert result.applied is True
    assert result.change.proration_amount == Decimal("0.00")
    assert result.subscription.plan_id == catalogue["basic"].id
    assert result.subscription.pending_plan_id is None
    assert result.change.reverts_change_id is not None
    assert manager.downgrade_state(subscription.id) == DowngradeState.APPLIED
    assert [c.change_type for c in manager.get_change_records(subscription.id)] == [
        PlanChangeType.UPGRADE,
        PlanChangeType.DOWNGRADE,
    ]


def test_upgrade_clears_pending_downgrade(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["pro"].id)
    manager.downgrade(subscription.id, catalogue["basic"].id)

    result = manager.upgrade(subscription.id, catalogue["enterprise"].id)

    assert result.subscription.pending_plan_id is None
    assert manager.downgrade_state(subscription.id) == DowngradeState.NONE


def test_cancel_twice_is_a_conflict(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)

    cancelled = manager.cancel(subscription.id, "hospital closed")
    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.auto_renew is False
    assert cancelled.cancelled_at == START
    assert cancelled.cancellation_reason == "hospital closed"
    assert manager.get_active_subscription(catalogue["tenant"].id) is None

    with pytest.raises(ConflictError):
        manager.cancel(subscription.id, "again")


def test_renew_moves_cycle_from_previous_end(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    clock.set(CYCLE_END + timedelta(days=2))

    renewed = manager.renew(subscription.id)

    assert renewed.starts_at == CYCLE_END
    assert renewed.ends_at == datetime(2026, 6, 1, 9, 0, 0)
    assert renewed.last_billing_at == clock.now()
    assert renewed.status == SubscriptionStatus.ACTIVE


def test_renew_not_allowed_without_auto_renew_or_for_trials(manager, catalogue, factory):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    manager.set_auto_renew(subscription.id, False)
    with pytest.raises(ConflictError):
        manager.renew(subscription.id)

    trial = manager.create(factory.tenant().id, catalogue["basic"].id, is_trial=True)
    with pytest.raises(ConflictError):
        manager.renew(trial.id)


def test_sweep_renews_expires_and_ends_trials(manager, catalogue, factory, clock):
    renewing = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    lapsing = manager.create(factory.tenant().id, catalogue["basic"].id)
    manager.set_auto_renew(lapsing.id, False)
    trial = manager.create(factory.tenant().id, catalogue["basic"].id, is_trial=True)
    untouched = manager.create(factory.tenant().id, catalogue["basic"].id, BillingCycle.YEARLY)

    clock.set(CYCLE_END + timedelta(minutes=1))
    result = manager.sweep_expired()

    assert result.renewed == [renewing.id]
    assert result.expired == [lapsing.id]
    assert result.trial_ended == [trial.id]
    assert manager.get_subscription(lapsing.id).status == SubscriptionStatus.EXPIRED
    assert manager.get_subscription(trial.id).status == SubscriptionStatus.TRIAL_ENDED
    assert manager.get_subscription(untouched.id).status == SubscriptionStatus.ACTIVE

    again = manager.sweep_expired()
    assert (again.renewed, again.expired, again.trial_ended) == ([], [], [])


def test_expired_subscription_can_be_renewed_when_auto_renew_returns(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    manager.set_auto_renew(subscription.id, False)
    clock.set(CYCLE_END + timedelta(hours=1))
    manager.sweep_expired()

    manager.set_auto_renew(subscription.id, True)
    renewed = manager.renew(subscription.id)

    assert renewed.status == SubscriptionStatus.ACTIVE
    assert renewed.starts_at == CYCLE_END
    assert manager.get_active_subscription(catalogue["tenant"].id).id == subscription.id


def test_convert_trial_starts_paid_cycle(manager, catalogue, clock):
    trial = manager.create(catalogue["tenant"].id, catalogue["basic"].id, is_trial=True)
    clock.advance(days=7)

    active = manager.convert_trial(trial.id)

    assert active.status == SubscriptionStatus.ACTIVE
    assert active.is_trial is False
    assert active.auto_renew is True
    assert active.starts_at == START + timedelta(days=7)
    with pytest.raises(ConflictError):
        manager.convert_trial(trial.id)


def test_stale_writer_loses_the_race(db_engine, manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)

    with Session(db_engine) as other_session:
        other = SubscriptionLifecycleManager(other_session, clock=clock)
        stale = other.get_subscription(subscription.id)
        assert stale.version == 1

        manager.upgrade(subscription.id, catalogue["pro"].id)

        with pytest.raises(ConflictError):
            other.cancel(subscription.id, "stale")

    current = manager.get_subscription(subscription.id)
    assert current.status == SubscriptionStatus.ACTIVE
    assert current.plan_id == catalogue["pro"].id


def test_renewing_over_a_newer_live_subscription_is_a_conflict(manager, catalogue, clock):
    tenant = catalogue["tenant"]
    lapsed = manager.create(tenant.id, catalogue["basic"].id)
    manager.set_auto_renew(lapsed.id, False)
    clock.set(CYCLE_END + timedelta(hours=1))
    assert manager.sweep_expired().expired == [lapsed.id]

    current = manager.create(tenant.id, catalogue["pro"].id)
    manager.set_auto_renew(lapsed.id, True)

    with pytest.raises(ConflictError):
        manager.renew(lapsed.id)

    assert manager.get_subscription(lapsed.id).status == SubscriptionStatus.EXPIRED
    assert manager.get_active_subscription(tenant.id).id == current.id


def test_get_expiring_lists_subscriptions_near_end(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)

    assert manager.get_expiring(days=7) == []
    clock.set(CYCLE_END - timedelta(days=3))
    assert [item.id for item in manager.get_expiring(days=7)] == [subscription.id]


def test_capacity_report_flags_over_limit(manager, catalogue, clock):
    subscription = manager.create(catalogue["tenant"].id, catalogue["basic"].id)
    manager.update_usage_snapshot(subscription.id, 12, 3, Decimal("2.5"))
    clock.advance(days=10)

    report = manager.check_capacity(subscription.id)

    assert report.is_over_limit is True
    assert report.user_percent == Decimal("120.00")
    assert report.storage_percent == Decimal("50.00")
    assert report.entity_percent is None
    assert report.days_until_renewal == 20

    with pytest.raises(ValidationError):
        manager.update_usage_snapshot(subscription.id, -1, 0, Decimal("0"))


def test_unlimited_plan_is_never_over_limit(manager, catalogue):
    subscription = manager.create(catalogue["tenant"].id, catalogue["pro"].id)
    manager.update_usage_snapshot(subscription.id, 5000, 0, Decimal("0"))

    report = manager.check_capacity(subscription.id)
    assert report.is_over_limit is False
    assert report.user_percent is None
