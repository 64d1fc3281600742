from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.billing import (
    LIVE_STATUSES,
    BillingCycle,
    PlanChangeType,
    Subscription,
    SubscriptionChangeRecord,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.models.tenant import Tenant
from app.services.pricing import cycle_price
from app.utils.clock import Clock, IdGenerator, SystemClock, Uuid4Generator
from app.utils.money import quantize2, to_decimal

CYCLE_LENGTH = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def add_cycle(start: datetime, billing_cycle: BillingCycle) -> datetime:
    return start + CYCLE_LENGTH[BillingCycle(billing_cycle)]


def proration_ratio(starts_at: datetime, ends_at: datetime, now: datetime) -> Decimal:
    """Fraction of the cycle left, counted in whole days on both sides."""
    total_days = (ends_at - starts_at).days
    if total_days <= 0:
        return Decimal("0")
    days_remaining = max((ends_at - now).days, 0)
    return min(Decimal(days_remaining) / Decimal(total_days), Decimal("1"))


class DowngradeState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    APPLIED = "applied"


@dataclass
class PlanChangeResult:
    subscription: Subscription
    change: SubscriptionChangeRecord
    applied: bool


@dataclass
class SweepResult:
    renewed: list[UUID] = field(default_factory=list)
    expired: list[UUID] = field(default_factory=list)
    trial_ended: list[UUID] = field(default_factory=list)


@dataclass
class CapacityReport:
    subscription_id: UUID
    current_users: int
    max_users: int | None
    current_entities: int
    max_entities: int | None
    current_storage_gb: Decimal
    max_storage_gb: Decimal | None
    user_percent: Decimal | None
    entity_percent: Decimal | None
    storage_percent: Decimal | None
    is_over_limit: bool
    days_until_renewal: int


def _is_unlimited(limit: Any) -> bool:
    return limit is None or limit == -1


def _percent(used: Decimal | int, limit: Decimal | int | None) -> Decimal | None:
    if _is_unlimited(limit) or to_decimal(limit) <= 0:
        return None
    return quantize2(to_decimal(used) / to_decimal(limit) * 100)


class SubscriptionLifecycleManager:
    """Owns the subscription state machine.

    Trial -> Active -> {Cancelled, Expired}; Active -> Active on plan changes;
    Expired -> Active on renewal. Every transition is a compare-and-swap on
    ``Subscription.version`` so two concurrent transitions on one subscription
    cannot both apply: the loser gets ``ConflictError``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        id_generator: IdGenerator | None = None,
    ) -> None:
        self.session = session
        self.clock = clock or SystemClock()
        self.id_generator = id_generator or Uuid4Generator()

    # -- lookups -------------------------------------------------------------

    def get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found", {"subscription_id": str(subscription_id)})
        return subscription

    def _get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = self.session.get(SubscriptionPlan, plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found", {"plan_id": str(plan_id)})
        return plan

    def get_active_subscription(self, tenant_id: UUID) -> Subscription | None:
        return self.session.exec(
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .order_by(Subscription.starts_at.desc())
        ).first()

    def get_history(self, tenant_id: UUID) -> list[Subscription]:
        return list(
            self.session.exec(
                select(Subscription)
                .where(Subscription.tenant_id == tenant_id)
                .order_by(Subscription.created_at.desc())
            ).all()
        )

    def get_change_records(self, subscription_id: UUID) -> list[SubscriptionChangeRecord]:
        return list(
            self.session.exec(
                select(SubscriptionChangeRecord)
                .where(SubscriptionChangeRecord.subscription_id == subscription_id)
                .order_by(SubscriptionChangeRecord.created_at)
            ).all()
        )

    def get_expiring(self, days: int | None = None) -> list[Subscription]:
        now = self.clock.now()
        horizon = now + timedelta(days=settings.billing_expiry_warning_days if days is None else days)
        return list(
            self.session.exec(
                select(Subscription)
                .where(Subscription.status.in_(LIVE_STATUSES))
                .where(Subscription.ends_at > now)
                .where(Subscription.ends_at <= horizon)
                .order_by(Subscription.ends_at)
            ).all()
        )

    # -- internals -----------------------------------------------------------

    def _guarded_update(self, subscription: Subscription, **changes: Any) -> None:
        """Apply ``changes`` only if nobody bumped the version since we read it."""
        expected = subscription.version
        result = self.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id)
            .where(Subscription.version == expected)
            .values(version=expected + 1, updated_at=self.clock.now(), **changes)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            logger.warning("Transição concorrente rejeitada para assinatura %s", subscription.id)
            raise ConflictError(
                "Subscription was modified concurrently",
                {"subscription_id": str(subscription.id), "expected_version": expected},
            )

    def _record_change(
        self,
        subscription: Subscription,
        *,
        from_plan_id: UUID,
        to_plan_id: UUID,
        change_type: PlanChangeType,
        proration_amount: Decimal,
        reason: str | None,
        actor: str | None,
        effective_at: datetime,
        reverts_change_id: UUID | None = None,
    ) -> SubscriptionChangeRecord:
        record = SubscriptionChangeRecord(
            id=self.id_generator.new_id(),
            subscription_id=subscription.id,
            from_plan_id=from_plan_id,
            to_plan_id=to_plan_id,
            change_type=change_type,
            proration_amount=proration_amount,
            reason=reason,
            actor=actor,
            effective_at=effective_at,
            reverts_change_id=reverts_change_id,
            created_at=self.clock.now(),
        )
        self.session.add(record)
        return record

    def _require_active(self, subscription: Subscription) -> None:
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ConflictError(
                "No active subscription",
                {"subscription_id": str(subscription.id), "status": subscription.status.value},
            )

    # -- operations ----------------------------------------------------------

    def create(
        self,
        tenant_id: UUID,
        plan_id: UUID,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        is_trial: bool = False,
    ) -> Subscription:
        tenant = self.session.get(Tenant, tenant_id)
        if not tenant:
            raise NotFoundError("Tenant not found", {"tenant_id": str(tenant_id)})
        plan = self._get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError("Subscription plan is not active", {"plan_id": str(plan_id)})

        now = self.clock.now()
        billing_cycle = BillingCycle(billing_cycle)
        subscription = Subscription(
            id=self.id_generator.new_id(),
            tenant_id=tenant.id,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
            starts_at=now,
            ends_at=add_cycle(now, billing_cycle),
            status=SubscriptionStatus.ACTIVE,
            auto_renew=True,
            live_key=str(tenant.id),
            created_at=now,
        )
        if is_trial:
            trial_days = settings.billing_trial_days if plan.trial_days is None else plan.trial_days
            if trial_days <= 0:
                raise ValidationError("Subscription plan does not offer a trial", {"plan_id": str(plan.id)})
            subscription.is_trial = True
            subscription.status = SubscriptionStatus.TRIAL
            subscription.auto_renew = False
            subscription.trial_starts_at = now
            subscription.trial_ends_at = now + timedelta(days=trial_days)
            subscription.ends_at = subscription.trial_ends_at
        subscription.next_billing_at = subscription.ends_at

        with atomic(self.session, "create_subscription"):
            previous = self.session.exec(
                select(Subscription)
                .where(Subscription.tenant_id == tenant.id)
                .where(Subscription.status.in_(LIVE_STATUSES))
            ).all()
            for existing in previous:
                self._guarded_update(
                    existing,
                    status=SubscriptionStatus.CANCELLED,
                    auto_renew=False,
                    cancelled_at=now,
                    cancellation_reason="Superseded by a new subscription",
                    live_key=None,
                    pending_plan_id=None,
                    pending_change_at=None,
                )
            self.session.add(subscription)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError(
                    "Tenant already has a live subscription",
                    {"tenant_id": str(tenant.id)},
                ) from exc
        self.session.refresh(subscription)
        logger.info(
            "Assinatura %s criada para tenant %s (plano %s, ciclo %s, trial=%s)",
            subscription.id,
            tenant.id,
            plan.code,
            billing_cycle.value,
            is_trial,
        )
        return subscription

    def convert_trial(self, subscription_id: UUID, billing_cycle: BillingCycle | None = None) -> Subscription:
        """Trial -> Active: starts a paid cycle now."""
        subscription = self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.TRIAL:
            raise ConflictError("Subscription is not in trial", {"status": subscription.status.value})
        now = self.clock.now()
        cycle = BillingCycle(billing_cycle or subscription.billing_cycle)
        ends_at = add_cycle(now, cycle)
        with atomic(self.session, "convert_trial"):
            self._guarded_update(
                subscription,
                status=SubscriptionStatus.ACTIVE,
                billing_cycle=cycle,
                is_trial=False,
                auto_renew=True,
                starts_at=now,
                ends_at=ends_at,
                next_billing_at=ends_at,
            )
        self.session.refresh(subscription)
        logger.info("Trial convertido em assinatura ativa: %s", subscription.id)
        return subscription

    def upgrade(
        self,
        subscription_id: UUID,
        new_plan_id: UUID,
        reason: str | None = None,
        actor: str | None = None,
    ) -> PlanChangeResult:
        subscription = self.get_subscription(subscription_id)
        self._require_active(subscription)
        new_plan = self._get_plan(new_plan_id)
        current_plan = self._get_plan(subscription.plan_id)
        if not new_plan.is_active:
            raise ValidationError("Subscription plan is not active", {"plan_id": str(new_plan_id)})
        if new_plan.tier_rank <= current_plan.tier_rank:
            raise ConflictError(
                "Upgrade must move to a higher tier",
                {"current_tier": current_plan.tier_rank, "new_tier": new_plan.tier_rank},
            )

        now = self.clock.now()
        ratio = proration_ratio(subscription.starts_at, subscription.ends_at, now)
        delta = cycle_price(new_plan, subscription.billing_cycle) - cycle_price(current_plan, subscription.billing_cycle)
        proration_amount = quantize2(delta * ratio)

        with atomic(self.session, "upgrade_subscription"):
            self._guarded_update(
                subscription,
                plan_id=new_plan.id,
                pending_plan_id=None,
                pending_change_at=None,
            )
            change = self._record_change(
                subscription,
                from_plan_id=current_plan.id,
                to_plan_id=new_plan.id,
                change_type=PlanChangeType.UPGRADE,
                proration_amount=proration_amount,
                reason=reason,
                actor=actor,
                effective_at=now,
            )
        self.session.refresh(subscription)
        self.session.refresh(change)
        logger.info(
            "Upgrade %s: %s -> %s (proporcional %s)",
            subscription.id,
            current_plan.code,
            new_plan.code,
            proration_amount,
        )
        return PlanChangeResult(subscription=subscription, change=change, applied=True)

    def _revertible_upgrade(self, subscription: Subscription, target_plan_id: UUID) -> SubscriptionChangeRecord | None:
        """Latest change, if it is an upgrade this cycle away from ``target_plan_id``."""
        latest = self.session.exec(
            select(SubscriptionChangeRecord)
            .where(SubscriptionChangeRecord.subscription_id == subscription.id)
            .order_by(SubscriptionChangeRecord.created_at.desc())
        ).first()
        if (
            latest
            and latest.change_type == PlanChangeType.UPGRADE
            and latest.from_plan_id == target_plan_id
            and latest.to_plan_id == subscription.plan_id
            and latest.effective_at >= subscription.starts_at
        ):
            return latest
        return None

    def downgrade(
        self,
        subscription_id: UUID,
        new_plan_id: UUID,
        reason: str | None = None,
        actor: str | None = None,
    ) -> PlanChangeResult:
        """Schedule a move to a lower tier for the next cycle boundary.

        Going back to the plan held before an upgrade made in the same cycle
        undoes that upgrade at once. Downgrades never refund.
        """
        subscription = self.get_subscription(subscription_id)
        self._require_active(subscription)
        new_plan = self._get_plan(new_plan_id)
        current_plan = self._get_plan(subscription.plan_id)
        if new_plan.tier_rank >= current_plan.tier_rank:
            raise ConflictError(
                "Downgrade must move to a lower tier",
                {"current_tier": current_plan.tier_rank, "new_tier": new_plan.tier_rank},
            )

        now = self.clock.now()
        reverted = self._revertible_upgrade(subscription, new_plan.id)
        with atomic(self.session, "downgrade_subscription"):
            if reverted:
                effective_at = now
                self._guarded_update(
                    subscription,
                    plan_id=new_plan.id,
                    pending_plan_id=None,
                    pending_change_at=None,
                )
            else:
                effective_at = subscription.ends_at
                self._guarded_update(
                    subscription,
                    pending_plan_id=new_plan.id,
                    pending_change_at=effective_at,
                )
            change = self._record_change(
                subscription,
                from_plan_id=current_plan.id,
                to_plan_id=new_plan.id,
                change_type=PlanChangeType.DOWNGRADE,
                proration_amount=Decimal("0.00"),
                reason=reason,
                actor=actor,
                effective_at=effective_at,
                reverts_change_id=reverted.id if reverted else None,
            )
        self.session.refresh(subscription)
        self.session.refresh(change)
        logger.info(
            "Downgrade %s: %s -> %s (%s)",
            subscription.id,
            current_plan.code,
            new_plan.code,
            "aplicado" if reverted else f"agendado para {effective_at.isoformat()}",
        )
        return PlanChangeResult(subscription=subscription, change=change, applied=reverted is not None)

    def downgrade_state(self, subscription_id: UUID) -> DowngradeState:
        subscription = self.get_subscription(subscription_id)
        latest = self.session.exec(
            select(SubscriptionChangeRecord)
            .where(SubscriptionChangeRecord.subscription_id == subscription.id)
            .where(SubscriptionChangeRecord.change_type == PlanChangeType.DOWNGRADE)
            .order_by(SubscriptionChangeRecord.created_at.desc())
        ).first()
        if not latest:
            return DowngradeState.NONE
        if subscription.plan_id == latest.to_plan_id and latest.effective_at <= self.clock.now():
            return DowngradeState.APPLIED
        if subscription.pending_plan_id == latest.to_plan_id:
            return DowngradeState.PENDING
        # superseded by a later upgrade
        return DowngradeState.NONE

    def cancel(self, subscription_id: UUID, reason: str | None = None) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            logger.warning("Cancelamento repetido rejeitado: %s", subscription.id)
            raise ConflictError("Subscription is already cancelled", {"subscription_id": str(subscription.id)})
        if subscription.status not in LIVE_STATUSES:
            raise ConflictError(
                "Only trial or active subscriptions can be cancelled",
                {"status": subscription.status.value},
            )
        now = self.clock.now()
        with atomic(self.session, "cancel_subscription"):
            self._guarded_update(
                subscription,
                status=SubscriptionStatus.CANCELLED,
                auto_renew=False,
                cancelled_at=now,
                cancellation_reason=reason,
                live_key=None,
                pending_plan_id=None,
                pending_change_at=None,
            )
        self.session.refresh(subscription)
        logger.info("Assinatura %s cancelada: %s", subscription.id, reason or "-")
        return subscription

    def set_auto_renew(self, subscription_id: UUID, enabled: bool) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise ConflictError("Subscription is cancelled")
        if enabled and subscription.is_trial:
            raise ValidationError("Trial subscriptions do not renew automatically")
        with atomic(self.session, "set_auto_renew"):
            self._guarded_update(subscription, auto_renew=enabled)
        self.session.refresh(subscription)
        return subscription

    def _renewal_changes(self, subscription: Subscription) -> dict[str, Any]:
        starts_at = subscription.ends_at
        ends_at = add_cycle(starts_at, subscription.billing_cycle)
        changes: dict[str, Any] = {
            "status": SubscriptionStatus.ACTIVE,
            "starts_at": starts_at,
            "ends_at": ends_at,
            "last_billing_at": self.clock.now(),
            "next_billing_at": ends_at,
            "live_key": str(subscription.tenant_id),
        }
        if subscription.pending_plan_id and subscription.pending_change_at and subscription.pending_change_at <= starts_at:
            changes.update(plan_id=subscription.pending_plan_id, pending_plan_id=None, pending_change_at=None)
        return changes

    def renew(self, subscription_id: UUID) -> Subscription:
        """Shift the cycle forward by exactly one length from the previous end."""
        subscription = self.get_subscription(subscription_id)
        if not subscription.auto_renew or subscription.is_trial:
            raise ConflictError(
                "Subscription is not eligible for renewal",
                {"auto_renew": subscription.auto_renew, "is_trial": subscription.is_trial},
            )
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED):
            raise ConflictError("Subscription cannot be renewed", {"status": subscription.status.value})

        changes = self._renewal_changes(subscription)
        with atomic(self.session, "renew_subscription"):
            try:
                # an expired cycle takes the live slot back
                self._guarded_update(subscription, **changes)
            except IntegrityError as exc:
                raise ConflictError(
                    "Tenant already has a live subscription", {"tenant_id": str(subscription.tenant_id)}
                ) from exc
        self.session.refresh(subscription)
        logger.info(
            "Assinatura %s renovada até %s%s",
            subscription.id,
            subscription.ends_at.isoformat(),
            " (downgrade aplicado)" if "plan_id" in changes else "",
        )
        return subscription

    def sweep_expired(self, now: datetime | None = None) -> SweepResult:
        """Renew or expire every live subscription whose end date has passed.

        Safe to repeat: expired subscriptions are no longer live and renewed
        ones have moved their end date forward.
        """
        now = now or self.clock.now()
        result = SweepResult()
        due: Iterable[Subscription] = self.session.exec(
            select(Subscription)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .where(Subscription.ends_at < now)
            .order_by(Subscription.ends_at)
        ).all()
        for subscription in due:
            eligible = (
                subscription.status == SubscriptionStatus.ACTIVE
                and subscription.auto_renew
                and not subscription.is_trial
            )
            try:
                if eligible:
                    self.renew(subscription.id)
                    result.renewed.append(subscription.id)
                    continue
                ended_trial = subscription.is_trial or subscription.status == SubscriptionStatus.TRIAL
                final_status = SubscriptionStatus.TRIAL_ENDED if ended_trial else SubscriptionStatus.EXPIRED
                with atomic(self.session, "expire_subscription"):
                    self._guarded_update(subscription, status=final_status, live_key=None)
                self.session.refresh(subscription)
                (result.trial_ended if ended_trial else result.expired).append(subscription.id)
                logger.info("Assinatura %s encerrada como %s", subscription.id, final_status.value)
            except ConflictError as exc:
                # another writer moved it first; the next sweep re-evaluates it
                logger.warning("Varredura ignorou assinatura %s: %s", subscription.id, exc.message)
        logger.info(
            "Varredura concluída: %d renovadas, %d expiradas, %d trials encerrados",
            len(result.renewed),
            len(result.expired),
            len(result.trial_ended),
        )
        return result

    # -- capacity snapshot ---------------------------------------------------

    def update_usage_snapshot(
        self,
        subscription_id: UUID,
        user_count: int,
        entity_count: int,
        storage_gb: Decimal,
    ) -> Subscription:
        if user_count < 0 or entity_count < 0 or to_decimal(storage_gb) < 0:
            raise ValidationError("Usage snapshot values must not be negative")
        subscription = self.get_subscription(subscription_id)
        if subscription.status not in LIVE_STATUSES:
            raise ConflictError("No active subscription", {"status": subscription.status.value})
        with atomic(self.session, "update_usage_snapshot"):
            self._guarded_update(
                subscription,
                current_user_count=user_count,
                current_entity_count=entity_count,
                current_storage_gb=to_decimal(storage_gb),
            )
        self.session.refresh(subscription)
        return subscription

    def check_capacity(self, subscription_id: UUID) -> CapacityReport:
        subscription = self.get_subscription(subscription_id)
        plan = self._get_plan(subscription.plan_id)
        users_ok = _is_unlimited(plan.max_users) or subscription.current_user_count <= plan.max_users
        entities_ok = _is_unlimited(plan.max_entities) or subscription.current_entity_count <= plan.max_entities
        storage_ok = _is_unlimited(plan.storage_quota_gb) or to_decimal(subscription.current_storage_gb) <= to_decimal(
            plan.storage_quota_gb
        )
        return CapacityReport(
            subscription_id=subscription.id,
            current_users=subscription.current_user_count,
            max_users=plan.max_users,
            current_entities=subscription.current_entity_count,
            max_entities=plan.max_entities,
            current_storage_gb=to_decimal(subscription.current_storage_gb),
            max_storage_gb=plan.storage_quota_gb,
            user_percent=_percent(subscription.current_user_count, plan.max_users),
            entity_percent=_percent(subscription.current_entity_count, plan.max_entities),
            storage_percent=_percent(subscription.current_storage_gb, plan.storage_quota_gb),
            is_over_limit=not (users_ok and entities_ok and storage_ok),
            days_until_renewal=max((subscription.ends_at - self.clock.now()).days, 0),
        )
