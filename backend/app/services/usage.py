from __future__ import annotations

import math
import threading
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.config import settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.billing import LIVE_STATUSES, Subscription
from app.models.usage import (
    AlertType,
    BillableEntity,
    PlanEntityLimit,
    UsageAggregate,
    UsageAlert,
    UsageBillingStatus,
    UsageRecord,
)
from app.utils.clock import Clock, IdGenerator, SystemClock, Uuid4Generator

# fixed pool; keys that share a stripe just serialise with each other
METER_LOCK_STRIPES = 64
_meter_locks = tuple(threading.Lock() for _ in range(METER_LOCK_STRIPES))


def _meter_lock(subscription_id: UUID, entity_id: UUID) -> threading.Lock:
    return _meter_locks[hash((subscription_id, entity_id)) % METER_LOCK_STRIPES]


def alert_open_key(subscription_id: UUID, entity_id: UUID, alert_type: AlertType) -> str:
    return f"{subscription_id}:{entity_id}:{AlertType(alert_type).value}"


def soft_threshold(limit: PlanEntityLimit) -> int | None:
    if limit.soft_limit is not None:
        return limit.soft_limit
    if limit.usage_limit is None:
        return None
    return math.floor(limit.usage_limit * settings.usage_soft_limit_ratio)


class UsageMeter:
    """Records metered usage and watches it against per-plan limits.

    Writes for one (subscription, entity) pair are serialized in-process;
    across processes the unique aggregate period and the unique ``open_key``
    on unresolved alerts keep the counters and alerts consistent.
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

    def _get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found", {"subscription_id": str(subscription_id)})
        return subscription

    def record_usage(
        self,
        subscription_id: UUID,
        entity_id: UUID,
        units: int,
        complexity: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> UsageRecord:
        if units <= 0:
            raise ValidationError("Units must be positive", {"units": units})
        subscription = self._get_subscription(subscription_id)
        entity = self.session.get(BillableEntity, entity_id)
        if not entity:
            raise NotFoundError("Billable entity not found", {"entity_id": str(entity_id)})
        if subscription.status not in LIVE_STATUSES:
            raise ConflictError(
                "No active subscription",
                {"subscription_id": str(subscription.id), "status": subscription.status.value},
            )

        now = self.clock.now()
        record = UsageRecord(
            id=self.id_generator.new_id(),
            subscription_id=subscription.id,
            entity_id=entity.id,
            units=units,
            complexity=complexity,
            recorded_at=now,
            billing_status=UsageBillingStatus.UNBILLED,
            details=metadata or {},
            created_at=now,
        )
        with _meter_lock(subscription.id, entity.id):
            with atomic(self.session, "record_usage"):
                self.session.add(record)
                total = self._increment_aggregate(subscription, entity.id, units)
                alert = self._check_limits(subscription, entity.id, total)
        self.session.refresh(record)
        logger.debug("Uso registrado: %s x%d (%s), acumulado %d", entity.code, units, subscription.id, total)
        if alert is not None:
            logger.warning(
                "Alerta %s para %s/%s: %d de %d",
                alert.alert_type.value,
                subscription.id,
                entity.code,
                alert.current_usage,
                alert.threshold,
            )
        return record

    def _increment_aggregate(self, subscription: Subscription, entity_id: UUID, units: int) -> int:
        period_start, period_end = subscription.starts_at, subscription.ends_at
        increment = (
            update(UsageAggregate)
            .where(UsageAggregate.subscription_id == subscription.id)
            .where(UsageAggregate.entity_id == entity_id)
            .where(UsageAggregate.period_start == period_start)
            .values(units=UsageAggregate.units + units, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(increment).rowcount == 0:
            try:
                with self.session.begin_nested():
                    self.session.add(
                        UsageAggregate(
                            id=self.id_generator.new_id(),
                            subscription_id=subscription.id,
                            entity_id=entity_id,
                            period_start=period_start,
                            period_end=period_end,
                            units=units,
                        )
                    )
            except IntegrityError:
                # another process opened the period first
                self.session.execute(increment)
        return self.session.exec(
            select(UsageAggregate.units)
            .where(UsageAggregate.subscription_id == subscription.id)
            .where(UsageAggregate.entity_id == entity_id)
            .where(UsageAggregate.period_start == period_start)
        ).one()

    def _check_limits(self, subscription: Subscription, entity_id: UUID, total: int) -> UsageAlert | None:
        limit = self.session.exec(
            select(PlanEntityLimit)
            .where(PlanEntityLimit.plan_id == subscription.plan_id)
            .where(PlanEntityLimit.entity_id == entity_id)
        ).first()
        if not limit or limit.usage_limit is None:
            return None
        soft = soft_threshold(limit)
        if total >= limit.usage_limit:
            alert_type, threshold = AlertType.HARD_LIMIT, limit.usage_limit
        elif soft is not None and total >= soft:
            alert_type, threshold = AlertType.SOFT_LIMIT, soft
        else:
            return None
        return self._raise_alert(subscription.id, entity_id, alert_type, threshold, total)

    def _raise_alert(
        self,
        subscription_id: UUID,
        entity_id: UUID,
        alert_type: AlertType,
        threshold: int,
        current_usage: int,
    ) -> UsageAlert | None:
        open_key = alert_open_key(subscription_id, entity_id, alert_type)
        existing = self.session.exec(select(UsageAlert.id).where(UsageAlert.open_key == open_key)).first()
        if existing is not None:
            return None
        alert = UsageAlert(
            id=self.id_generator.new_id(),
            subscription_id=subscription_id,
            entity_id=entity_id,
            alert_type=alert_type,
            threshold=threshold,
            current_usage=current_usage,
            open_key=open_key,
            created_at=self.clock.now(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(alert)
        except IntegrityError:
            return None
        return alert

    def resolve_alert(self, alert_id: UUID) -> UsageAlert:
        alert = self.session.get(UsageAlert, alert_id)
        if not alert or alert.is_resolved:
            raise NotFoundError("Open alert not found", {"alert_id": str(alert_id)})
        with atomic(self.session, "resolve_alert"):
            alert.is_resolved = True
            alert.resolved_at = self.clock.now()
            alert.open_key = None
            self.session.add(alert)
        self.session.refresh(alert)
        logger.info("Alerta %s resolvido", alert.id)
        return alert

    def get_active_alerts(self, subscription_id: UUID) -> list[UsageAlert]:
        return list(
            self.session.exec(
                select(UsageAlert)
                .where(UsageAlert.subscription_id == subscription_id)
                .where(UsageAlert.is_resolved.is_(False))
                .order_by(UsageAlert.created_at.desc())
            ).all()
        )

    def get_usage_summary(
        self,
        subscription_id: UUID,
        period_start: datetime,
        period_end: datetime,
        statuses: Iterable[UsageBillingStatus] | None = None,
    ) -> dict[UUID, int]:
        """Units per entity recorded in ``[period_start, period_end)``."""
        if period_end <= period_start:
            raise ValidationError("Period end must be after period start")
        self._get_subscription(subscription_id)
        wanted = list(statuses) if statuses is not None else list(UsageBillingStatus)
        rows = self.session.exec(
            select(UsageRecord.entity_id, func.sum(UsageRecord.units))
            .where(UsageRecord.subscription_id == subscription_id)
            .where(UsageRecord.recorded_at >= period_start)
            .where(UsageRecord.recorded_at < period_end)
            .where(UsageRecord.billing_status.in_(wanted))
            .group_by(UsageRecord.entity_id)
        ).all()
        return {entity_id: int(total or 0) for entity_id, total in rows}

    def list_usage_records(
        self,
        subscription_id: UUID,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        status: UsageBillingStatus | None = None,
    ) -> list[UsageRecord]:
        statement = select(UsageRecord).where(UsageRecord.subscription_id == subscription_id)
        if period_start is not None:
            statement = statement.where(UsageRecord.recorded_at >= period_start)
        if period_end is not None:
            statement = statement.where(UsageRecord.recorded_at < period_end)
        if status is not None:
            statement = statement.where(UsageRecord.billing_status == status)
        return list(self.session.exec(statement.order_by(UsageRecord.recorded_at)).all())

    def current_aggregate(self, subscription_id: UUID, entity_id: UUID) -> int:
        """Units counted for the pair in the subscription's current cycle."""
        subscription = self._get_subscription(subscription_id)
        units = self.session.exec(
            select(UsageAggregate.units)
            .where(UsageAggregate.subscription_id == subscription.id)
            .where(UsageAggregate.entity_id == entity_id)
            .where(UsageAggregate.period_start == subscription.starts_at)
        ).first()
        return units or 0
