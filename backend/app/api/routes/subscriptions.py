from dataclasses import asdict
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session

from app.api.deps import get_clock, get_db
from app.schemas.billing import (
    CancelRequest,
    CapacityRead,
    ChangeRecordRead,
    PlanChangeRead,
    PlanChangeRequest,
    SubscriptionCreate,
    SubscriptionRead,
    SweepRead,
    SweepRequest,
    UsageSnapshotUpdate,
)
from app.services.subscription import PlanChangeResult, SubscriptionLifecycleManager
from app.utils.clock import Clock

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _manager(session: Session, clock: Clock) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(session, clock=clock)


def _change_read(result: PlanChangeResult) -> PlanChangeRead:
    return PlanChangeRead(
        subscription=SubscriptionRead.model_validate(result.subscription),
        change=ChangeRecordRead.model_validate(result.change),
        applied=result.applied,
    )


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    subscription = _manager(session, clock).create(
        payload.tenant_id,
        payload.plan_id,
        billing_cycle=payload.billing_cycle,
        is_trial=payload.is_trial,
    )
    return SubscriptionRead.model_validate(subscription)


@router.post("/sweep", response_model=SweepRead)
def sweep_expired(
    payload: SweepRequest,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SweepRead:
    result = _manager(session, clock).sweep_expired(payload.now)
    return SweepRead(renewed=result.renewed, expired=result.expired, trial_ended=result.trial_ended)


@router.get("/expiring", response_model=List[SubscriptionRead])
def list_expiring(
    days: int | None = Query(default=None, ge=0),
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[SubscriptionRead]:
    return [SubscriptionRead.model_validate(item) for item in _manager(session, clock).get_expiring(days)]


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    return SubscriptionRead.model_validate(_manager(session, clock).get_subscription(subscription_id))


@router.post("/{subscription_id}/upgrade", response_model=PlanChangeRead)
def upgrade_subscription(
    subscription_id: UUID,
    payload: PlanChangeRequest,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> PlanChangeRead:
    result = _manager(session, clock).upgrade(subscription_id, payload.plan_id, reason=payload.reason, actor=payload.actor)
    return _change_read(result)


@router.post("/{subscription_id}/downgrade", response_model=PlanChangeRead)
def downgrade_subscription(
    subscription_id: UUID,
    payload: PlanChangeRequest,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> PlanChangeRead:
    result = _manager(session, clock).downgrade(
        subscription_id, payload.plan_id, reason=payload.reason, actor=payload.actor
    )
    return _change_read(result)


@router.get("/{subscription_id}/downgrade-state")
def get_downgrade_state(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict[str, str]:
    return {"state": _manager(session, clock).downgrade_state(subscription_id).value}


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: UUID,
    payload: CancelRequest,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    return SubscriptionRead.model_validate(_manager(session, clock).cancel(subscription_id, payload.reason))


@router.post("/{subscription_id}/renew", response_model=SubscriptionRead)
def renew_subscription(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    return SubscriptionRead.model_validate(_manager(session, clock).renew(subscription_id))


@router.post("/{subscription_id}/convert-trial", response_model=SubscriptionRead)
def convert_trial(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    return SubscriptionRead.model_validate(_manager(session, clock).convert_trial(subscription_id))


@router.get("/{subscription_id}/changes", response_model=List[ChangeRecordRead])
def list_changes(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[ChangeRecordRead]:
    manager = _manager(session, clock)
    manager.get_subscription(subscription_id)
    return [ChangeRecordRead.model_validate(item) for item in manager.get_change_records(subscription_id)]


@router.put("/{subscription_id}/usage-snapshot", response_model=SubscriptionRead)
def update_usage_snapshot(
    subscription_id: UUID,
    payload: UsageSnapshotUpdate,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead:
    subscription = _manager(session, clock).update_usage_snapshot(
        subscription_id, payload.user_count, payload.entity_count, payload.storage_gb
    )
    return SubscriptionRead.model_validate(subscription)


@router.get("/{subscription_id}/capacity", response_model=CapacityRead)
def check_capacity(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> CapacityRead:
    report = _manager(session, clock).check_capacity(subscription_id)
    return CapacityRead(**asdict(report))
