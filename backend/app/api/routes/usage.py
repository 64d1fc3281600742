from datetime import datetime
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_clock, get_db
from app.models.usage import UsageBillingStatus
from app.schemas.usage import UsageAlertRead, UsageRecordCreate, UsageRecordRead, UsageSummaryRead
from app.services.usage import UsageMeter
from app.utils.clock import Clock

router = APIRouter(tags=["usage"])


def _meter(session: Session, clock: Clock) -> UsageMeter:
    return UsageMeter(session, clock=clock)


@router.post("/usage", response_model=UsageRecordRead, status_code=status.HTTP_201_CREATED)
def record_usage(
    payload: UsageRecordCreate,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> UsageRecordRead:
    record = _meter(session, clock).record_usage(
        payload.subscription_id,
        payload.entity_id,
        payload.units,
        complexity=payload.complexity,
        metadata=payload.details,
    )
    return UsageRecordRead.model_validate(record)


@router.get("/subscriptions/{subscription_id}/usage/summary", response_model=UsageSummaryRead)
def get_usage_summary(
    subscription_id: UUID,
    period_start: datetime,
    period_end: datetime,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> UsageSummaryRead:
    units = _meter(session, clock).get_usage_summary(subscription_id, period_start, period_end)
    return UsageSummaryRead(
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
        units_by_entity=units,
        total_units=sum(units.values()),
    )


@router.get("/subscriptions/{subscription_id}/usage/records", response_model=List[UsageRecordRead])
def list_usage_records(
    subscription_id: UUID,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    billing_status: UsageBillingStatus | None = None,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[UsageRecordRead]:
    records = _meter(session, clock).list_usage_records(subscription_id, period_start, period_end, billing_status)
    return [UsageRecordRead.model_validate(record) for record in records]


@router.get("/subscriptions/{subscription_id}/alerts", response_model=List[UsageAlertRead])
def get_active_alerts(
    subscription_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[UsageAlertRead]:
    return [UsageAlertRead.model_validate(alert) for alert in _meter(session, clock).get_active_alerts(subscription_id)]


@router.post("/alerts/{alert_id}/resolve", response_model=UsageAlertRead)
def resolve_alert(
    alert_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> UsageAlertRead:
    return UsageAlertRead.model_validate(_meter(session, clock).resolve_alert(alert_id))
