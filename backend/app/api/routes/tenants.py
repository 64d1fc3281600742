from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_clock, get_db
from app.schemas.billing import SubscriptionRead, TenantCreate, TenantRead
from app.services.subscription import SubscriptionLifecycleManager
from app.services.tenant import TenantService
from app.utils.clock import Clock

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, session: Session = Depends(get_db)) -> TenantRead:
    tenant = TenantService(session).create_tenant(payload)
    return TenantRead.model_validate(tenant)


@router.get("", response_model=List[TenantRead])
def list_tenants(session: Session = Depends(get_db)) -> List[TenantRead]:
    return [TenantRead.model_validate(tenant) for tenant in TenantService(session).list_tenants()]


@router.get("/{tenant_id}", response_model=TenantRead)
def get_tenant(tenant_id: UUID, session: Session = Depends(get_db)) -> TenantRead:
    return TenantRead.model_validate(TenantService(session).get_tenant(tenant_id))


@router.get("/{tenant_id}/subscription", response_model=SubscriptionRead | None)
def get_active_subscription(
    tenant_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> SubscriptionRead | None:
    TenantService(session).get_tenant(tenant_id)
    subscription = SubscriptionLifecycleManager(session, clock=clock).get_active_subscription(tenant_id)
    return SubscriptionRead.model_validate(subscription) if subscription else None


@router.get("/{tenant_id}/subscriptions", response_model=List[SubscriptionRead])
def get_subscription_history(
    tenant_id: UUID,
    session: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> List[SubscriptionRead]:
    TenantService(session).get_tenant(tenant_id)
    history = SubscriptionLifecycleManager(session, clock=clock).get_history(tenant_id)
    return [SubscriptionRead.model_validate(item) for item in history]
