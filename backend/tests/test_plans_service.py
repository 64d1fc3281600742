from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.schemas.billing import PlanCreate, PlanUpdate, TenantCreate
from app.schemas.usage import BillableEntityCreate, EntityLimitSet
from app.services.plans import PlanService
from app.services.subscription import SubscriptionLifecycleManager
from app.services.tenant import TenantService


def _plan_payload(code: str, rank: int = 1) -> PlanCreate:
    return PlanCreate(
        name=code.title(),
        code=code,
        price_monthly=Decimal("100.00"),
        price_yearly=Decimal("1000.00"),
        tier_rank=rank,
    )


def test_tenant_slug_is_unique(db_session):
    service = TenantService(db_session)
    tenant = service.create_tenant(TenantCreate(name="Hospital Norte", slug="hospital-norte"))

    assert service.get_tenant(tenant.id).slug == "hospital-norte"
    with pytest.raises(ConflictError):
        service.create_tenant(TenantCreate(name="Outro", slug="hospital-norte"))
    with pytest.raises(NotFoundError):
        service.get_tenant(uuid4())


def test_plans_are_listed_by_tier(db_session):
    service = PlanService(db_session)
    service.create_plan(_plan_payload("premium", 3))
    service.create_plan(_plan_payload("starter", 1))
    retired = service.create_plan(_plan_payload("legacy", 2))
    service.deactivate_plan(retired.id)

    assert [plan.code for plan in service.list_plans()] == ["starter", "premium"]
    assert [plan.code for plan in service.list_plans(active_only=False)] == ["starter", "legacy", "premium"]
    with pytest.raises(ConflictError):
        service.create_plan(_plan_payload("starter"))


def test_referenced_plan_only_accepts_cosmetic_updates(db_session, clock, factory):
    service = PlanService(db_session)
    plan = service.create_plan(_plan_payload("standard"))
    SubscriptionLifecycleManager(db_session, clock=clock).create(factory.tenant().id, plan.id)

    renamed = service.update_plan(plan.id, PlanUpdate(name="Standard Plus"))
    assert renamed.name == "Standard Plus"
    with pytest.raises(ConflictError):
        service.update_plan(plan.id, PlanUpdate(price_monthly=Decimal("120.00")))


def test_entity_limits_are_upserted_and_validated(db_session):
    service = PlanService(db_session)
    plan = service.create_plan(_plan_payload("standard"))
    entity = service.register_entity(BillableEntityCreate(code="discharge_summary", name="Discharge summary"))

    service.set_entity_limit(plan.id, EntityLimitSet(entity_id=entity.id, usage_limit=100))
    updated = service.set_entity_limit(plan.id, EntityLimitSet(entity_id=entity.id, usage_limit=200, soft_limit=150))

    assert (updated.usage_limit, updated.soft_limit) == (200, 150)
    assert service.get_entity_limit(plan.id, entity.id).id == updated.id
    with pytest.raises(ValidationError):
        service.set_entity_limit(plan.id, EntityLimitSet(entity_id=entity.id, usage_limit=10, soft_limit=20))
    with pytest.raises(NotFoundError):
        service.set_entity_limit(plan.id, EntityLimitSet(entity_id=uuid4(), usage_limit=10))
