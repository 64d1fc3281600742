from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_db
from app.schemas.billing import PlanCreate, PlanRead, PlanUpdate
from app.schemas.usage import BillableEntityCreate, BillableEntityRead, EntityLimitRead, EntityLimitSet
from app.services.plans import PlanService

router = APIRouter(tags=["plans"])


def _service(session: Session) -> PlanService:
    return PlanService(session)


@router.get("/plans", response_model=List[PlanRead])
def list_plans(include_inactive: bool = False, session: Session = Depends(get_db)) -> List[PlanRead]:
    plans = _service(session).list_plans(active_only=not include_inactive)
    return [PlanRead.model_validate(plan) for plan in plans]


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanCreate, session: Session = Depends(get_db)) -> PlanRead:
    return PlanRead.model_validate(_service(session).create_plan(payload))


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(plan_id: UUID, session: Session = Depends(get_db)) -> PlanRead:
    return PlanRead.model_validate(_service(session).get_plan(plan_id))


@router.patch("/plans/{plan_id}", response_model=PlanRead)
def update_plan(plan_id: UUID, payload: PlanUpdate, session: Session = Depends(get_db)) -> PlanRead:
    return PlanRead.model_validate(_service(session).update_plan(plan_id, payload))


@router.delete("/plans/{plan_id}", response_model=PlanRead)
def deactivate_plan(plan_id: UUID, session: Session = Depends(get_db)) -> PlanRead:
    return PlanRead.model_validate(_service(session).deactivate_plan(plan_id))


@router.put("/plans/{plan_id}/limits", response_model=EntityLimitRead)
def set_entity_limit(plan_id: UUID, payload: EntityLimitSet, session: Session = Depends(get_db)) -> EntityLimitRead:
    return EntityLimitRead.model_validate(_service(session).set_entity_limit(plan_id, payload))


@router.get("/entities", response_model=List[BillableEntityRead])
def list_entities(session: Session = Depends(get_db)) -> List[BillableEntityRead]:
    return [BillableEntityRead.model_validate(entity) for entity in _service(session).list_entities()]


@router.post("/entities", response_model=BillableEntityRead, status_code=status.HTTP_201_CREATED)
def register_entity(payload: BillableEntityCreate, session: Session = Depends(get_db)) -> BillableEntityRead:
    return BillableEntityRead.model_validate(_service(session).register_entity(payload))
