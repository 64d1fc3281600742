from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from app.api.deps import get_db
from app.schemas.pricing import (
    EvaluateRead,
    EvaluateRequest,
    PricingRuleCreate,
    PricingRuleRead,
    SimulationRead,
    SimulationRequest,
)
from app.services.pricing import PricingRuleService

router = APIRouter(prefix="/pricing", tags=["pricing"])


def _service(session: Session) -> PricingRuleService:
    return PricingRuleService(session)


@router.get("/rules", response_model=List[PricingRuleRead])
def list_rules(
    plan_id: UUID | None = None,
    include_inactive: bool = False,
    session: Session = Depends(get_db),
) -> List[PricingRuleRead]:
    rules = _service(session).list_rules(plan_id=plan_id, active_only=not include_inactive)
    return [PricingRuleRead.model_validate(rule) for rule in rules]


@router.post("/rules", response_model=PricingRuleRead, status_code=status.HTTP_201_CREATED)
def create_rule(payload: PricingRuleCreate, session: Session = Depends(get_db)) -> PricingRuleRead:
    return PricingRuleRead.model_validate(_service(session).create_rule(payload))


@router.get("/rules/{rule_id}", response_model=PricingRuleRead)
def get_rule(rule_id: UUID, session: Session = Depends(get_db)) -> PricingRuleRead:
    return PricingRuleRead.model_validate(_service(session).get_rule(rule_id))


@router.put("/rules/{rule_id}", response_model=PricingRuleRead)
def update_rule(rule_id: UUID, payload: PricingRuleCreate, session: Session = Depends(get_db)) -> PricingRuleRead:
    return PricingRuleRead.model_validate(_service(session).update_rule(rule_id, payload))


@router.delete("/rules/{rule_id}", response_model=PricingRuleRead)
def deactivate_rule(rule_id: UUID, session: Session = Depends(get_db)) -> PricingRuleRead:
    return PricingRuleRead.model_validate(_service(session).deactivate_rule(rule_id))


@router.post("/rules/{rule_id}/evaluate", response_model=EvaluateRead)
def evaluate_rule(rule_id: UUID, payload: EvaluateRequest, session: Session = Depends(get_db)) -> EvaluateRead:
    service = _service(session)
    rule = service.get_rule(rule_id)
    amount = service.evaluate(rule_id, payload.units, complexity=payload.complexity, basis=payload.basis)
    return EvaluateRead(rule_id=rule.id, rule_type=rule.rule_type, units=payload.units, amount=amount)


@router.post("/simulate", response_model=SimulationRead)
def simulate(payload: SimulationRequest, session: Session = Depends(get_db)) -> SimulationRead:
    result = _service(session).simulate(payload.plan_id, payload.units_by_entity, complexity=payload.complexity)
    return SimulationRead.model_validate(result)
