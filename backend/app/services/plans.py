from __future__ import annotations

from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.billing import LIVE_STATUSES, Subscription, SubscriptionPlan
from app.models.usage import BillableEntity, PlanEntityLimit
from app.schemas.billing import PlanCreate, PlanUpdate
from app.schemas.usage import BillableEntityCreate, EntityLimitSet

# Fields that may still change while a live subscription points at the plan.
ADMIN_FIELDS = {"name", "description", "is_active"}


class PlanService:
    """Plan catalogue plus the billable entities and per-plan usage limits."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = self.session.get(SubscriptionPlan, plan_id)
        if not plan:
            raise NotFoundError("Subscription plan not found", {"plan_id": str(plan_id)})
        return plan

    def list_plans(self, active_only: bool = True) -> list[SubscriptionPlan]:
        statement = select(SubscriptionPlan).order_by(SubscriptionPlan.tier_rank, SubscriptionPlan.name)
        if active_only:
            statement = statement.where(SubscriptionPlan.is_active.is_(True))
        return list(self.session.exec(statement).all())

    def create_plan(self, payload: PlanCreate) -> SubscriptionPlan:
        plan = SubscriptionPlan(**payload.model_dump())
        with atomic(self.session, "create_plan"):
            self.session.add(plan)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError("Plan code already in use", {"code": payload.code}) from exc
        self.session.refresh(plan)
        logger.info("Plano criado: %s (rank %s)", plan.code, plan.tier_rank)
        return plan

    def is_referenced(self, plan_id: UUID) -> bool:
        live = self.session.exec(
            select(Subscription.id)
            .where(Subscription.status.in_(LIVE_STATUSES))
            .where((Subscription.plan_id == plan_id) | (Subscription.pending_plan_id == plan_id))
        ).first()
        return live is not None

    def update_plan(self, plan_id: UUID, payload: PlanUpdate) -> SubscriptionPlan:
        plan = self.get_plan(plan_id)
        update_data = payload.model_dump(exclude_unset=True)
        locked = set(update_data) - ADMIN_FIELDS
        if locked and self.is_referenced(plan.id):
            raise ConflictError(
                "Plan is referenced by a live subscription",
                {"plan_id": str(plan.id), "fields": sorted(locked)},
            )
        with atomic(self.session, "update_plan"):
            for field, value in update_data.items():
                setattr(plan, field, value)
            self.session.add(plan)
        self.session.refresh(plan)
        return plan

    def deactivate_plan(self, plan_id: UUID) -> SubscriptionPlan:
        plan = self.get_plan(plan_id)
        with atomic(self.session, "deactivate_plan"):
            plan.is_active = False
            self.session.add(plan)
        self.session.refresh(plan)
        logger.info("Plano desativado: %s", plan.code)
        return plan

    # entities

    def register_entity(self, payload: BillableEntityCreate) -> BillableEntity:
        entity = BillableEntity(**payload.model_dump())
        with atomic(self.session, "register_entity"):
            self.session.add(entity)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError("Entity code already in use", {"code": payload.code}) from exc
        self.session.refresh(entity)
        return entity

    def get_entity(self, entity_id: UUID) -> BillableEntity:
        entity = self.session.get(BillableEntity, entity_id)
        if not entity:
            raise NotFoundError("Billable entity not found", {"entity_id": str(entity_id)})
        return entity

    def list_entities(self) -> list[BillableEntity]:
        return list(self.session.exec(select(BillableEntity).order_by(BillableEntity.code)).all())

    def set_entity_limit(self, plan_id: UUID, payload: EntityLimitSet) -> PlanEntityLimit:
        plan = self.get_plan(plan_id)
        entity = self.get_entity(payload.entity_id)
        if payload.usage_limit is not None and payload.usage_limit < 0:
            raise ValidationError("Usage limit must not be negative")
        if payload.soft_limit is not None:
            if payload.soft_limit < 0:
                raise ValidationError("Soft limit must not be negative")
            if payload.usage_limit is not None and payload.soft_limit > payload.usage_limit:
                raise ValidationError(
                    "Soft limit cannot exceed the usage limit",
                    {"soft_limit": payload.soft_limit, "usage_limit": payload.usage_limit},
                )
        limit = self.get_entity_limit(plan.id, entity.id)
        with atomic(self.session, "set_entity_limit"):
            if limit is None:
                limit = PlanEntityLimit(plan_id=plan.id, entity_id=entity.id)
            limit.usage_limit = payload.usage_limit
            limit.soft_limit = payload.soft_limit
            self.session.add(limit)
        self.session.refresh(limit)
        return limit

    def get_entity_limit(self, plan_id: UUID, entity_id: UUID) -> PlanEntityLimit | None:
        return self.session.exec(
            select(PlanEntityLimit)
            .where(PlanEntityLimit.plan_id == plan_id)
            .where(PlanEntityLimit.entity_id == entity_id)
        ).first()
