from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.exceptions import ConflictError, NotFoundError
from app.core.logging_setup import logger
from app.db.transaction import atomic
from app.models.tenant import Tenant
from app.schemas.billing import TenantCreate


class TenantService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        tenant = Tenant(**payload.model_dump())
        with atomic(self.session, "create_tenant"):
            self.session.add(tenant)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise ConflictError("Tenant slug already in use", {"slug": payload.slug}) from exc
        self.session.refresh(tenant)
        logger.info("Tenant criado: %s (%s)", tenant.slug, tenant.id)
        return tenant

    def get_tenant(self, tenant_id: str | UUID) -> Tenant:
        tenant = self.session.get(Tenant, UUID(str(tenant_id)))
        if not tenant:
            raise NotFoundError("Tenant not found", {"tenant_id": str(tenant_id)})
        return tenant

    def list_tenants(self, include_inactive: bool = False) -> Iterable[Tenant]:
        statement = select(Tenant).order_by(Tenant.name)
        if not include_inactive:
            statement = statement.where(Tenant.is_active.is_(True))
        return self.session.exec(statement).all()
