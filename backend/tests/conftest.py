from __future__ import annotations

import os
import uuid
from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from app.api.deps import get_clock, get_db
from app.db import session as db_session_module
from app.main import app
from app.models.billing import BillingCycle, SubscriptionPlan
from app.models.tenant import Tenant
from app.models.usage import BillableEntity, PlanEntityLimit
from app.utils.clock import FrozenClock

pytestmark = pytest.mark.anyio

# 2026-04-01 -> 2026-05-01 is a 30-day monthly cycle
START = datetime(2026, 4, 1, 9, 0, 0)


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    is_postgres = test_database_url.startswith("postgresql")

    admin_engine = None
    schema_name = None

    if is_postgres:
        schema_name = f"test_{uuid.uuid4().hex}"
        admin_engine = create_engine(test_database_url, future=True)
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
            )
        client_encoding = os.getenv("POSTGRES_CLIENT_ENCODING", "UTF8")
        connect_args = {"options": f"-csearch_path={schema_name},public -cclient_encoding={client_encoding}"}
        engine = create_engine(test_database_url, connect_args=connect_args, future=True)
    else:
        engine = create_engine(test_database_url, connect_args={"check_same_thread": False})

    SQLModel.metadata.create_all(bind=engine)

    original_engine = db_session_module.engine
    db_session_module.engine = engine

    yield engine

    db_session_module.engine = original_engine
    engine.dispose()
    if is_postgres and admin_engine and schema_name:
        with admin_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                text(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            )
        admin_engine.dispose()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def client(db_engine, clock) -> TestClient:
    def override_db():
        with Session(db_engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_clock, None)


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


class BillingFactory:
    """Inserts catalogue rows directly, bypassing the services under test."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def tenant(self, name: str = "Hospital Teste") -> Tenant:
        tenant = Tenant(name=name, slug=f"tenant-{uuid.uuid4().hex[:8]}")
        self.session.add(tenant)
        self.session.commit()
        self.session.refresh(tenant)
        return tenant

    def plan(
        self,
        code: str,
        price: str,
        rank: int,
        *,
        yearly: str | None = None,
        trial_days: int | None = None,
        max_users: int | None = None,
        max_entities: int | None = None,
        storage_quota_gb: str | None = None,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            name=code.title(),
            code=f"{code}-{uuid.uuid4().hex[:6]}",
            price_monthly=Decimal(price),
            price_yearly=Decimal(yearly) if yearly else Decimal(price) * 10,
            billing_cycle=BillingCycle.MONTHLY,
            trial_days=trial_days,
            max_users=max_users,
            max_entities=max_entities,
            storage_quota_gb=Decimal(storage_quota_gb) if storage_quota_gb else None,
            tier_rank=rank,
        )
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        return plan

    def entity(self, code: str = "patient_record", module: str | None = "clinical") -> BillableEntity:
        entity = BillableEntity(code=f"{code}-{uuid.uuid4().hex[:6]}", name=code.replace("_", " "), module=module)
        self.session.add(entity)
        self.session.commit()
        self.session.refresh(entity)
        return entity

    def limit(
        self,
        plan: SubscriptionPlan,
        entity: BillableEntity,
        usage_limit: int | None,
        soft_limit: int | None = None,
    ) -> PlanEntityLimit:
        limit = PlanEntityLimit(plan_id=plan.id, entity_id=entity.id, usage_limit=usage_limit, soft_limit=soft_limit)
        self.session.add(limit)
        self.session.commit()
        self.session.refresh(limit)
        return limit


@pytest.fixture()
def factory(db_session) -> BillingFactory:
    return BillingFactory(db_session)
