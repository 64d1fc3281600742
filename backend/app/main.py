from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.api.routes import health, invoices, plans, pricing, subscriptions, tenants, usage
from app.core.config import settings
from app.core.exceptions import BillingError
from app.core.logging_setup import logger
from app.db.session import init_db


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncGenerator[None, None]:
    # Inicializa banco / tabelas
    init_db()
    yield


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.project_name,
        debug=settings.debug,
        lifespan=lifespan,
    )

    logger.info("CareLedger Billing API inicializada")

    # ===============================================================
    # ERROS DE FATURAMENTO -> HTTP
    # ===============================================================
    @application.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("[%s %s] %s: %s", request.method, request.url.path, exc.error_kind, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder({"error": exc.error_kind, "detail": exc.message, "details": exc.details}),
        )

    # ===============================================================
    # ROTAS
    # ===============================================================
    application.include_router(health.router, prefix="/health")
    application.include_router(tenants.router, prefix=settings.api_v1_str)
    application.include_router(plans.router, prefix=settings.api_v1_str)
    application.include_router(subscriptions.router, prefix=settings.api_v1_str)
    application.include_router(usage.router, prefix=settings.api_v1_str)
    application.include_router(pricing.router, prefix=settings.api_v1_str)
    application.include_router(invoices.router, prefix=settings.api_v1_str)

    @application.get("/")
    def root():
        return {"service": settings.project_name}

    return application


app = create_app()
