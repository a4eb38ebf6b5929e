"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, Sentry, lifespan events wiring repositories and services onto app.state,
the health routes and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.middleware.tenant import TenantAuthMiddleware
from src.app.api.v1 import health
from src.app.api.v1.router import router as v1_router
from src.app.config import get_settings
from src.app.core.database import close_db, get_session
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.deals.repository import DealRepository
from src.app.deals.service import DealService
from src.app.pipelines.repository import PipelineRepository
from src.app.pipelines.service import PipelineService


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire services and Sentry on startup, close DB on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    deal_repository = DealRepository(session_factory=get_session)
    pipeline_repository = PipelineRepository(session_factory=get_session)
    app.state.deal_repository = deal_repository
    app.state.pipeline_repository = pipeline_repository
    app.state.deal_service = DealService(deal_repository, pipeline_repository, settings)
    app.state.pipeline_service = PipelineService(pipeline_repository, deal_repository)
    log.info("app.services_initialized", environment=settings.ENVIRONMENT.value)

    yield

    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Pipeline CRM API",
        version="0.1.0",
        description="Multi-tenant CRM for deals moving through sales pipelines",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # Tenant middleware (inner -- resolves the organization from JWT/header)
    app.add_middleware(TenantAuthMiddleware)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(health.router)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
