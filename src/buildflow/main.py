"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events that own the connection pool manager, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.buildflow.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.buildflow.api.v1.router import router as v1_router
from src.buildflow.auth.locator import UserLocator
from src.buildflow.config import get_settings
from src.buildflow.core.database import ConnectionPoolManager
from src.buildflow.core.monitoring import MetricsMiddleware, get_metrics_response
from src.buildflow.core.security import ensure_signing_secret


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: validate config and build pools on startup, dispose on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    # A missing signing secret is a deployment error; refuse to start
    ensure_signing_secret(settings)

    pool_manager = ConnectionPoolManager(settings)
    app.state.pool_manager = pool_manager
    app.state.user_locator = UserLocator(pool_manager, settings)
    log.info("app.started", environment=settings.ENVIRONMENT.value)

    try:
        yield
    finally:
        await pool_manager.dispose()
        log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="BuildFlow Auth API",
        version="0.1.0",
        description="Multi-tenant authentication and database routing for BuildFlow agencies",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
