"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready). Readiness only
depends on the main database: without it no login can succeed, while any
single agency database being down only affects that agency's users.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.buildflow.api.deps import get_pool_manager
from src.buildflow.config import get_settings
from src.buildflow.core.database import ConnectionPoolManager

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


@router.get("/health/ready")
async def readiness_check(pool_manager: ConnectionPoolManager = Depends(get_pool_manager)):
    """Readiness check: verifies main database connectivity.

    Returns 200 if it passes, 503 otherwise.
    """
    checks: dict = {"database": "ok", "tenant_pools": pool_manager.pool_count}

    try:
        async with pool_manager.main_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
