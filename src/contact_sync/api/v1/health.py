"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
pings the database and reports whether the Wealthbox credentials are set.
"""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.contact_sync.config import get_settings
from src.contact_sync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    """Check database connectivity and Wealthbox configuration."""
    checks: dict = {"database": "ok", "wealthbox": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    if not get_settings().WEALTHBOX_API_KEY:
        checks["wealthbox"] = "no_key"

    return checks


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: 200 if the database answers, 503 otherwise.

    A missing Wealthbox key does not make the service unready; the listing
    endpoints still serve previously synced data.
    """
    checks = await _check_dependencies()
    healthy = checks.get("database") == "ok"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
        },
    )
