import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.core.config import get_settings
from app.db.base import get_session_factory
from app.db.redis import ping_redis

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness check.

    Returns 503 during graceful shutdown so the load balancer stops routing traffic.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "bounty-payments"},
        )
    return {"status": "healthy", "service": "bounty-payments"}


@router.get("/ready")
async def readiness_check():
    """Readiness check - verifies the database (and Redis, when it backs idempotency keys)."""
    checks = {"database": False}

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception:
        logger.error("database_health_check_failed", exc_info=True)

    if get_settings().idempotency_backend == "redis":
        checks["redis"] = await ping_redis()

    all_healthy = all(checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
