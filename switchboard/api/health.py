"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from switchboard import __version__
from switchboard.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis is optional for serving traffic, so only the database decides readiness.
    """
    checks = {"database": False, "redis": False}
    scheduler_heartbeat = None
    auto_assigner_heartbeat = None

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from switchboard.utils.redis import get_redis
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        scheduler_heartbeat = await redis.get("switchboard:worker_health:campaign_scheduler")
        auto_assigner_heartbeat = await redis.get("switchboard:worker_health:auto_assigner")
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    if checks["database"] and checks["redis"]:
        status = "ready"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unavailable"

    return {
        "status": status,
        "checks": checks,
        "campaign_scheduler_heartbeat": scheduler_heartbeat,
        "auto_assigner_heartbeat": auto_assigner_heartbeat,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
