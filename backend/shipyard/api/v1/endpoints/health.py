"""
Health Check Endpoints

- /health       - liveness, no dependencies touched
- /health/ready - readiness: database and (when configured) Redis
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from typing import Dict, Any
import time

from shipyard.core.config import settings
from shipyard.core.logging_config import logger
from shipyard.core.redis_client import redis_client


router = APIRouter(prefix="/health", tags=["Health Checks"])


async def check_database() -> Dict[str, Any]:
    """Check database connectivity"""
    start = time.time()
    try:
        from shipyard.core.database import get_session_local
        from sqlalchemy import text

        session_factory = get_session_local()
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))

        return {"status": "healthy", "latency_ms": round((time.time() - start) * 1000, 2)}
    except Exception as e:
        logger.error(f"[HealthCheck] Database check failed: {e}")
        return {
            "status": "unhealthy",
            "latency_ms": round((time.time() - start) * 1000, 2),
            "error": str(e),
        }


async def check_redis() -> Dict[str, Any]:
    """Check Redis, only when it backs the conversation cache"""
    if settings.CONVERSATION_CACHE_BACKEND != "redis":
        return {"status": "skipped"}
    if not redis_client.connected:
        return {"status": "unhealthy", "error": "not connected"}

    start = time.time()
    try:
        await redis_client.redis.ping()
        return {"status": "healthy", "latency_ms": round((time.time() - start) * 1000, 2)}
    except Exception as e:
        logger.error(f"[HealthCheck] Redis check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


@router.get("")
async def health_check():
    """Liveness probe"""
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "environment": settings.ENVIRONMENT,
    }


@router.get("/ready")
async def readiness_check():
    """Readiness probe - 503 when a dependency is down"""
    checks = {
        "database": await check_database(),
        "redis": await check_redis(),
    }
    healthy = all(check["status"] in ("healthy", "skipped") for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy else "not_ready", "checks": checks},
    )
