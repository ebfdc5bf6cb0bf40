# app/routes/health.py
"""
Health check endpoints with database pool and Redis monitoring.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "grooming-scheduler"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check for every dependency of the configured backend.

    The in-memory backend has no external dependencies, so only the
    configuration is checked.
    """
    checks = {}
    overall_ok = True
    uses_postgres = settings.SCHEDULING_BACKEND == "postgres"

    if uses_postgres:
        # 1) Redis health check
        t0 = time.time()
        try:
            redis_ok = await fast_redis.ping()
            latency_ms = round((time.time() - t0) * 1000, 1)
            checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
            log_health_check("redis", bool(redis_ok), latency_ms)
            overall_ok = overall_ok and bool(redis_ok)
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            log_health_check("redis", False, round((time.time() - t0) * 1000, 1), error=str(e))
            overall_ok = False

        # 2) Database pool health check
        t0 = time.time()
        try:
            db_health = await db_health_check()
            is_healthy = db_health.get("healthy", False)
            latency_ms = round((time.time() - t0) * 1000, 1)

            checks["database"] = {"ok": is_healthy, "latency_ms": latency_ms}

            if "pool_stats" in db_health:
                pool_stats = db_health["pool_stats"]
                checks["database"].update(
                    {
                        "pool_size": pool_stats.get("pool_size", 0),
                        "pool_available": pool_stats.get("pool_available", 0),
                        "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                        "connection_time_ms": db_health.get("connection_time_ms", 0),
                    }
                )

            if "warnings" in db_health:
                checks["database"]["warnings"] = db_health["warnings"]

            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")

            log_health_check("database", is_healthy, latency_ms, error=checks["database"].get("error"))
            overall_ok = overall_ok and is_healthy

        except Exception as e:
            checks["database"] = {
                "ok": False,
                "error": f"{type(e).__name__}: {e}",
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = False

    # 3) Configuration checks
    config_issues = []

    if uses_postgres and not settings.SUPABASE_DB_URL:
        config_issues.append("SUPABASE_DB_URL not set")

    if uses_postgres and not settings.REDIS_URL:
        config_issues.append("REDIS_URL not set")

    if not settings.SUPABASE_URL and not settings.SUPABASE_JWKS_URL:
        config_issues.append("SUPABASE_URL not set")

    try:
        settings.business_tz()
    except Exception as e:
        config_issues.append(f"BUSINESS_TIMEZONE invalid: {e}")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
        "backend": settings.SCHEDULING_BACKEND,
        "timezone": settings.BUSINESS_TIMEZONE,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
