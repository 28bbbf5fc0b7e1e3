"""
Health check endpoints with database pool and sweep scheduler monitoring.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "quote-engine"}


@router.get("/readyz")
async def readyz(request: Request):
    """
    Readiness check: database pool plus the quote expiration scheduler.
    """
    checks = {}
    overall_ok = True

    # 1) Database pool
    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)

        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }

        if "pool_stats" in db_health:
            pool_stats = db_health["pool_stats"]
            checks["database"].update(
                {
                    "pool_size": pool_stats.get("pool_size", 0),
                    "pool_available": pool_stats.get("pool_available", 0),
                    "connection_time_ms": db_health.get("connection_time_ms", 0),
                }
            )

        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")

        log_health_check(
            "database", is_healthy, checks["database"]["latency_ms"], checks["database"].get("error")
        )
        overall_ok = overall_ok and is_healthy

    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        log_health_check("database", False, checks["database"]["latency_ms"], checks["database"]["error"])
        overall_ok = False

    # 2) Quote expiration sweep
    scheduler = getattr(request.app.state, "quote_expiration_scheduler", None)
    if scheduler is None:
        checks["quote_expiration"] = {
            "ok": not settings.QUOTE_SWEEP_ENABLED,
            "enabled": settings.QUOTE_SWEEP_ENABLED,
            "scheduler_running": False,
        }
    else:
        sweep_health = scheduler.health_check()
        checks["quote_expiration"] = {
            "ok": sweep_health["healthy"],
            "enabled": True,
            "scheduler_running": sweep_health["scheduler_running"],
            "last_run_time": sweep_health["last_run_time"],
            "is_overdue": sweep_health["is_overdue"],
        }
    overall_ok = overall_ok and checks["quote_expiration"]["ok"]

    # 3) Configuration
    config_issues = []
    if not settings.RESEND_API_KEY:
        config_issues.append("RESEND_API_KEY not set, email delivery disabled")

    checks["configuration"] = {
        "ok": True,
        "issues": config_issues if config_issues else None,
        "environment": settings.environment,
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/database")
async def database_health():
    """Detailed database pool health information."""
    return await db_health_check()
