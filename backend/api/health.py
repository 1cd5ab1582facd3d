"""
Health and readiness endpoints.

Liveness has no dependencies. Readiness requires the database and the
entitlement tables; Redis is reported but never fails readiness because quota
leases fail open without it.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy import inspect

from backend.core.database import check_connection, get_engine
from backend.core.services import Services, get_services

logger = logging.getLogger("ecoscore")

root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "entitlements",
    "quota_counters",
    "billing_events",
]


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(services: Services = Depends(get_services)):
    """Readiness check: DB connectivity + required tables, cache reported."""
    cache = "disabled"
    if services.redis is not None:
        try:
            services.redis.ping()
            cache = "ok"
        except RedisError:
            cache = "degraded"

    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable", "cache": cache})

    try:
        inspector = inspect(get_engine())
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail, "cache": cache})

        return {"status": "ok", "cache": cache}
    except Exception as e:
        logger.error(f"[readyz] schema inspection failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "schema check failed", "cache": cache})
