"""
Health and metrics endpoints.

Lightweight operational checks that never expose secrets.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import inspect

from letterbox.core.database import check_connection, get_engine
from letterbox.core.metrics import METRICS

logger = logging.getLogger("letterbox")

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "usage_counters",
    "shared_contents",
    "user_items",
    "ai_usage_daily",
    "ai_generation_locks",
    "billing_webhook_events",
]


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "database_unreachable"})

    present = set(inspect(get_engine()).get_table_names())
    missing = [name for name in REQUIRED_TABLES if name not in present]
    if missing:
        logger.warning(f"readyz: missing tables {missing}")
        return JSONResponse(status_code=503, content={"status": "not_ready", "missing_tables": missing})
    return {"status": "ready"}


@router.get("/metrics", response_class=PlainTextResponse)
def metrics():
    return PlainTextResponse(METRICS.export_prometheus(), media_type="text/plain; version=0.0.4")
