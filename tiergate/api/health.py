"""
Liveness and readiness probes.

Lightweight, unauthenticated, and never expose secrets or stack traces.
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from tiergate.core.database import check_connection, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "user_subscriptions",
    "usage_monthly_snapshots",
    "subscription_events",
]


@router.get("/healthz")
def healthz():
    """Liveness (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
