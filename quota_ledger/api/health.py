"""
Liveness and readiness probes.

Safe to expose: no secrets, database names or stack traces in responses.
"""

import logging
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError

from quota_ledger.core.database import REQUIRED_TABLES, get_engine
from quota_ledger.core.logging import latency_bucket_ms

logger = logging.getLogger("quota_ledger")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + quota tables."""
    start = time.perf_counter()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
    except SQLAlchemyError as e:
        logger.error("[readyz] readiness check failed", extra={"error": type(e).__name__})
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    latency_ms = (time.perf_counter() - start) * 1000
    logger.info("[readyz] ok", extra={"latency_bucket": latency_bucket_ms(latency_ms)})
    return {"status": "ok"}
