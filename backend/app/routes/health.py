"""Health check routes."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter

from ..database import EVENTS_TABLE, get_supabase_client
from ..logging_config import get_logger

logger = get_logger("whtzup.health")
router = APIRouter(tags=["health"])

_STARTED = time.monotonic()


@router.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "whtzup-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@router.get("/api/health")
async def health():
    """Liveness check; does not touch the database."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - _STARTED, 3),
    }


@router.get("/api/health/detailed")
async def health_detailed():
    """Health check with actual database verification."""
    db_status = "disconnected"
    try:
        db = get_supabase_client()
        db.table(EVENTS_TABLE).select("id").limit(1).execute()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        db_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"database": db_status},
    }
