"""Health check endpoint. Public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter

from src.config import get_settings
from src.services import database
from src.services.runtime import get_runtime

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthsync.health")


@router.get("/health")
async def health_check() -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check when Postgres is in use.
    """
    try:
        runtime = get_runtime()
    except RuntimeError:
        runtime = None
    settings = runtime.settings if runtime else get_settings()

    db_state = "in_memory"
    db_ok = True
    if not settings.use_in_memory_store:
        db_ok = False
        try:
            await database.fetchval("SELECT 1")
            db_ok = True
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
        db_state = "connected" if db_ok else "unreachable"

    providers = (
        {p.value: a.is_configured for p, a in runtime.adapters.items()} if runtime else {}
    )
    return {
        "status": "healthy" if db_ok and runtime else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": db_state,
        "providers": providers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
