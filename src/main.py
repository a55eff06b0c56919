"""HealthSync API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.config import Settings, get_settings
from src.middleware.jwt_auth import JWTAuthMiddleware
from src.routers import health, integrations, webhooks
from src.services.runtime import close_runtime, init_runtime

# ---------- Logging ----------

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting HealthSync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    await init_runtime(settings)
    yield
    await close_runtime()
    logger.info("HealthSync API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None, use_lifespan: bool = True) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="HealthSync API",
        description=(
            "Health data synchronization: OAuth connections to wearable providers, "
            "scheduled and webhook-driven sync, deduplicated storage."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan if use_lifespan else None,
    )

    # ---------- Middleware (last added runs first) ----------

    # JWT authentication
    app.add_middleware(JWTAuthMiddleware, settings=settings)

    # CORS is added last so it wraps auth and answers preflight requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(integrations.router, prefix=v1_prefix)

    return app


app = create_app()
