"""
Group calendar sync service - FastAPI Application Entry Point.

Feature-based modular architecture:
  sync/    the reconciliation engine and its routes
  events/  event lifecycle operations (delete, occurrence edits, rain check)
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from groupcal.config import get_settings
from groupcal.core.dependencies import get_sync_scheduler

# ── Feature Routers ──────────────────────────────────────
from groupcal.features.events.router import router as events_router
from groupcal.features.sync.router import router as sync_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup & shutdown."""
    settings = get_settings()
    logger.info(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} starting...")
    logger.info(f"🔗 Supabase: {settings.SUPABASE_URL[:40]}...")
    scheduler = get_sync_scheduler()
    scheduler.start()
    yield
    scheduler.shutdown()
    logger.info("👋 Shutting down...")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Merged group calendars, synced with each member's device calendar",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Register Feature Routers ─────────────────────────
    app.include_router(sync_router, prefix="/api/sync", tags=["Sync"])
    app.include_router(events_router, prefix="/api/events", tags=["Events"])

    # ── Health Check ─────────────────────────────────────
    @app.get("/health", tags=["System"])
    async def health_check():
        return {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
        }

    return app


app = create_app()
