"""
Smart Campaign Engine — FastAPI Backend
Watches running Meta campaigns, detects plateaus and rotates fresh
creative variants in under guardrails. All state persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from smart_campaign.config import get_settings
from smart_campaign.database import async_session, init_db, check_db_connection
from smart_campaign.auth import require_auth
from smart_campaign.routers import smart, cron
from smart_campaign.services.run_coordinator import RunCoordinator
from smart_campaign.services.scheduler import SmartScheduler
from smart_campaign.services.store_service import SmartStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


def build_engine_state(app: FastAPI, session_factory=async_session) -> None:
    """Wire store → coordinator → scheduler onto app.state (one set per process)."""
    store = SmartStore(session_factory)
    coordinator = RunCoordinator(store, settings=settings)
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.scheduler = SmartScheduler(
        coordinator,
        store,
        interval_minutes=settings.scheduler_interval_minutes,
        initial_delay_seconds=settings.scheduler_initial_delay_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Smart Campaign Engine...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    if settings.scheduler_enabled:
        app.state.scheduler.start()
    yield
    logger.info("Shutting down...")
    await app.state.scheduler.stop()


app = FastAPI(
    title="Smart Campaign Engine",
    description="Plateau detection and creative rotation for Meta ad campaigns",
    version="1.0.0",
    lifespan=lifespan,
)
build_engine_state(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers ─────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(smart.router, prefix="/api/smart", tags=["Smart Campaigns"], dependencies=_auth)
app.include_router(cron.router, prefix="/api")  # No auth: uses CRON_SECRET


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Smart Campaign Engine",
        "database": "connected" if db_ok else "disconnected",
        "scheduler": "running" if app.state.scheduler.running else "stopped",
    }
