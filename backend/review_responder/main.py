"""
Review Responder — FastAPI Backend
Polls App Store Connect and Google Play for new reviews, drafts replies with AI
and posts the ones the owner approves. All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from review_responder.config import get_settings
from review_responder.database import async_session, init_db, check_db_connection
from review_responder.auth import require_auth
from review_responder.connectors import all_connectors
from review_responder.rate_limiter import RateLimiter
from review_responder.routers import accounts, owners, reviews, scheduler as scheduler_router
from review_responder.scheduler import ReviewScheduler
from review_responder.services.notification_service import Notifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Review Responder...")
    app.state.post_limiter = RateLimiter(settings.post_rate_limit, settings.post_rate_window_seconds)
    app.state.scheduler = ReviewScheduler(
        session_factory=async_session,
        connectors=all_connectors(),
        notifier=Notifier(settings=settings),
        settings=settings,
    )
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
        app.state.scheduler.start()
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")
    app.state.scheduler.stop()


app = FastAPI(
    title="Review Responder",
    description="Store review ingestion, AI-drafted replies and owner approval",
    version="1.0.0",
    lifespan=lifespan,
)

# ── Register Routers ──────────────────────────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(owners.router, prefix="/api/owners", tags=["Owners"], dependencies=_auth)
app.include_router(accounts.router, prefix="/api/accounts", tags=["Accounts"], dependencies=_auth)
app.include_router(reviews.router, prefix="/api/reviews", tags=["Reviews"], dependencies=_auth)
app.include_router(scheduler_router.router, prefix="/api", tags=["Scheduler"])  # Per-route auth


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Review Responder",
        "database": "connected" if db_ok else "disconnected",
    }
