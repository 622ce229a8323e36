"""Request-scoped access to the long-lived services the app creates at startup."""

from fastapi import HTTPException, Request

from review_responder.connectors.base import ReviewConnector
from review_responder.rate_limiter import RateLimiter
from review_responder.scheduler import ReviewScheduler
from review_responder.services.ai_service import DraftingService, create_drafting_service


def get_scheduler(request: Request) -> ReviewScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialized")
    return scheduler


def get_connectors(request: Request) -> dict[str, ReviewConnector]:
    return get_scheduler(request).connectors


def get_post_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "post_limiter", None)
    if limiter is None:
        raise HTTPException(status_code=503, detail="Rate limiter not initialized")
    return limiter


def get_drafting_service() -> DraftingService:
    try:
        return create_drafting_service()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))
