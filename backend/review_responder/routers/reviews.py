"""
Reviews Router — Owner approval workflow.
List what is waiting, draft a reply with AI, approve (optionally edited) or
reject, then post the approved reply back to the store.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from review_responder.connectors.base import ReviewConnector, VendorAuthError
from review_responder.database import get_db
from review_responder.dependencies import get_connectors, get_drafting_service, get_post_limiter
from review_responder.models import Review
from review_responder.rate_limiter import RateLimiter
from review_responder.routers.owners import get_owner_or_404
from review_responder.services import account_service, review_service
from review_responder.services.ai_service import DraftingService
from review_responder.services.review_service import (
    InvalidTransitionError,
    MissingDraftError,
    RateLimitedError,
)
from review_responder.utils import parse_uuid

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ────────────────────────────────────────────────────

class DraftRequest(BaseModel):
    feedback: Optional[str] = None  # Refine the current draft instead of starting over


class ApproveRequest(BaseModel):
    final_text: Optional[str] = None


# ── Helpers ───────────────────────────────────────────────────────────

async def _get_review(db: AsyncSession, review_id: str) -> Review:
    review = await review_service.get_review(db, parse_uuid(review_id, "review_id"))
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


async def _serialize(db: AsyncSession, review: Review) -> dict:
    return review_service.review_to_dict(review, await review_service.current_response(db, review.id))


# ── Endpoints ─────────────────────────────────────────────────────────

@router.get("")
async def list_pending_reviews(
    owner_id: str = Query(...),
    resource_id: Optional[list[str]] = Query(None),
    limit: int = Query(50, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Reviews awaiting a decision. Listing them counts as surfacing them to the owner."""
    owner = await get_owner_or_404(db, owner_id)
    resource_ids = [parse_uuid(r, "resource_id") for r in resource_id] if resource_id else None
    reviews = await review_service.list_pending_reviews(db, owner.id, resource_ids=resource_ids, limit=limit)
    await review_service.mark_notified(db, reviews)
    return [await _serialize(db, r) for r in reviews]


@router.get("/{review_id}")
async def get_review(review_id: str, db: AsyncSession = Depends(get_db)):
    return await _serialize(db, await _get_review(db, review_id))


@router.post("/{review_id}/draft")
async def generate_draft(
    review_id: str,
    payload: DraftRequest = DraftRequest(),
    db: AsyncSession = Depends(get_db),
    drafting: DraftingService = Depends(get_drafting_service),
    connectors: dict[str, ReviewConnector] = Depends(get_connectors),
):
    review = await _get_review(db, review_id)
    connector = connectors.get(review.store)
    if connector is None:
        raise HTTPException(status_code=400, detail=f"Unsupported store: {review.store}")
    max_length = connector.max_response_length

    try:
        current = await review_service.current_response(db, review.id)
        if payload.feedback and current:
            text = await drafting.refine_response(
                current.final_text or current.ai_generated_text,
                payload.feedback,
                max_length=max_length,
            )
        else:
            prefs = await account_service.get_preferences(db, review.owner_id)
            text = await drafting.generate_response(
                resource_name=review.resource.name,
                store=review.store,
                rating=review.rating,
                body=review.body,
                max_length=max_length,
                title=review.title,
                reviewer_name=review.reviewer_name,
                custom_instructions=prefs.get("custom_instructions"),
            )
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"AI draft failed: {e}")

    try:
        await review_service.create_draft(db, review, text)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _serialize(db, review)


@router.post("/{review_id}/approve")
async def approve_review(review_id: str, payload: ApproveRequest = ApproveRequest(), db: AsyncSession = Depends(get_db)):
    review = await _get_review(db, review_id)
    try:
        await review_service.approve(db, review, final_text=payload.final_text)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MissingDraftError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return await _serialize(db, review)


@router.post("/{review_id}/reject")
async def reject_review(review_id: str, db: AsyncSession = Depends(get_db)):
    review = await _get_review(db, review_id)
    try:
        await review_service.reject(db, review)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return await _serialize(db, review)


@router.post("/{review_id}/post")
async def post_review_response(
    review_id: str,
    db: AsyncSession = Depends(get_db),
    connectors: dict[str, ReviewConnector] = Depends(get_connectors),
    limiter: RateLimiter = Depends(get_post_limiter),
):
    """Send the approved reply. A failed post leaves the review `failed`; approve it again to retry."""
    review = await _get_review(db, review_id)
    connector = connectors.get(review.store)
    if connector is None:
        raise HTTPException(status_code=400, detail=f"Unsupported store: {review.store}")

    try:
        result = await review_service.post_approved_response(db, review, connector, limiter)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (MissingDraftError, LookupError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RateLimitedError as e:
        reset_at = datetime.fromtimestamp(e.reset_at, tz=timezone.utc)
        retry_after = max(int(e.reset_at - datetime.now(timezone.utc).timestamp()), 1)
        raise HTTPException(
            status_code=429,
            detail=f"Too many replies for this account. Try again after {reset_at.isoformat()}.",
            headers={"Retry-After": str(retry_after)},
        )
    except Exception as e:
        # Keep the recorded failure (and any account invalidation); get_db rolls back on raise
        await db.commit()
        status = 401 if isinstance(e, VendorAuthError) else 502
        raise HTTPException(status_code=status, detail=str(e))

    response = await _serialize(db, review)
    response["truncated"] = result.truncated
    return response
