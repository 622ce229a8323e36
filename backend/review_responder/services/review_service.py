"""
Review Service — Ingested reviews and their drafted replies.

Status lifecycle:
    pending -> notified -> approved -> responded
    pending/notified -> approved | rejected
    approved -> failed (post error recorded); failed -> approved retries the post
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from review_responder.connectors.base import (
    FailureKind,
    NormalizedReview,
    PostResult,
    ReviewConnector,
    VendorAuthError,
)
from review_responder.models import Account, Resource, Response, Review, ReviewStatus
from review_responder.rate_limiter import RateLimiter
from review_responder.services import account_service
from review_responder.utils import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


TRANSITIONS: dict[str, set[str]] = {
    ReviewStatus.PENDING.value: {ReviewStatus.NOTIFIED.value, ReviewStatus.APPROVED.value, ReviewStatus.REJECTED.value},
    ReviewStatus.NOTIFIED.value: {ReviewStatus.APPROVED.value, ReviewStatus.REJECTED.value},
    ReviewStatus.APPROVED.value: {ReviewStatus.RESPONDED.value, ReviewStatus.FAILED.value},
    ReviewStatus.FAILED.value: {ReviewStatus.APPROVED.value},
    ReviewStatus.RESPONDED.value: set(),
    ReviewStatus.REJECTED.value: set(),
}

OPEN_STATUSES = (ReviewStatus.PENDING.value, ReviewStatus.NOTIFIED.value, ReviewStatus.FAILED.value)


class InvalidTransitionError(Exception):
    def __init__(self, review_id: uuid.UUID, current: str, target: str):
        super().__init__(f"Review {review_id} cannot move from {current} to {target}")
        self.review_id = review_id
        self.current = current
        self.target = target


class RateLimitedError(Exception):
    """Too many posts for one account in the current window."""

    def __init__(self, account_id: uuid.UUID, reset_at: float):
        super().__init__(f"Rate limit reached for account {account_id}")
        self.account_id = account_id
        self.reset_at = reset_at


class MissingDraftError(Exception):
    pass


def _transition(review: Review, target: str) -> None:
    if target not in TRANSITIONS.get(review.status, set()):
        raise InvalidTransitionError(review.id, review.status, target)
    logger.debug(f"Review {review.id}: {review.status} -> {target}")
    review.status = target
    review.updated_at = utcnow()


# ── Ingestion ─────────────────────────────────────────────────────────

async def create_review(db: AsyncSession, resource: Resource, item: NormalizedReview) -> Optional[Review]:
    """
    Insert a freshly fetched review in `pending`.
    Returns None when (store, external id) already exists; the savepoint keeps
    the surrounding transaction usable.
    """
    review = Review(
        resource_id=resource.id,
        owner_id=resource.owner_id,
        store=resource.store,
        external_review_id=item.external_id,
        rating=min(max(item.rating, 1), 5),
        title=item.title,
        body=item.body,
        reviewer_name=item.reviewer_name,
        review_date=as_naive_utc(item.review_date),
        territory=item.territory,
        app_version=item.app_version,
        status=ReviewStatus.PENDING.value,
    )
    try:
        async with db.begin_nested():
            db.add(review)
    except IntegrityError:
        logger.debug(f"Review {resource.store}/{item.external_id} already known, skipping")
        return None
    logger.debug(f"Stored review {review.id} ({item.rating}★) for {resource.name}")
    return review


# ── Lookups ───────────────────────────────────────────────────────────

async def get_review(db: AsyncSession, review_id: uuid.UUID) -> Optional[Review]:
    result = await db.execute(
        select(Review)
        .options(selectinload(Review.resource).selectinload(Resource.account))
        .where(Review.id == review_id)
    )
    return result.scalar_one_or_none()


async def list_pending_reviews(
    db: AsyncSession,
    owner_id: uuid.UUID,
    resource_ids: Optional[list[uuid.UUID]] = None,
    limit: int = 50,
) -> list[Review]:
    """Reviews still waiting for an owner decision (or a retry), newest first."""
    query = (
        select(Review)
        .options(selectinload(Review.resource))
        .where(Review.owner_id == owner_id, Review.status.in_(OPEN_STATUSES))
        .order_by(Review.review_date.desc())
        .limit(limit)
    )
    if resource_ids:
        query = query.where(Review.resource_id.in_(resource_ids))
    result = await db.execute(query)
    return list(result.scalars().all())


async def current_response(db: AsyncSession, review_id: uuid.UUID) -> Optional[Response]:
    """Newest draft for the review; older rows are history."""
    result = await db.execute(
        select(Response)
        .where(Response.review_id == review_id)
        .order_by(Response.created_at.desc(), Response.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ── Transitions ───────────────────────────────────────────────────────

async def mark_notified(db: AsyncSession, reviews: list[Review]) -> int:
    """Move pending reviews to notified. Reviews past pending are left alone."""
    moved = 0
    for review in reviews:
        if review.status == ReviewStatus.PENDING.value:
            _transition(review, ReviewStatus.NOTIFIED.value)
            moved += 1
    await db.flush()
    return moved


async def create_draft(db: AsyncSession, review: Review, text: str) -> Response:
    """A new draft becomes the current response, so an approved review must be posted first."""
    if review.status in (ReviewStatus.APPROVED.value, ReviewStatus.RESPONDED.value, ReviewStatus.REJECTED.value):
        raise InvalidTransitionError(review.id, review.status, "draft")
    response = Response(review_id=review.id, ai_generated_text=text, created_at=utcnow())
    db.add(response)
    await db.flush()
    return response


async def approve(db: AsyncSession, review: Review, final_text: Optional[str] = None) -> Response:
    """Approve the current draft, optionally replacing its text with the owner's edit."""
    response = await current_response(db, review.id)
    if response is None:
        raise MissingDraftError(f"Review {review.id} has no draft to approve")
    _transition(review, ReviewStatus.APPROVED.value)
    response.final_text = final_text or response.final_text or response.ai_generated_text
    response.is_approved = True
    response.approved_at = utcnow()
    response.post_error = None
    await db.flush()
    return response


async def reject(db: AsyncSession, review: Review) -> Review:
    _transition(review, ReviewStatus.REJECTED.value)
    await db.flush()
    return review


async def record_post_success(db: AsyncSession, review: Review, response: Response, posted_text: str) -> None:
    _transition(review, ReviewStatus.RESPONDED.value)
    response.final_text = posted_text
    response.posted_at = utcnow()
    response.post_error = None
    await db.flush()


async def record_post_failure(db: AsyncSession, review: Review, response: Response, error: str) -> None:
    _transition(review, ReviewStatus.FAILED.value)
    response.post_error = error
    await db.flush()


# ── Posting ───────────────────────────────────────────────────────────

async def post_approved_response(
    db: AsyncSession,
    review: Review,
    connector: ReviewConnector,
    limiter: RateLimiter,
) -> PostResult:
    """
    Send the approved reply to the vendor.
    Throttled per account. An auth failure invalidates the account before the
    error is re-raised as VendorAuthError; other failures leave the review `failed`.
    """
    if review.status != ReviewStatus.APPROVED.value:
        raise InvalidTransitionError(review.id, review.status, ReviewStatus.RESPONDED.value)
    response = await current_response(db, review.id)
    if response is None or not response.is_approved:
        raise MissingDraftError(f"Review {review.id} has no approved draft")

    resource = review.resource
    account: Optional[Account] = resource.account if resource else None
    if account is None:
        raise LookupError(f"Review {review.id} has no account to post with")

    limit = limiter.try_consume(str(account.id))
    if not limit.allowed:
        logger.info(f"Posting for account {account.id} throttled until {limit.reset_at}")
        raise RateLimitedError(account.id, limit.reset_at)

    text = response.final_text or response.ai_generated_text
    try:
        result = await connector.post_response(
            account_service.credentials_for(account),
            resource.store_id,
            review.external_review_id,
            text,
        )
    except Exception as e:
        error = str(e)
        await record_post_failure(db, review, response, error)
        if connector.classify_failure(e) == FailureKind.AUTH:
            await account_service.invalidate_account(db, account.id, error)
            raise VendorAuthError.wrap(e) from e
        logger.error(f"Posting reply for review {review.id} failed: {error}")
        raise

    await record_post_success(db, review, response, result.text)
    logger.info(f"Review {review.id} responded{' (truncated)' if result.truncated else ''}")
    return result


def review_to_dict(review: Review, response: Optional[Response] = None) -> dict:
    resource = review.resource
    return {
        "id": str(review.id),
        "resource_id": str(review.resource_id),
        "resource_name": resource.name if resource else None,
        "store": review.store,
        "external_review_id": review.external_review_id,
        "rating": review.rating,
        "title": review.title,
        "body": review.body,
        "reviewer_name": review.reviewer_name,
        "review_date": _iso(review.review_date),
        "territory": review.territory,
        "app_version": review.app_version,
        "status": review.status,
        "response": {
            "id": str(response.id),
            "ai_generated_text": response.ai_generated_text,
            "final_text": response.final_text,
            "is_approved": response.is_approved,
            "approved_at": _iso(response.approved_at),
            "posted_at": _iso(response.posted_at),
            "post_error": response.post_error,
        } if response else None,
    }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
