"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from typing import Optional
from fastapi import HTTPException

logger = logging.getLogger(__name__)

SENTENCE_ENDINGS = ".!?"
ELLIPSIS = "..."


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware (UTC). DB returns naive datetimes."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert any datetime to naive UTC for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def truncate_response(text: str, max_length: int) -> str:
    """
    Fit a reply into a vendor's character limit.

    Prefers cutting after the last sentence end beyond 70% of the limit, then the
    last space beyond 80% (with an ellipsis), and otherwise hard-cuts with an ellipsis.
    Text already within the limit is returned unchanged.
    """
    if len(text) <= max_length:
        return text

    truncated = text[: max_length - len(ELLIPSIS)]
    last_sentence = max(truncated.rfind(ch) for ch in SENTENCE_ENDINGS)
    last_space = truncated.rfind(" ")

    if last_sentence > max_length * 0.7:
        return truncated[: last_sentence + 1]
    if last_space > max_length * 0.8:
        return truncated[:last_space] + ELLIPSIS
    return truncated + ELLIPSIS
