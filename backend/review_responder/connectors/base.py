"""Shared contract for vendor review connectors. Every store returns the same normalized shape."""
import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import httpx

from review_responder.utils import truncate_response

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = {401, 403}


class FailureKind(str, enum.Enum):
    AUTH = "auth"
    TRANSIENT = "transient"


class VendorError(Exception):
    """Error returned by a vendor API (or raised while talking to it)."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class VendorAuthError(VendorError):
    """A vendor call failed because the account's credentials are expired or revoked."""

    @classmethod
    def wrap(cls, error: BaseException) -> "VendorAuthError":
        if isinstance(error, VendorError):
            return cls(error.message, status_code=error.status_code, code=error.code)
        return cls(str(error))


class CredentialFormatError(VendorError):
    """Stored credential blob cannot be used at all. Only a re-submission fixes it."""


@dataclass
class VendorCredentials:
    """Decrypted credential material handed to a connector for one call batch."""
    credential_data: str
    key_id: Optional[str] = None
    issuer_id: Optional[str] = None


@dataclass
class NormalizedReview:
    external_id: str
    rating: int
    body: str
    review_date: datetime  # timezone-aware UTC
    title: Optional[str] = None
    reviewer_name: Optional[str] = None
    territory: Optional[str] = None  # Apple territory or Google reviewer language
    app_version: Optional[str] = None
    has_response: bool = False


@dataclass
class DiscoveredResource:
    store_id: str
    name: str
    bundle_id: Optional[str] = None


@dataclass
class PostResult:
    text: str  # What was actually sent
    truncated: bool


class ReviewConnector(ABC):
    """
    One implementation per store. The scheduler only talks to this interface.

    list_new_reviews returns reviews strictly newer than the cursor, newest first,
    and stops paginating at the first review at or before the cursor. Without a
    cursor it reads at most `first_poll_max_pages` pages.
    """

    kind: str
    max_response_length: int
    auth_error_codes: frozenset[str] = frozenset()

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        first_poll_max_pages: int = 3,
    ):
        self._transport = transport
        self._timeout = timeout
        self.first_poll_max_pages = first_poll_max_pages

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    @abstractmethod
    async def list_new_reviews(
        self,
        credentials: VendorCredentials,
        store_id: str,
        cursor: Optional[datetime],
    ) -> list[NormalizedReview]:
        ...

    @abstractmethod
    async def post_response(
        self,
        credentials: VendorCredentials,
        store_id: str,
        external_review_id: str,
        text: str,
    ) -> PostResult:
        ...

    @property
    def supports_discovery(self) -> bool:
        return False

    async def discover_resources(self, credentials: VendorCredentials) -> list[DiscoveredResource]:
        raise VendorError(f"{self.kind} does not support listing apps; add them manually")

    def classify_failure(self, error: BaseException) -> FailureKind:
        """Auth failures are expired/revoked credentials; everything else is retried next cycle."""
        if isinstance(error, CredentialFormatError):
            return FailureKind.AUTH
        if isinstance(error, VendorError):
            if error.status_code in AUTH_STATUS_CODES:
                return FailureKind.AUTH
            if error.code and error.code in self.auth_error_codes:
                return FailureKind.AUTH
            if any(code in error.message for code in self.auth_error_codes):
                return FailureKind.AUTH
        return FailureKind.TRANSIENT

    def fit_text(self, text: str) -> PostResult:
        fitted = truncate_response(text, self.max_response_length)
        truncated = fitted != text
        if truncated:
            logger.info(
                f"{self.kind} reply truncated from {len(text)} to {len(fitted)} chars "
                f"(limit {self.max_response_length})"
            )
        return PostResult(text=fitted, truncated=truncated)

    def _should_stop_paging(self, cursor: Optional[datetime], pages_read: int) -> bool:
        return cursor is None and pages_read >= self.first_poll_max_pages
