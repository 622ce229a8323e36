"""
App Store Connect connector.
Authenticates with a short-lived ES256 JWT signed by the account's .p8 key and
reads customer reviews newest-first, following JSON:API `links.next`.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from review_responder.connectors.base import (
    CredentialFormatError,
    DiscoveredResource,
    NormalizedReview,
    PostResult,
    ReviewConnector,
    VendorCredentials,
    VendorError,
)
from review_responder.models import VendorKind
from review_responder.utils import as_aware

logger = logging.getLogger(__name__)

BASE_URL = "https://api.appstoreconnect.apple.com/v1"
TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_LIFETIME_SECONDS = 20 * 60  # Apple rejects tokens valid for more than 20 minutes
PAGE_SIZE = 200
MAX_RESPONSE_LENGTH = 5970


class AppStoreConnector(ReviewConnector):
    kind = VendorKind.APP_STORE.value
    max_response_length = MAX_RESPONSE_LENGTH
    auth_error_codes = frozenset({"FORBIDDEN", "NOT_AUTHORIZED", "FORBIDDEN_ERROR"})

    def generate_token(self, credentials: VendorCredentials) -> str:
        """Mint a bearer token; one per call batch."""
        if not credentials.key_id or not credentials.issuer_id:
            raise CredentialFormatError("Missing Apple Key ID or Issuer ID")
        now = int(time.time())
        payload = {
            "iss": credentials.issuer_id,
            "iat": now,
            "exp": now + TOKEN_LIFETIME_SECONDS,
            "aud": TOKEN_AUDIENCE,
        }
        try:
            return jwt.encode(
                payload,
                credentials.credential_data,
                algorithm="ES256",
                headers={"kid": credentials.key_id, "typ": "JWT"},
            )
        except (JOSEError, ValueError, TypeError) as e:
            raise CredentialFormatError(f"Invalid App Store Connect private key: {e}") from e

    async def _request(
        self,
        client: httpx.AsyncClient,
        token: str,
        endpoint: str,
        method: str = "GET",
        body: Optional[dict[str, Any]] = None,
    ) -> dict:
        url = endpoint if endpoint.startswith("http") else f"{BASE_URL}{endpoint}"
        logger.debug(f"App Store {method} {url}")
        started = time.monotonic()
        response = await client.request(
            method,
            url,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            json=body,
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        if response.is_error:
            message = f"App Store API error: {response.status_code} {response.reason_phrase}"
            code = None
            try:
                errors = response.json().get("errors") or []
                if errors:
                    message = errors[0].get("detail") or message
                    code = errors[0].get("code")
            except (json.JSONDecodeError, AttributeError):
                pass
            logger.error(f"App Store request failed ({response.status_code}, {duration_ms}ms): {message}")
            raise VendorError(message, status_code=response.status_code, code=code)

        logger.debug(f"App Store {method} {url} -> {response.status_code} in {duration_ms}ms")
        if not response.content:
            return {}
        try:
            return response.json()
        except json.JSONDecodeError as e:
            raise VendorError(f"Malformed App Store response: {e}") from e

    async def list_new_reviews(
        self,
        credentials: VendorCredentials,
        store_id: str,
        cursor: Optional[datetime],
    ) -> list[NormalizedReview]:
        token = self.generate_token(credentials)
        cursor = as_aware(cursor)
        reviews: list[NormalizedReview] = []
        next_url: Optional[str] = (
            f"/apps/{store_id}/customerReviews?limit={PAGE_SIZE}"
            f"&sort=-createdDate&exists[publishedResponse]=false"
        )
        pages = 0
        reached_cursor = False

        async with self._client() as client:
            while next_url and not reached_cursor:
                if self._should_stop_paging(cursor, pages):
                    logger.debug(f"First poll for app {store_id}: stopping after {pages} pages")
                    break
                pages += 1
                data = await self._request(client, token, next_url)

                for item in data.get("data") or []:
                    review = _parse_review(item)
                    if cursor is not None and review.review_date <= cursor:
                        logger.debug(
                            f"Reached review from {review.review_date.isoformat()} "
                            f"(cursor {cursor.isoformat()}), stopping"
                        )
                        reached_cursor = True
                        break
                    reviews.append(review)

                next_url = (data.get("links") or {}).get("next")

        logger.debug(
            f"App Store app {store_id}: {len(reviews)} new reviews over {pages} pages "
            f"(stopped early: {reached_cursor})"
        )
        return reviews

    async def post_response(
        self,
        credentials: VendorCredentials,
        store_id: str,
        external_review_id: str,
        text: str,
    ) -> PostResult:
        token = self.generate_token(credentials)
        result = self.fit_text(text)
        body = {
            "data": {
                "type": "customerReviewResponses",
                "attributes": {"responseBody": result.text},
                "relationships": {
                    "review": {"data": {"type": "customerReviews", "id": external_review_id}},
                },
            }
        }
        async with self._client() as client:
            await self._request(client, token, "/customerReviewResponses", method="POST", body=body)
        logger.info(f"Posted App Store response to review {external_review_id}")
        return result

    @property
    def supports_discovery(self) -> bool:
        return True

    async def discover_resources(self, credentials: VendorCredentials) -> list[DiscoveredResource]:
        """List every app the API key can see."""
        token = self.generate_token(credentials)
        apps: list[DiscoveredResource] = []
        next_url: Optional[str] = f"/apps?limit={PAGE_SIZE}"
        async with self._client() as client:
            while next_url:
                data = await self._request(client, token, next_url)
                for item in data.get("data") or []:
                    attributes = item.get("attributes") or {}
                    apps.append(DiscoveredResource(
                        store_id=item["id"],
                        name=attributes.get("name") or item["id"],
                        bundle_id=attributes.get("bundleId"),
                    ))
                next_url = (data.get("links") or {}).get("next")
        logger.debug(f"Discovered {len(apps)} App Store apps")
        return apps


def _parse_review(item: dict) -> NormalizedReview:
    try:
        attributes = item["attributes"]
        created = datetime.fromisoformat(attributes["createdDate"].replace("Z", "+00:00"))
        return NormalizedReview(
            external_id=item["id"],
            rating=int(attributes["rating"]),
            title=attributes.get("title"),
            body=attributes.get("body") or "",
            reviewer_name=attributes.get("reviewerNickname"),
            review_date=as_aware(created),
            territory=attributes.get("territory"),
            has_response=bool(((item.get("relationships") or {}).get("response") or {}).get("data")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise VendorError(f"Malformed App Store review payload: {e}") from e
