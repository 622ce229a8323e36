"""
Google Play Developer API connector.
Exchanges the service-account key for an OAuth2 access token (JWT bearer grant)
and pages through reviews with the opaque `tokenPagination.nextPageToken`.
Note: Google only returns reviews from the last 7 days.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from review_responder.connectors.base import (
    CredentialFormatError,
    NormalizedReview,
    PostResult,
    ReviewConnector,
    VendorCredentials,
    VendorError,
)
from review_responder.models import VendorKind
from review_responder.utils import as_aware

logger = logging.getLogger(__name__)

BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
PAGE_SIZE = 100
MAX_RESPONSE_LENGTH = 350


def parse_service_account(credential_json: str) -> dict:
    """Validate the stored service-account JSON enough to sign with it."""
    try:
        info = json.loads(credential_json)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialFormatError(
            f"Invalid service account JSON: {e}. Please re-upload your credentials."
        ) from e
    if not isinstance(info, dict) or not info.get("client_email") or not info.get("private_key"):
        raise CredentialFormatError(
            "Invalid service account JSON: missing client_email or private_key. "
            "Please ensure you uploaded the correct file."
        )
    return info


class PlayStoreConnector(ReviewConnector):
    kind = VendorKind.PLAY_STORE.value
    max_response_length = MAX_RESPONSE_LENGTH
    auth_error_codes = frozenset({"PERMISSION_DENIED", "UNAUTHENTICATED", "invalid_grant", "unauthorized_client"})

    async def fetch_access_token(self, client: httpx.AsyncClient, credentials: VendorCredentials) -> str:
        info = parse_service_account(credentials.credential_data)
        token_uri = info.get("token_uri") or DEFAULT_TOKEN_URI
        now = int(time.time())
        claims = {
            "iss": info["client_email"],
            "scope": SCOPE,
            "aud": token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        headers = {"kid": info["private_key_id"]} if info.get("private_key_id") else None
        try:
            assertion = jwt.encode(claims, info["private_key"], algorithm="RS256", headers=headers)
        except (JOSEError, ValueError, TypeError) as e:
            raise CredentialFormatError(f"Invalid service account private key: {e}") from e

        logger.debug(f"Requesting Play access token for {info['client_email']}")
        response = await client.post(
            token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.is_error:
            code = None
            message = f"Token exchange failed: {response.status_code}"
            try:
                payload = response.json()
                code = payload.get("error")
                message = f"Token exchange failed: {code}: {payload.get('error_description', '')}".rstrip(": ")
            except (json.JSONDecodeError, AttributeError):
                pass
            raise VendorError(message, status_code=response.status_code, code=code)
        return response.json()["access_token"]

    async def _request(
        self,
        client: httpx.AsyncClient,
        token: str,
        url: str,
        method: str = "GET",
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict:
        logger.debug(f"Play {method} {url} params={params}")
        response = await client.request(
            method,
            url,
            params=params,
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.is_error:
            message = f"Play API error: {response.status_code} {response.reason_phrase}"
            code = None
            try:
                error = response.json().get("error") or {}
                if isinstance(error, dict):
                    message = error.get("message") or message
                    code = error.get("status")
            except (json.JSONDecodeError, AttributeError):
                pass
            logger.error(f"Play request failed ({response.status_code}): {message}")
            raise VendorError(message, status_code=response.status_code, code=code)
        try:
            return response.json() if response.content else {}
        except json.JSONDecodeError as e:
            raise VendorError(f"Malformed Play response: {e}") from e

    async def list_new_reviews(
        self,
        credentials: VendorCredentials,
        store_id: str,
        cursor: Optional[datetime],
    ) -> list[NormalizedReview]:
        cursor = as_aware(cursor)
        reviews: list[NormalizedReview] = []
        page_token: Optional[str] = None
        pages = 0
        reached_cursor = False

        async with self._client() as client:
            token = await self.fetch_access_token(client, credentials)
            while True:
                if self._should_stop_paging(cursor, pages):
                    logger.debug(f"First poll for {store_id}: stopping after {pages} pages")
                    break
                pages += 1
                params = {"maxResults": PAGE_SIZE}
                if page_token:
                    params["token"] = page_token
                data = await self._request(client, token, f"{BASE_URL}/{store_id}/reviews", params=params)

                for item in data.get("reviews") or []:
                    review = _parse_review(item)
                    if review is None:
                        continue
                    if cursor is not None and review.review_date <= cursor:
                        logger.debug(
                            f"Reached review from {review.review_date.isoformat()} "
                            f"(cursor {cursor.isoformat()}), stopping"
                        )
                        reached_cursor = True
                        break
                    if review.has_response:
                        continue
                    reviews.append(review)

                page_token = (data.get("tokenPagination") or {}).get("nextPageToken")
                if reached_cursor or not page_token:
                    break

        logger.debug(
            f"Play app {store_id}: {len(reviews)} new reviews over {pages} pages "
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
        result = self.fit_text(text)
        async with self._client() as client:
            token = await self.fetch_access_token(client, credentials)
            await self._request(
                client,
                token,
                f"{BASE_URL}/{store_id}/reviews/{external_review_id}:reply",
                method="POST",
                body={"replyText": result.text},
            )
        logger.info(f"Posted Play reply to review {external_review_id}")
        return result


def _parse_review(item: dict) -> Optional[NormalizedReview]:
    """Returns None for reviews without a user comment (rating-only edits) or without a timestamp."""
    comments = item.get("comments") or []
    user_comment = next((c["userComment"] for c in comments if c.get("userComment")), None)
    if not user_comment:
        return None
    try:
        modified = user_comment.get("lastModified") or {}
        if modified.get("seconds"):
            review_date = datetime.fromtimestamp(
                int(modified["seconds"]) + int(modified.get("nanos", 0)) / 1e9, tz=timezone.utc
            )
        else:
            # Undated items cannot be placed against the cursor
            logger.warning(f"Skipping Play review {item.get('reviewId')} without lastModified")
            return None
        return NormalizedReview(
            external_id=item["reviewId"],
            rating=int(user_comment.get("starRating") or 0),
            title=None,  # Play reviews have no separate title
            body=(user_comment.get("text") or "").strip(),
            reviewer_name=item.get("authorName") or "Anonymous",
            review_date=review_date,
            territory=user_comment.get("reviewerLanguage") or "en",
            app_version=user_comment.get("appVersionName"),
            has_response=any(c.get("developerComment") for c in comments),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise VendorError(f"Malformed Play review payload: {e}") from e
