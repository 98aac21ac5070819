"""
Google Business Profile Client

Authorization-code flow with a long-lived refresh token. Access tokens last
about an hour and are renewed with a refresh_token grant. Reviews are read
per location from the My Business v4 API.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from database.models import ChannelCredential
from ..config import get_review_sync_settings, ReviewSyncSettings, GOOGLE_SCOPES
from ..exceptions import AuthRejectedError, IntegrationError, TokenExpiredError
from ..models import (
    CredentialStatus,
    GoogleMetadata,
    OAuthTokenResponse,
    PlatformType,
    ReviewPayload,
)
from .http import http_session, response_json

logger = logging.getLogger(__name__)

OAUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

# Google Business Profile API endpoints
ACCOUNTS_URL = "https://mybusinessaccountmanagement.googleapis.com/v1/accounts"
LOCATIONS_URL = "https://mybusinessbusinessinformation.googleapis.com/v1"
REVIEWS_URL = "https://mybusiness.googleapis.com/v4"

STAR_RATINGS = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}

# Token endpoint errors that mean the grant itself is gone
AUTH_REJECTION_ERRORS = {"invalid_grant"}

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def star_rating_to_int(star_rating: Any) -> int:
    """Map the starRating enum to 1-5. Unknown values map to 0."""
    return STAR_RATINGS.get(star_rating, 0) if isinstance(star_rating, str) else 0


def parse_google_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp (nanosecond precision allowed) to naive UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(_EXCESS_FRACTION.sub(r"\1", value.replace("Z", "+00:00")))
    except ValueError:
        logger.warning(f"Failed to parse Google timestamp: {value}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _oauth_error(response: httpx.Response) -> str:
    body = response_json(response)
    error = body.get("error")
    if isinstance(error, dict):
        return str(error.get("status") or error.get("message") or "unknown_error")
    return str(error or f"http_{response.status_code}")


class GoogleBusinessClient:
    """
    Client for Google Business Profile reviews.
    """

    platform_type = PlatformType.GOOGLE

    def __init__(
        self,
        settings: Optional[ReviewSyncSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            settings: Overrides the settings singleton
            http_client: Shared client, mainly for tests. Per-call clients otherwise.
        """
        self.settings = settings or get_review_sync_settings()
        self._http_client = http_client

    def _session(self):
        return http_session(self._http_client, self.settings.http_timeout_seconds)

    # =========================================================================
    # OAuth
    # =========================================================================

    def get_authorization_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": redirect_uri or self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",  # Get refresh token
            "prompt": "consent",  # Always show consent screen to get refresh token
            "state": state,
        }
        return f"{OAUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_token(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResponse:
        """
        Exchange an authorization code for tokens and cache the first
        account's locations.

        Raises:
            IntegrationError: If Google does not return a token
        """
        data = {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": redirect_uri or self.settings.google_redirect_uri,
            "grant_type": "authorization_code",
        }

        async with self._session() as client:
            try:
                response = await client.post(TOKEN_URL, data=data)
            except httpx.HTTPError as e:
                raise IntegrationError(
                    f"Google OAuth code exchange failed: {e}", platform=self.platform_type.value
                ) from e

            body = response_json(response)
            if response.status_code != 200 or not body.get("access_token"):
                raise IntegrationError(
                    f"Google OAuth code exchange failed: {_oauth_error(response)}",
                    platform=self.platform_type.value,
                    status_code=response.status_code,
                )

            metadata = await self._discover_locations(client, body["access_token"])

        logger.info(f"Google OAuth exchange completed ({len(metadata.location_names)} locations)")
        return OAuthTokenResponse(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            token_type=body.get("token_type"),
            scope=body.get("scope"),
            metadata=metadata.model_dump(),
        )

    async def refresh_token(self, credential: ChannelCredential) -> ChannelCredential:
        """
        Run a refresh_token grant and update the credential in place.

        Raises:
            TokenExpiredError: No refresh token, or Google answered invalid_grant
            IntegrationError: Network failure or any other error response
        """
        refresh_token = credential.refresh_token
        if not refresh_token:
            logger.error(f"No refresh token available for credential {credential.id}")
            self._mark_expired(credential, "No refresh token available. Please reconnect Google.")
            raise TokenExpiredError(
                self.platform_type.value,
                credential.id,
                "No refresh token available. Please reconnect Google.",
            )

        logger.info(f"Refreshing Google access token for credential {credential.id}")
        data = {
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        async with self._session() as client:
            try:
                response = await client.post(TOKEN_URL, data=data)
            except httpx.HTTPError as e:
                raise IntegrationError(
                    f"Google token refresh failed: {e}", platform=self.platform_type.value
                ) from e

        body = response_json(response)
        if response.status_code != 200 or not body.get("access_token"):
            error = _oauth_error(response)
            if error in AUTH_REJECTION_ERRORS:
                logger.error(f"Google refused refresh for credential {credential.id}: {error}")
                self._mark_expired(credential, "Token refresh failed. Please reconnect.")
                raise TokenExpiredError(
                    self.platform_type.value,
                    credential.id,
                    "Google access has been revoked. Please reconnect.",
                )
            raise IntegrationError(
                f"Google token refresh failed: {error}",
                platform=self.platform_type.value,
                status_code=response.status_code,
            )

        credential.access_token = body["access_token"]
        if body.get("refresh_token"):
            credential.refresh_token = body["refresh_token"]
        if body.get("expires_in"):
            credential.token_expires_at = datetime.utcnow() + timedelta(seconds=int(body["expires_in"]))
        credential.status = CredentialStatus.ACTIVE.value
        credential.sync_error_message = None

        logger.info(f"Successfully refreshed Google token for credential {credential.id}")
        return credential

    def _mark_expired(self, credential: ChannelCredential, message: str) -> None:
        credential.status = CredentialStatus.EXPIRED.value
        credential.sync_error_message = message

    # =========================================================================
    # Reviews
    # =========================================================================

    async def fetch_reviews(
        self, credential: ChannelCredential, since: Optional[datetime]
    ) -> List[ReviewPayload]:
        """
        Fetch reviews for every cached location.

        Locations are discovered (and cached on the credential) when the
        connection step could not list them.
        """
        access_token = credential.access_token
        if not access_token:
            raise IntegrationError("Google credential has no access token", platform=self.platform_type.value)

        metadata = GoogleMetadata(**(credential.platform_metadata or {}))
        payloads: List[ReviewPayload] = []

        async with self._session() as client:
            if not metadata.location_names:
                account_name = await self._get_first_account(client, access_token)
                metadata = GoogleMetadata(
                    account_name=account_name,
                    location_names=await self._get_locations(client, access_token, account_name),
                )
                credential.platform_metadata = {**(credential.platform_metadata or {}), **metadata.model_dump()}

            for location_name in metadata.location_names:
                payloads.extend(
                    await self._fetch_location_reviews(client, access_token, location_name, since)
                )

        payloads.sort(key=lambda p: p.created_at or datetime.min)
        logger.info(f"Fetched {len(payloads)} Google reviews for credential {credential.id}")
        return payloads

    async def _fetch_location_reviews(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        location_name: str,
        since: Optional[datetime],
    ) -> List[ReviewPayload]:
        """Newest-first pages, stopping at the watermark or the page limit."""
        url = f"{REVIEWS_URL}/{location_name}/reviews"
        payloads: List[ReviewPayload] = []
        page_token: Optional[str] = None

        for _ in range(self.settings.max_review_pages):
            params: Dict[str, Any] = {
                "pageSize": self.settings.review_page_size,
                "orderBy": "updateTime desc",
            }
            if page_token:
                params["pageToken"] = page_token

            body = await self._get_json(client, url, access_token, params)
            items = body.get("reviews") or []
            if not isinstance(items, list):
                raise IntegrationError(
                    f"Malformed Google reviews response for {location_name}",
                    platform=self.platform_type.value,
                )

            reached_watermark = False
            for item in items:
                payload = self._to_payload(item, location_name)
                changed_at = payload.updated_at or payload.created_at
                if since is not None and changed_at is not None and changed_at <= since:
                    reached_watermark = True
                    continue
                payloads.append(payload)

            page_token = body.get("nextPageToken")
            if reached_watermark or not page_token:
                break

        return payloads

    def _to_payload(self, item: Any, location_name: str) -> ReviewPayload:
        try:
            reviewer = item.get("reviewer") or {}
            reply = item.get("reviewReply") or {}
            return ReviewPayload(
                platform=self.platform_type,
                platform_review_id=item.get("reviewId"),
                reviewer_name=reviewer.get("displayName") or "Anonymous",
                reviewer_photo_url=reviewer.get("profilePhotoUrl"),
                rating=star_rating_to_int(item.get("starRating")),
                comment=item.get("comment"),
                created_at=parse_google_timestamp(item.get("createTime")),
                updated_at=parse_google_timestamp(item.get("updateTime")),
                is_verified=True,
                business_response=reply.get("comment"),
                business_response_at=parse_google_timestamp(reply.get("updateTime")),
                metadata={"name": item.get("name"), "location": location_name},
            )
        except (AttributeError, TypeError, ValidationError) as e:
            logger.warning(f"Unreadable Google review in {location_name}: {e}")
            return ReviewPayload(platform=self.platform_type, metadata={"location": location_name})

    async def post_review_response(
        self, credential: ChannelCredential, review_id: str, text: str
    ) -> None:
        """
        Create or replace the owner reply.

        Args:
            review_id: Full review resource name, or a bare reviewId on the first location
        """
        if "/" in review_id:
            review_name = review_id
        else:
            metadata = GoogleMetadata(**(credential.platform_metadata or {}))
            if not metadata.location_names:
                raise IntegrationError(
                    "Google credential has no cached location", platform=self.platform_type.value
                )
            review_name = f"{metadata.location_names[0]}/reviews/{review_id}"

        async with self._session() as client:
            try:
                response = await client.put(
                    f"{REVIEWS_URL}/{review_name}/reply",
                    json={"comment": text},
                    headers={"Authorization": f"Bearer {credential.access_token}"},
                )
            except httpx.HTTPError as e:
                raise IntegrationError(
                    f"Google reply failed: {e}", platform=self.platform_type.value
                ) from e

        self._raise_for_status(response, "Google reply failed")
        logger.info(f"Posted Google reply for {review_name}")

    async def validate_credentials(self, credential: ChannelCredential) -> bool:
        try:
            async with self._session() as client:
                await self._get_first_account(client, credential.access_token)
            return True
        except Exception as e:
            logger.debug(f"Google credential {credential.id} failed validation: {e}")
            return False

    # =========================================================================
    # Account discovery
    # =========================================================================

    async def _discover_locations(
        self, client: httpx.AsyncClient, access_token: str
    ) -> GoogleMetadata:
        try:
            account_name = await self._get_first_account(client, access_token)
            location_names = await self._get_locations(client, access_token, account_name)
        except IntegrationError as e:
            # Fetch retries discovery later
            logger.warning(f"Google location discovery failed: {e}")
            return GoogleMetadata()
        return GoogleMetadata(account_name=account_name, location_names=location_names)

    async def _get_first_account(self, client: httpx.AsyncClient, access_token: str) -> str:
        body = await self._get_json(client, ACCOUNTS_URL, access_token)
        accounts = body.get("accounts") or []
        if not accounts or not isinstance(accounts[0], dict) or not accounts[0].get("name"):
            raise IntegrationError("No Google Business accounts found", platform=self.platform_type.value)
        return accounts[0]["name"]

    async def _get_locations(
        self, client: httpx.AsyncClient, access_token: str, account_name: str
    ) -> List[str]:
        body = await self._get_json(
            client,
            f"{LOCATIONS_URL}/{account_name}/locations",
            access_token,
            {"readMask": "name,title"},
        )
        locations = body.get("locations") or []
        names = [loc["name"] for loc in locations if isinstance(loc, dict) and loc.get("name")]

        # Business Information returns bare "locations/{id}"; v4 reviews need the account prefix
        return [name if name.startswith("accounts/") else f"{account_name}/{name}" for name in names]

    async def _get_json(
        self,
        client: httpx.AsyncClient,
        url: str,
        access_token: Optional[str],
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise IntegrationError(
                f"Google API request failed: {e}", platform=self.platform_type.value
            ) from e

        self._raise_for_status(response, "Google API request failed")
        return response_json(response)

    def _raise_for_status(self, response: httpx.Response, context: str) -> None:
        if response.status_code == 401:
            raise AuthRejectedError(
                f"{context}: access token rejected",
                platform=self.platform_type.value,
                status_code=401,
            )
        if response.status_code >= 400:
            raise IntegrationError(
                f"{context}: {_oauth_error(response)}",
                platform=self.platform_type.value,
                status_code=response.status_code,
            )
