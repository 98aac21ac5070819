"""
Facebook Pages Client

Two-step OAuth: the code buys a short-lived user token which is immediately
exchanged for a 60-day token. There is no refresh token; "refreshing" re-runs
the fb_exchange_token call with the current token. Ratings are read with the
page access token discovered at connection time.
"""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from database.models import ChannelCredential
from ..config import get_review_sync_settings, ReviewSyncSettings, FACEBOOK_SCOPES
from ..exceptions import AuthRejectedError, IntegrationError, TokenExpiredError
from ..models import (
    CredentialStatus,
    FacebookMetadata,
    OAuthTokenResponse,
    PlatformType,
    ReviewPayload,
)
from ..services.token_cipher import get_token_cipher
from .http import http_session, response_json

logger = logging.getLogger(__name__)

# Long-lived token lifetime when Facebook omits expires_in (60 days)
DEFAULT_LONG_LIVED_SECONDS = 5184000

# Graph error codes meaning the user token is invalid, expired or revoked
AUTH_REJECTION_CODES = {102, 190}

DERIVED_ID_PREFIX = "fb_"
DERIVED_ID_LENGTH = 16

RATING_FIELDS = "created_time,rating,recommendation_type,review_text,reviewer,open_graph_story"


def derive_review_id(review_text: Any, created_time: Any) -> str:
    """
    Stable id for a rating the Graph API returned without one.

    sha256 over the review text followed by the raw created_time string,
    truncated and tagged. The same rating re-derives the same id on every
    sync. Two ratings with identical text and timestamp collide and are
    stored as one review; that approximation is accepted.
    """
    text = review_text if isinstance(review_text, str) else ""
    timestamp = "" if created_time is None else str(created_time)
    digest = hashlib.sha256(f"{text}{timestamp}".encode("utf-8")).hexdigest()
    return f"{DERIVED_ID_PREFIX}{digest[:DERIVED_ID_LENGTH]}"


def recommendation_to_rating(item: Dict[str, Any]) -> int:
    """Star rating when present, otherwise positive=5 / negative=1. Unknown is 0."""
    rating = item.get("rating")
    if isinstance(rating, int) and not isinstance(rating, bool) and 1 <= rating <= 5:
        return rating

    recommendation = item.get("recommendation_type")
    if recommendation == "positive":
        return 5
    if recommendation == "negative":
        return 1
    return 0


def parse_facebook_timestamp(value: Any) -> Optional[datetime]:
    """Graph timestamps look like 2024-03-01T17:02:11+0000; older payloads use epoch seconds."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Failed to parse Facebook timestamp: {value}")
        return None
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


def _graph_error(response: httpx.Response) -> Tuple[Optional[int], str]:
    error = response_json(response).get("error")
    if not isinstance(error, dict):
        return None, f"http_{response.status_code}"
    code = error.get("code")
    return (code if isinstance(code, int) else None), str(error.get("message") or "Unknown error")


class FacebookPagesClient:
    """
    Client for Facebook Page ratings (Graph API).
    """

    platform_type = PlatformType.FACEBOOK

    def __init__(
        self,
        settings: Optional[ReviewSyncSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_review_sync_settings()
        self._http_client = http_client

    @property
    def graph_url(self) -> str:
        return f"https://graph.facebook.com/{self.settings.facebook_api_version}"

    def _session(self):
        return http_session(self._http_client, self.settings.http_timeout_seconds)

    # =========================================================================
    # OAuth
    # =========================================================================

    def get_authorization_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.facebook_app_id,
            "redirect_uri": redirect_uri or self.settings.facebook_redirect_uri,
            "scope": ",".join(FACEBOOK_SCOPES),
            "response_type": "code",
            "state": state,
        }
        base_url = f"https://www.facebook.com/{self.settings.facebook_api_version}/dialog/oauth"
        return f"{base_url}?{urlencode(params)}"

    async def exchange_code_for_token(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResponse:
        """
        Code -> short-lived token -> 60-day token, then pick the first managed page.

        Raises:
            IntegrationError: If any step fails or the user manages no page
        """
        async with self._session() as client:
            # Step 1: short-lived user token
            short_lived = await self._token_call(
                client,
                {
                    "client_id": self.settings.facebook_app_id,
                    "client_secret": self.settings.facebook_app_secret,
                    "redirect_uri": redirect_uri or self.settings.facebook_redirect_uri,
                    "code": code,
                },
                "Facebook OAuth code exchange failed",
            )

            # Step 2: long-lived user token
            long_lived = await self._token_call(
                client,
                self._extend_params(short_lived["access_token"]),
                "Failed to get long-lived Facebook token",
            )
            access_token = long_lived["access_token"]
            expires_in = long_lived.get("expires_in") or DEFAULT_LONG_LIVED_SECONDS

            metadata = await self._discover_page(client, access_token)

        logger.info(
            f"Facebook OAuth exchange completed for page {metadata.page_id} "
            f"(expires in {int(expires_in) // 86400} days)"
        )
        return OAuthTokenResponse(
            access_token=access_token,
            refresh_token=None,  # Facebook doesn't use refresh tokens
            expires_in=int(expires_in),
            token_type="bearer",
            metadata=metadata.model_dump(),
        )

    async def refresh_token(self, credential: ChannelCredential) -> ChannelCredential:
        """
        Extend the current user token back to 60 days.

        Raises:
            TokenExpiredError: Token missing, expired or revoked (Graph code 190)
            IntegrationError: Anything else
        """
        access_token = credential.access_token
        if not access_token:
            self._mark_expired(credential, "No Facebook token stored. Please reconnect.")
            raise TokenExpiredError(
                self.platform_type.value, credential.id, "No Facebook token stored. Please reconnect."
            )

        logger.info(f"Extending Facebook token for credential {credential.id}")

        async with self._session() as client:
            try:
                response = await client.get(
                    f"{self.graph_url}/oauth/access_token", params=self._extend_params(access_token)
                )
            except httpx.HTTPError as e:
                raise IntegrationError(
                    f"Facebook token extension failed: {e}", platform=self.platform_type.value
                ) from e

        body = response_json(response)
        if response.status_code != 200 or not body.get("access_token"):
            code, message = _graph_error(response)
            if code in AUTH_REJECTION_CODES:
                logger.error(f"Facebook refused extension for credential {credential.id}: {message}")
                self._mark_expired(credential, "Token extension failed. Please reconnect.")
                raise TokenExpiredError(
                    self.platform_type.value,
                    credential.id,
                    "Facebook access has expired. Please reconnect.",
                )
            raise IntegrationError(
                f"Facebook token extension failed: {message}",
                platform=self.platform_type.value,
                status_code=response.status_code,
            )

        expires_in = int(body.get("expires_in") or DEFAULT_LONG_LIVED_SECONDS)
        credential.access_token = body["access_token"]
        credential.token_expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
        credential.status = CredentialStatus.ACTIVE.value
        credential.sync_error_message = None

        logger.info(
            f"Successfully extended Facebook token for credential {credential.id} "
            f"(new expiry in {expires_in // 86400} days)"
        )
        return credential

    def _extend_params(self, access_token: str) -> Dict[str, Any]:
        return {
            "grant_type": "fb_exchange_token",
            "client_id": self.settings.facebook_app_id,
            "client_secret": self.settings.facebook_app_secret,
            "fb_exchange_token": access_token,
        }

    async def _token_call(
        self, client: httpx.AsyncClient, params: Dict[str, Any], context: str
    ) -> Dict[str, Any]:
        try:
            response = await client.get(f"{self.graph_url}/oauth/access_token", params=params)
        except httpx.HTTPError as e:
            raise IntegrationError(f"{context}: {e}", platform=self.platform_type.value) from e

        body = response_json(response)
        if response.status_code != 200 or not body.get("access_token"):
            _, message = _graph_error(response)
            raise IntegrationError(
                f"{context}: {message}",
                platform=self.platform_type.value,
                status_code=response.status_code,
            )
        return body

    def _mark_expired(self, credential: ChannelCredential, message: str) -> None:
        credential.status = CredentialStatus.EXPIRED.value
        credential.sync_error_message = message

    async def _discover_page(self, client: httpx.AsyncClient, access_token: str) -> FacebookMetadata:
        body = await self._get_json(
            client,
            f"{self.graph_url}/me/accounts",
            {"fields": "id,name,access_token,category", "access_token": access_token},
        )
        pages = body.get("data")
        if not isinstance(pages, list):
            raise IntegrationError("Invalid response from Facebook page list", platform=self.platform_type.value)
        if not pages:
            raise IntegrationError(
                "No Facebook pages found. The user must be a page admin and grant all permissions.",
                platform=self.platform_type.value,
            )

        # First page wins; page selection belongs to the connection UI
        page = pages[0]
        if not isinstance(page, dict) or not all(page.get(f) for f in ("id", "name", "access_token")):
            raise IntegrationError("Invalid page data from Facebook", platform=self.platform_type.value)

        logger.info(f"Selected Facebook page {page['name']} ({page['id']}) of {len(pages)}")
        return FacebookMetadata(
            page_id=str(page["id"]),
            page_name=page["name"],
            page_url=f"https://facebook.com/{page['id']}",
            encrypted_page_access_token=get_token_cipher().encrypt(page["access_token"]),
        )

    # =========================================================================
    # Reviews
    # =========================================================================

    async def fetch_reviews(
        self, credential: ChannelCredential, since: Optional[datetime]
    ) -> List[ReviewPayload]:
        """
        Read page ratings with the page access token.

        Raises:
            IntegrationError: Page token missing (reconnect needed) or Graph failure
            AuthRejectedError: Graph rejected the page token
        """
        metadata = FacebookMetadata(**(credential.platform_metadata or {}))
        if not metadata.page_id or not metadata.encrypted_page_access_token:
            raise IntegrationError(
                "Facebook page access token missing. Please reconnect Facebook.",
                platform=self.platform_type.value,
            )
        page_token = get_token_cipher().decrypt(metadata.encrypted_page_access_token)

        payloads: List[ReviewPayload] = []
        url: Optional[str] = f"{self.graph_url}/{metadata.page_id}/ratings"
        params: Optional[Dict[str, Any]] = {
            "fields": RATING_FIELDS,
            "limit": self.settings.review_page_size,
            "access_token": page_token,
        }

        async with self._session() as client:
            for _ in range(self.settings.max_review_pages):
                try:
                    body = await self._get_json(client, url, params)
                except AuthRejectedError as e:
                    # Extending the user token does not renew the page token
                    raise AuthRejectedError(
                        str(e),
                        platform=self.platform_type.value,
                        status_code=e.status_code,
                        refreshable=False,
                    ) from e
                items = body.get("data") or []
                if not isinstance(items, list):
                    raise IntegrationError("Malformed Facebook ratings response", platform=self.platform_type.value)

                for item in items:
                    payload = self._to_payload(item, metadata)
                    if since is not None and payload.created_at is not None and payload.created_at <= since:
                        continue
                    payloads.append(payload)

                # paging.next already carries fields, cursor and token
                paging = body.get("paging") if isinstance(body.get("paging"), dict) else {}
                url, params = paging.get("next"), None
                if not url:
                    break

        payloads.sort(key=lambda p: p.created_at or datetime.min)
        logger.info(f"Fetched {len(payloads)} Facebook reviews for page {metadata.page_id}")
        return payloads

    def _to_payload(self, item: Any, metadata: FacebookMetadata) -> ReviewPayload:
        try:
            story = item.get("open_graph_story") or {}
            reviewer = item.get("reviewer") or {}
            created_time = item.get("created_time")

            story_id = story.get("id")
            review_id = str(story_id) if story_id else derive_review_id(item.get("review_text"), created_time)
            created_at = parse_facebook_timestamp(created_time)

            return ReviewPayload(
                platform=self.platform_type,
                platform_review_id=review_id,
                reviewer_name=reviewer.get("name") or "Facebook User",
                rating=recommendation_to_rating(item),
                comment=item.get("review_text"),
                review_url=f"https://www.facebook.com/{story_id}" if story_id else (
                    f"{metadata.page_url}/reviews" if metadata.page_url else None
                ),
                created_at=created_at,
                updated_at=created_at,
                is_verified=False,
                metadata={
                    "page_id": metadata.page_id,
                    "recommendation_type": item.get("recommendation_type"),
                    "derived_id": not story_id,
                },
            )
        except (AttributeError, TypeError, ValidationError) as e:
            logger.warning(f"Unreadable Facebook rating on page {metadata.page_id}: {e}")
            return ReviewPayload(platform=self.platform_type, metadata={"page_id": metadata.page_id})

    async def post_review_response(
        self, credential: ChannelCredential, review_id: str, text: str
    ) -> None:
        logger.warning("Facebook review response not yet implemented")
        raise IntegrationError("Review response not yet configured", platform=self.platform_type.value)

    async def validate_credentials(self, credential: ChannelCredential) -> bool:
        try:
            metadata = FacebookMetadata(**(credential.platform_metadata or {}))
            if not metadata.page_id or not metadata.encrypted_page_access_token:
                return False

            async with self._session() as client:
                await self._get_json(
                    client,
                    f"{self.graph_url}/{metadata.page_id}",
                    {
                        "fields": "id,name",
                        "access_token": get_token_cipher().decrypt(metadata.encrypted_page_access_token),
                    },
                )
            return True
        except Exception as e:
            logger.debug(f"Facebook credential {credential.id} failed validation: {e}")
            return False

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise IntegrationError(
                f"Graph API request failed: {e}", platform=self.platform_type.value
            ) from e

        if response.status_code >= 400:
            code, message = _graph_error(response)
            error_class = AuthRejectedError if code in AUTH_REJECTION_CODES else IntegrationError
            raise error_class(
                f"Graph API request failed: {message}",
                platform=self.platform_type.value,
                status_code=response.status_code,
            )
        return response_json(response)
