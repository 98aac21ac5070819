"""
OAuth Connection Manager

Connects a business to a review platform. State lives in Redis for
15 minutes and is consumed on first use.
"""

import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from sqlalchemy.orm import Session

from database.models import ChannelCredential
from ..clients import get_platform_client, PlatformReviewClient
from ..config import (
    get_review_sync_settings,
    is_facebook_configured,
    is_google_configured,
    ReviewSyncSettings,
)
from ..exceptions import IntegrationError, OAuthStateError
from ..models import CredentialStatus, OAuthTokenResponse, PlatformType
from .credential_store import delete_credential, get_credential, get_or_create_pending

logger = logging.getLogger(__name__)

# OAuth state expiration (15 minutes)
STATE_EXPIRATION_SECONDS = 900


class OAuthConnectionManager:
    """
    Authorization start/callback handling for platform credentials.

    Uses Redis for state storage to prevent CSRF attacks.
    """

    def __init__(
        self,
        redis_client=None,
        settings: Optional[ReviewSyncSettings] = None,
        clients: Optional[Dict[PlatformType, PlatformReviewClient]] = None,
    ):
        self.redis = redis_client
        self.settings = settings or get_review_sync_settings()
        self.clients = clients

    async def _get_redis(self):
        """Get or create Redis client."""
        if self.redis is None:
            self.redis = aioredis.from_url(self.settings.redis_url)
        return self.redis

    async def _store_state(self, state: str, data: Dict[str, Any]) -> None:
        """Store OAuth state in Redis."""
        try:
            redis = await self._get_redis()
            await redis.setex(f"review_sync:oauth:state:{state}", STATE_EXPIRATION_SECONDS, json.dumps(data))
        except Exception as e:
            logger.error(f"Failed to store OAuth state in Redis: {e}")
            raise ConnectionError(f"Redis connection failed: {e}") from e

    async def _get_and_delete_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Get OAuth state from Redis and delete it (one-time use)."""
        redis = await self._get_redis()
        key = f"review_sync:oauth:state:{state}"
        data = await redis.get(key)
        if data:
            await redis.delete(key)
            return json.loads(data)
        return None

    async def start_authorization(
        self,
        db: Session,
        organization_id: int,
        business_id: Optional[int],
        platform: Union[PlatformType, str],
        redirect_uri: Optional[str] = None,
    ) -> Tuple[str, str]:
        """
        Begin connecting a platform.

        Returns:
            Tuple of (authorization_url, state)

        Raises:
            IntegrationError: If the platform app credentials are not configured
        """
        platform_type = PlatformType(platform)
        if not self.is_configured(platform_type):
            raise IntegrationError(
                f"{platform_type.value} OAuth is not configured", platform=platform_type.value
            )
        client = get_platform_client(platform_type, self.clients)

        credential = get_or_create_pending(db, organization_id, business_id, platform_type)
        db.commit()

        state = secrets.token_urlsafe(32)
        await self._store_state(
            state,
            {
                "credential_id": credential.id,
                "organization_id": organization_id,
                "business_id": business_id,
                "platform": platform_type.value,
                "redirect_uri": redirect_uri,
                "created_at": datetime.utcnow().isoformat(),
            },
        )

        url = client.get_authorization_url(state, redirect_uri)
        logger.info(f"Generated {platform_type.value} OAuth URL for org {organization_id} credential {credential.id}")
        return url, state

    async def complete_authorization(
        self,
        db: Session,
        platform: Union[PlatformType, str],
        code: str,
        state: str,
    ) -> ChannelCredential:
        """
        Handle the OAuth callback.

        Raises:
            OAuthStateError: If state is invalid, expired, or for another platform
            IntegrationError: If the platform refuses the code exchange
        """
        platform_type = PlatformType(platform)

        state_data = await self._get_and_delete_state(state)
        if not state_data:
            raise OAuthStateError("Invalid or expired OAuth state")
        if state_data.get("platform") != platform_type.value:
            raise OAuthStateError("State platform mismatch")

        credential = get_credential(db, state_data["credential_id"])
        if not credential:
            raise OAuthStateError("Credential for this OAuth state no longer exists")

        client = get_platform_client(platform_type, self.clients)
        token_response = await client.exchange_code_for_token(code, state_data.get("redirect_uri"))

        self.apply_token_response(credential, token_response)
        db.commit()

        logger.info(f"Connected {platform_type.value} credential {credential.id} for org {credential.organization_id}")
        return credential

    def apply_token_response(self, credential: ChannelCredential, token_response: OAuthTokenResponse) -> None:
        """Copy a fresh token set onto the credential and make it syncable."""
        now = datetime.utcnow()

        credential.access_token = token_response.access_token
        # Keep the old refresh token if the platform did not issue a new one
        if token_response.refresh_token:
            credential.refresh_token = token_response.refresh_token
        credential.token_expires_at = (
            now + timedelta(seconds=token_response.expires_in) if token_response.expires_in else None
        )
        credential.platform_metadata = {**(credential.platform_metadata or {}), **token_response.metadata}

        credential.status = CredentialStatus.ACTIVE.value
        credential.sync_error_message = None

        # Reviews are stored per business; org-level connections are not auto-synced
        if credential.business_id is None:
            credential.next_sync_scheduled = None
        else:
            credential.next_sync_scheduled = now + timedelta(minutes=self.settings.initial_sync_delay_minutes)

    def is_configured(self, platform_type: PlatformType) -> bool:
        if platform_type == PlatformType.GOOGLE:
            return is_google_configured(self.settings)
        return is_facebook_configured(self.settings)

    def disconnect(self, db: Session, credential_id: int) -> bool:
        """Remove a credential and its sync history."""
        deleted = delete_credential(db, credential_id)
        db.commit()
        return deleted


# Singleton instance
_oauth_manager: Optional[OAuthConnectionManager] = None


def get_oauth_manager(redis_client=None) -> OAuthConnectionManager:
    """Get the OAuth connection manager singleton."""
    global _oauth_manager
    if _oauth_manager is None:
        _oauth_manager = OAuthConnectionManager(redis_client)
    return _oauth_manager
