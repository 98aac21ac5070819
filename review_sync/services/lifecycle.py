"""
Credential Lifecycle Manager

Hands the sync runner a credential that is usable for the next platform
call: refreshes proactively when expiry is inside the platform's margin,
and reactively once when the platform rejects the token mid-call.
"""

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.orm import Session

from database.models import ChannelCredential
from ..clients import get_platform_client, PlatformReviewClient
from ..config import get_review_sync_settings, ReviewSyncSettings
from ..exceptions import AuthRejectedError, IntegrationError, TokenExpiredError
from ..models import CredentialStatus, PlatformType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialLifecycleManager:
    """
    Refresh and health decisions for stored credentials.

    Transitions:
        ACTIVE -> ACTIVE   refresh succeeded (token and expiry replaced)
        ACTIVE -> EXPIRED  platform refused refresh/extension
        ACTIVE -> ERROR    health check failed
    EXPIRED only returns to ACTIVE through re-authorization.
    """

    def __init__(
        self,
        settings: Optional[ReviewSyncSettings] = None,
        clients: Optional[Dict[PlatformType, PlatformReviewClient]] = None,
    ):
        self.settings = settings or get_review_sync_settings()
        self.clients = clients

    def get_client(self, credential: ChannelCredential) -> PlatformReviewClient:
        return get_platform_client(credential.platform_type, self.clients)

    def refresh_margin(self, credential: ChannelCredential) -> timedelta:
        """How close to expiry a token may get before it is refreshed."""
        if credential.platform_type == PlatformType.FACEBOOK.value:
            return timedelta(days=self.settings.facebook_extend_margin_days)
        return timedelta(seconds=self.settings.token_refresh_margin_seconds)

    async def ensure_usable(self, db: Session, credential: ChannelCredential) -> ChannelCredential:
        """
        Return the credential ready for an immediate fetch.

        ERROR credentials are allowed through so a manual sync can recover them.

        Raises:
            TokenExpiredError: Credential is EXPIRED or refresh was refused
            IntegrationError: Credential was never authorized, or refresh failed transiently
        """
        if credential.status == CredentialStatus.EXPIRED.value:
            raise TokenExpiredError(
                credential.platform_type,
                credential.id,
                credential.sync_error_message or "Credential expired. Please reconnect.",
            )
        if credential.status == CredentialStatus.PENDING.value:
            raise IntegrationError(
                f"Credential {credential.id} has not completed authorization",
                platform=credential.platform_type,
            )

        if not credential.encrypted_access_token or credential.needs_refresh(self.refresh_margin(credential)):
            await self.refresh(db, credential)

        return credential

    async def refresh(self, db: Session, credential: ChannelCredential, force: bool = False) -> ChannelCredential:
        """
        Refresh under a row lock and commit the result.

        Without `force`, a credential some other worker already refreshed is
        left alone.
        """
        # Re-read the row so a token refreshed by another worker is not clobbered
        db.refresh(credential, with_for_update=True)
        if not force and credential.encrypted_access_token and not credential.needs_refresh(
            self.refresh_margin(credential)
        ):
            logger.info(f"Credential {credential.id} already refreshed elsewhere")
            db.commit()
            return credential

        client = self.get_client(credential)
        try:
            await client.refresh_token(credential)
        except TokenExpiredError:
            # Client has already marked the credential expired
            credential.status = CredentialStatus.EXPIRED.value
            credential.next_sync_scheduled = None
            db.commit()
            logger.error(f"Credential {credential.id} expired during refresh; reconnect required")
            raise
        except IntegrationError:
            db.rollback()
            raise

        db.commit()
        logger.info(f"Refreshed {credential.platform_type} credential {credential.id}")
        return credential

    async def call_with_refresh(
        self,
        db: Session,
        credential: ChannelCredential,
        operation: Callable[[ChannelCredential], Awaitable[T]],
    ) -> T:
        """
        Run a platform call, refreshing once if the token is rejected.

        A second rejection right after a successful refresh means the grant
        itself is gone; the credential is marked EXPIRED. A rejection of a
        token that refresh does not replace expires the credential at once.
        """
        try:
            return await operation(credential)
        except AuthRejectedError as e:
            if not e.refreshable:
                message = "Platform rejected a token that only reconnecting can renew. Please reconnect."
                self.mark_expired(db, credential, message)
                raise TokenExpiredError(credential.platform_type, credential.id, message) from e
            logger.warning(f"Token rejected for credential {credential.id}, refreshing: {e}")

        await self.refresh(db, credential, force=True)

        try:
            return await operation(credential)
        except AuthRejectedError as e:
            message = "Platform rejected a freshly refreshed token. Please reconnect."
            self.mark_expired(db, credential, message)
            raise TokenExpiredError(credential.platform_type, credential.id, message) from e

    def mark_expired(self, db: Session, credential: ChannelCredential, message: str) -> None:
        credential.status = CredentialStatus.EXPIRED.value
        credential.sync_error_message = message
        credential.next_sync_scheduled = None
        db.commit()
        logger.error(f"Credential {credential.id} marked expired: {message}")

    async def check_health(self, db: Session, credential: ChannelCredential) -> bool:
        """
        Probe the credential without side effects on the platform.

        An ACTIVE credential that fails the check moves to ERROR.
        """
        client = self.get_client(credential)
        healthy = await client.validate_credentials(credential)

        if not healthy and credential.status == CredentialStatus.ACTIVE.value:
            credential.status = CredentialStatus.ERROR.value
            credential.sync_error_message = "Credential validation failed"
            db.commit()
            logger.warning(f"Credential {credential.id} failed health check")
        return healthy


# Singleton instance
_lifecycle_manager: Optional[CredentialLifecycleManager] = None


def get_lifecycle_manager() -> CredentialLifecycleManager:
    """Get the lifecycle manager singleton."""
    global _lifecycle_manager
    if _lifecycle_manager is None:
        _lifecycle_manager = CredentialLifecycleManager()
    return _lifecycle_manager
