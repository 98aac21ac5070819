"""
Capability contract shared by every review platform client.
"""

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from database.models import ChannelCredential
from ..models import OAuthTokenResponse, PlatformType, ReviewPayload


@runtime_checkable
class PlatformReviewClient(Protocol):
    """
    One implementation per platform. Platform metadata shapes differ, so
    clients share this contract rather than a base class.
    """

    platform_type: PlatformType

    def get_authorization_url(self, state: str, redirect_uri: Optional[str] = None) -> str:
        """URL for the user's browser. `state` is verified by the caller on callback."""
        ...

    async def exchange_code_for_token(
        self, code: str, redirect_uri: Optional[str] = None
    ) -> OAuthTokenResponse:
        """Raises IntegrationError on any non-success platform response."""
        ...

    async def refresh_token(self, credential: ChannelCredential) -> ChannelCredential:
        """
        Replace the access token and expiry in place.

        Raises TokenExpiredError (credential marked expired) when the platform
        refuses, IntegrationError for transient failures.
        """
        ...

    async def fetch_reviews(
        self, credential: ChannelCredential, since: Optional[datetime]
    ) -> List[ReviewPayload]:
        """Reviews newer than `since`, oldest first. `None` means full backfill."""
        ...

    async def post_review_response(
        self, credential: ChannelCredential, review_id: str, text: str
    ) -> None:
        ...

    async def validate_credentials(self, credential: ChannelCredential) -> bool:
        """Side-effect-free health check. Never raises."""
        ...
