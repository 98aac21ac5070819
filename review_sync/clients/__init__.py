"""
Platform clients for review sync.

Clients are resolved by platform type at sync time.
"""

from typing import Dict, Optional, Union

from ..exceptions import IntegrationError
from ..models import PlatformType
from .base import PlatformReviewClient
from .facebook_pages import FacebookPagesClient
from .google_business import GoogleBusinessClient

__all__ = [
    "PlatformReviewClient",
    "GoogleBusinessClient",
    "FacebookPagesClient",
    "get_platform_clients",
    "get_platform_client",
]


# Singleton registry
_clients: Optional[Dict[PlatformType, PlatformReviewClient]] = None


def get_platform_clients() -> Dict[PlatformType, PlatformReviewClient]:
    """Get the platform-type-keyed client registry."""
    global _clients
    if _clients is None:
        _clients = {
            PlatformType.GOOGLE: GoogleBusinessClient(),
            PlatformType.FACEBOOK: FacebookPagesClient(),
        }
    return _clients


def get_platform_client(
    platform: Union[PlatformType, str],
    clients: Optional[Dict[PlatformType, PlatformReviewClient]] = None,
) -> PlatformReviewClient:
    """
    Resolve the client for a platform.

    Raises:
        IntegrationError: If no client is registered for the platform
    """
    registry = clients if clients is not None else get_platform_clients()
    try:
        platform_type = PlatformType(platform)
    except ValueError:
        raise IntegrationError(f"Unsupported platform: {platform}", platform=str(platform))

    client = registry.get(platform_type)
    if client is None:
        raise IntegrationError(f"No client registered for {platform_type.value}", platform=platform_type.value)
    return client
