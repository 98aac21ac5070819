"""
Review Sync Configuration

Environment variables for Google Business Profile and Facebook Pages
review integrations, plus the timing constants used by the sync pipeline.
"""

import os
from pydantic_settings import BaseSettings
from typing import Optional, List


# =============================================================================
# OAuth scopes
# =============================================================================

# Google Business Profile: offline access is requested via access_type=offline
GOOGLE_SCOPES: List[str] = [
    "https://www.googleapis.com/auth/business.manage",
]

# Facebook Pages: page list + ratings read access
FACEBOOK_SCOPES: List[str] = [
    "pages_show_list",
    "pages_read_engagement",
    "pages_manage_metadata",
]


class ReviewSyncSettings(BaseSettings):
    """Settings for third-party review integrations."""

    # ==========================================================================
    # Google Business Profile
    # ==========================================================================

    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    google_redirect_uri: str = os.getenv(
        "GOOGLE_REDIRECT_URI",
        "http://localhost:8000/api/v1/platforms/callback/google"
    )

    # ==========================================================================
    # Facebook Pages
    # ==========================================================================

    facebook_app_id: Optional[str] = None
    facebook_app_secret: Optional[str] = None

    facebook_redirect_uri: str = os.getenv(
        "FACEBOOK_REDIRECT_URI",
        "http://localhost:8000/api/v1/platforms/callback/facebook"
    )

    facebook_api_version: str = "v18.0"

    # ==========================================================================
    # Token lifecycle
    # ==========================================================================

    # Refresh when the access token expires within this margin
    token_refresh_margin_seconds: int = 300

    # Facebook long-lived tokens (60 days) are re-extended in their last week
    facebook_extend_margin_days: int = 7

    # ==========================================================================
    # Sync scheduling
    # ==========================================================================

    sync_interval_hours: int = 6
    initial_sync_delay_minutes: int = 5

    # Consecutive retryable failures before a credential stops auto-syncing
    max_sync_retries: int = 3
    retry_backoff_base_seconds: int = 300
    retry_backoff_max_seconds: int = 21600

    # Adapter-level bounds on a single fetch
    max_review_pages: int = 10
    review_page_size: int = 50

    http_timeout_seconds: float = 30.0

    # ==========================================================================
    # Locking
    # ==========================================================================

    # "memory" for single-instance deployments, "redis" for multiple workers
    lock_backend: str = "memory"
    lock_timeout_seconds: int = 300
    lock_blocking_timeout_seconds: float = 5.0

    # ==========================================================================
    # General Settings
    # ==========================================================================

    # Redis URL for OAuth state storage and distributed locks
    redis_url: str = os.getenv("REDIS_URL", f"redis://{os.getenv('REDIS_HOST', 'localhost')}:6379")

    # Fernet key for tokens at rest
    token_encryption_key: Optional[str] = None

    class Config:
        env_prefix = ""
        case_sensitive = False
        env_file = ".env"
        extra = "ignore"


# Singleton instance
_settings: Optional[ReviewSyncSettings] = None


def get_review_sync_settings() -> ReviewSyncSettings:
    """Get the review sync settings singleton."""
    global _settings
    if _settings is None:
        _settings = ReviewSyncSettings()
    return _settings


def is_google_configured(settings: Optional[ReviewSyncSettings] = None) -> bool:
    """Check if Google Business Profile credentials are configured."""
    settings = settings or get_review_sync_settings()
    return bool(settings.google_client_id and settings.google_client_secret)


def is_facebook_configured(settings: Optional[ReviewSyncSettings] = None) -> bool:
    """Check if Facebook app credentials are configured."""
    settings = settings or get_review_sync_settings()
    return bool(settings.facebook_app_id and settings.facebook_app_secret)
