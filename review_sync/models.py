"""
Pydantic models for the review sync pipeline.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# =============================================================================
# Enums
# =============================================================================

class PlatformType(str, Enum):
    GOOGLE = "google_my_business"
    FACEBOOK = "facebook"


class CredentialStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MergeOutcome(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


# =============================================================================
# OAuth Models
# =============================================================================

class OAuthTokenResponse(BaseModel):
    """Token set returned by a code exchange or refresh. Never persisted as-is."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None  # seconds
    token_type: Optional[str] = None
    scope: Optional[str] = None

    # Platform discoveries made during the exchange (page, account, locations)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Platform metadata variants
# =============================================================================

class GoogleMetadata(BaseModel):
    """Business Profile account and locations cached on the credential."""
    account_name: Optional[str] = None
    location_names: List[str] = Field(default_factory=list)


class FacebookMetadata(BaseModel):
    """Managed page cached on the credential. The page token is stored encrypted."""
    page_id: Optional[str] = None
    page_name: Optional[str] = None
    page_url: Optional[str] = None
    encrypted_page_access_token: Optional[str] = None


# =============================================================================
# Review Models
# =============================================================================

class ReviewPayload(BaseModel):
    """
    Normalized-ready review as mapped by a platform client.

    Fields are optional so that one odd item never aborts a fetch; the
    normalizer decides whether the payload is usable.
    """
    platform: PlatformType
    platform_review_id: Optional[str] = None
    reviewer_name: Optional[str] = None
    reviewer_photo_url: Optional[str] = None
    rating: Optional[int] = None
    comment: Optional[str] = None
    review_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_verified: bool = False
    business_response: Optional[str] = None
    business_response_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlatformReview(BaseModel):
    """Canonical review shape merged into the review store."""
    platform: PlatformType
    platform_review_id: str = Field(..., min_length=1, max_length=255)
    reviewer_name: str = "Anonymous"
    reviewer_photo_url: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    review_url: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    is_verified: bool = False
    business_response: Optional[str] = None
    business_response_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MergeCounts(BaseModel):
    """Per-batch merge tally."""
    fetched: int = 0
    new: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0

    def record(self, outcome: MergeOutcome) -> None:
        if outcome == MergeOutcome.NEW:
            self.new += 1
        elif outcome == MergeOutcome.UPDATED:
            self.updated += 1
        elif outcome == MergeOutcome.UNCHANGED:
            self.unchanged += 1
        else:
            self.skipped += 1
