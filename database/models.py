"""
Database models for third-party review sync
"""
from sqlalchemy import Column, String, Integer, DateTime, Boolean, Text, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timedelta
from typing import Optional
from .database import Base


# =============================================================================
# Platform Credentials
# =============================================================================

class ChannelCredential(Base):
    """
    OAuth credential for one (organization, business, platform) pairing.
    Tokens are Fernet-encrypted at rest and exposed as plain properties.
    """
    __tablename__ = "channel_credentials"
    __table_args__ = (
        UniqueConstraint("organization_id", "business_id", "platform_type", name="uq_org_business_platform"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(Integer, nullable=False, index=True)
    business_id = Column(Integer, index=True)

    platform_type = Column(String(50), nullable=False)  # google_my_business, facebook
    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, active, expired, error

    # Encrypted tokens
    encrypted_access_token = Column(Text)
    encrypted_refresh_token = Column(Text)
    token_expires_at = Column(DateTime)

    # Platform-specific metadata (page id, account/location names)
    platform_metadata = Column("metadata", JSON, default=dict)

    # Sync tracking
    last_sync_at = Column(DateTime)
    last_sync_status = Column(String(20))  # SUCCESS, FAILED
    sync_error_message = Column(Text)
    next_sync_scheduled = Column(DateTime)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    sync_jobs = relationship(
        "ReviewSyncJob",
        back_populates="credential",
        cascade="all, delete-orphan",
        order_by="ReviewSyncJob.id",
    )

    @property
    def access_token(self) -> Optional[str]:
        if not self.encrypted_access_token:
            return None
        from review_sync.services.token_cipher import get_token_cipher
        return get_token_cipher().decrypt(self.encrypted_access_token)

    @access_token.setter
    def access_token(self, value: Optional[str]) -> None:
        from review_sync.services.token_cipher import get_token_cipher
        self.encrypted_access_token = get_token_cipher().encrypt(value) if value else None

    @property
    def refresh_token(self) -> Optional[str]:
        if not self.encrypted_refresh_token:
            return None
        from review_sync.services.token_cipher import get_token_cipher
        return get_token_cipher().decrypt(self.encrypted_refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: Optional[str]) -> None:
        from review_sync.services.token_cipher import get_token_cipher
        self.encrypted_refresh_token = get_token_cipher().encrypt(value) if value else None

    def needs_refresh(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the token expires within `margin`. Tokens without expiry never do."""
        now = now or datetime.utcnow()
        return self.token_expires_at is not None and now + margin >= self.token_expires_at

    def __repr__(self) -> str:
        return f"<ChannelCredential id={self.id} platform={self.platform_type} status={self.status}>"


class ReviewSyncJob(Base):
    """
    One sync attempt. Written when opened, closed once, never touched again.
    """
    __tablename__ = "review_sync_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    credential_id = Column(Integer, ForeignKey("channel_credentials.id", ondelete="CASCADE"), nullable=False, index=True)
    business_id = Column(Integer)
    platform_type = Column(String(50), nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)  # pending, running, succeeded, failed
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Results
    reviews_fetched = Column(Integer, default=0)
    reviews_new = Column(Integer, default=0)
    reviews_updated = Column(Integer, default=0)
    reviews_unchanged = Column(Integer, default=0)
    reviews_skipped = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text)
    error_details = Column(JSON)
    reconnect_required = Column(Boolean, default=False)
    retry_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    credential = relationship("ChannelCredential", back_populates="sync_jobs")


# =============================================================================
# Review Store
# =============================================================================

class Review(Base):
    """
    Canonical review, either collected in-product or imported from a platform.
    (business_id, source, source_review_id) is the import dedup key.
    """
    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("business_id", "source", "source_review_id", name="uq_reviews_source_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    business_id = Column(Integer, nullable=False, index=True)

    # Platform identity
    source = Column(String(50), nullable=False)
    source_review_id = Column(String(255))
    source_review_url = Column(Text)

    # Reviewer
    customer_name = Column(String(255))
    reviewer_photo_url = Column(Text)

    # Content
    rating = Column(Integer, nullable=False)
    comment = Column(Text)
    platform_verified = Column(Boolean, default=False)

    # Business reply as seen on the platform
    platform_response = Column(Text)
    platform_response_at = Column(DateTime)

    source_created_at = Column(DateTime)
    source_updated_at = Column(DateTime)
    source_metadata = Column(JSON, default=dict)

    # Timestamps
    synced_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
