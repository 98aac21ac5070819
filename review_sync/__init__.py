"""
Review Sync - Third-party review import

This package provides:
- OAuth connection of Google Business Profile and Facebook Pages
- Token refresh/extension with reconnect detection
- Idempotent review import with deterministic ids for Facebook ratings
- Auditable sync jobs with bounded retries

Architecture:
- clients/: One client per platform behind a shared contract
- services/: Credential store, lifecycle, normalizer, sync runner, OAuth flow
- config.py: Settings and scopes
"""

from .config import get_review_sync_settings, ReviewSyncSettings

__all__ = ["get_review_sync_settings", "ReviewSyncSettings"]
