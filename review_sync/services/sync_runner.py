"""
Sync Job Runner

One invocation syncs one credential end to end:

    open job (RUNNING) -> usable credential -> fetch since watermark
        -> normalize/merge -> commit reviews + job + credential together

Every attempt leaves a closed ReviewSyncJob behind. TokenExpiredError is
terminal and does not count as a retry; IntegrationError is retried with
exponential backoff until max_sync_retries.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from database.models import ChannelCredential, ReviewSyncJob
from ..clients import get_platform_client, PlatformReviewClient
from ..config import get_review_sync_settings, ReviewSyncSettings
from ..exceptions import (
    CredentialConfigurationError,
    CredentialLockError,
    IntegrationError,
    TokenExpiredError,
)
from ..models import CredentialStatus, MergeCounts, PlatformType, SyncJobStatus
from .credential_lock import get_credential_lock
from .credential_store import get_credential, list_due_for_sync
from .lifecycle import CredentialLifecycleManager
from .normalizer import ReviewNormalizer

logger = logging.getLogger(__name__)

SYNC_SUCCESS = "SUCCESS"
SYNC_FAILED = "FAILED"


def compute_backoff(retry_count: int, settings: ReviewSyncSettings) -> timedelta:
    """base * 2^(n-1), capped."""
    exponent = max(retry_count - 1, 0)
    seconds = settings.retry_backoff_base_seconds * (2 ** exponent)
    return timedelta(seconds=min(seconds, settings.retry_backoff_max_seconds))


class SyncJobRunner:
    """
    Runs review sync jobs for stored credentials.
    """

    def __init__(
        self,
        settings: Optional[ReviewSyncSettings] = None,
        clients: Optional[Dict[PlatformType, PlatformReviewClient]] = None,
        lifecycle: Optional[CredentialLifecycleManager] = None,
        normalizer: Optional[ReviewNormalizer] = None,
        lock=None,
    ):
        self.settings = settings or get_review_sync_settings()
        self.clients = clients
        self.lifecycle = lifecycle or CredentialLifecycleManager(self.settings, clients)
        self.normalizer = normalizer or ReviewNormalizer()
        self.lock = lock or get_credential_lock(self.settings)

    async def run(self, db: Session, credential_id: int) -> ReviewSyncJob:
        """
        Sync one credential and return the closed job.

        Raises:
            ValueError: If the credential does not exist
        """
        credential = get_credential(db, credential_id)
        if not credential:
            raise ValueError(f"Credential {credential_id} not found")

        job = self._open_job(db, credential)
        job_id = job.id
        logger.info(f"Starting {credential.platform_type} sync job {job_id} for credential {credential_id}")

        # Each handler rolls back first; a failed flush leaves the session unusable until then
        try:
            async with self.lock.hold(credential_id):
                await self._sync(db, job, credential)
        except TokenExpiredError as e:
            db.rollback()
            self._close_reconnect_required(job, credential, e)
            db.commit()
        except CredentialLockError as e:
            db.rollback()
            self._close_lock_conflict(job, e)
            db.commit()
        except CredentialConfigurationError as e:
            db.rollback()
            self._close_misconfigured(job, credential, e)
            db.commit()
        except IntegrationError as e:
            db.rollback()
            self._close_retryable(job, credential, e)
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"Unexpected error in sync job {job_id}")
            self._close_retryable(job, credential, e)
            db.commit()

        return job

    async def run_due(self, db: Session, now: Optional[datetime] = None) -> List[ReviewSyncJob]:
        """Run every credential whose next sync is due, one at a time."""
        due = list_due_for_sync(db, now)
        logger.info(f"{len(due)} credentials due for review sync")

        jobs = []
        for credential_id in [c.id for c in due]:
            jobs.append(await self.run(db, credential_id))
        return jobs

    # =========================================================================
    # Steps
    # =========================================================================

    def _open_job(self, db: Session, credential: ChannelCredential) -> ReviewSyncJob:
        job = ReviewSyncJob(
            credential_id=credential.id,
            business_id=credential.business_id,
            platform_type=credential.platform_type,
            status=SyncJobStatus.RUNNING.value,
            started_at=datetime.utcnow(),
            retry_count=self._inherited_retry_count(db, credential),
        )
        db.add(job)
        db.commit()
        return job

    def _inherited_retry_count(self, db: Session, credential: ChannelCredential) -> int:
        """Consecutive retryable failures so far, carried by the latest job."""
        previous = (
            db.query(ReviewSyncJob)
            .filter(ReviewSyncJob.credential_id == credential.id)
            .order_by(ReviewSyncJob.id.desc())
            .first()
        )
        if (
            previous is None
            or previous.status != SyncJobStatus.FAILED.value
            or previous.reconnect_required
        ):
            return 0
        return previous.retry_count or 0

    async def _sync(self, db: Session, job: ReviewSyncJob, credential: ChannelCredential) -> None:
        if credential.business_id is None:
            raise CredentialConfigurationError(
                f"Credential {credential.id} is not attached to a business; reviews cannot be stored",
                platform=credential.platform_type,
            )

        credential = await self.lifecycle.ensure_usable(db, credential)
        client = get_platform_client(credential.platform_type, self.clients)

        since = credential.last_sync_at
        payloads = await self.lifecycle.call_with_refresh(
            db, credential, lambda c: client.fetch_reviews(c, since)
        )

        counts = self.normalizer.merge(db, credential.business_id, payloads)
        self._close_succeeded(job, credential, counts)
        db.commit()

    # =========================================================================
    # Job closure
    # =========================================================================

    def _close_succeeded(self, job: ReviewSyncJob, credential: ChannelCredential, counts: MergeCounts) -> None:
        now = datetime.utcnow()

        job.status = SyncJobStatus.SUCCEEDED.value
        job.completed_at = now
        job.reviews_fetched = counts.fetched
        job.reviews_new = counts.new
        job.reviews_updated = counts.updated
        job.reviews_unchanged = counts.unchanged
        job.reviews_skipped = counts.skipped
        job.retry_count = 0

        # Watermark is the job start so reviews posted mid-fetch are picked up next time
        credential.last_sync_at = job.started_at
        credential.last_sync_status = SYNC_SUCCESS
        credential.sync_error_message = None
        credential.status = CredentialStatus.ACTIVE.value
        credential.next_sync_scheduled = now + timedelta(hours=self.settings.sync_interval_hours)

        logger.info(
            f"Sync job {job.id} succeeded: {counts.fetched} fetched, {counts.new} new, "
            f"{counts.updated} updated, {counts.skipped} skipped"
        )

    def _close_reconnect_required(
        self, job: ReviewSyncJob, credential: ChannelCredential, error: TokenExpiredError
    ) -> None:
        job.status = SyncJobStatus.FAILED.value
        job.completed_at = datetime.utcnow()
        job.error_message = str(error)
        job.error_details = {
            "type": type(error).__name__,
            "platform": error.platform,
            "can_reconnect": error.can_reconnect,
        }
        job.reconnect_required = True

        credential.status = CredentialStatus.EXPIRED.value
        credential.last_sync_status = SYNC_FAILED
        credential.sync_error_message = str(error)
        credential.next_sync_scheduled = None

        logger.error(f"Sync job {job.id} failed: credential {credential.id} needs reconnect")

    def _close_lock_conflict(self, job: ReviewSyncJob, error: CredentialLockError) -> None:
        # The sync holding the lock owns the credential's schedule
        job.status = SyncJobStatus.FAILED.value
        job.completed_at = datetime.utcnow()
        job.error_message = str(error)
        job.error_details = {"type": type(error).__name__}

        logger.warning(f"Sync job {job.id} aborted: {error}")

    def _close_misconfigured(
        self, job: ReviewSyncJob, credential: ChannelCredential, error: CredentialConfigurationError
    ) -> None:
        job.status = SyncJobStatus.FAILED.value
        job.completed_at = datetime.utcnow()
        job.error_message = str(error)
        job.error_details = {"type": type(error).__name__, "platform": error.platform}

        credential.status = CredentialStatus.ERROR.value
        credential.last_sync_status = SYNC_FAILED
        credential.sync_error_message = str(error)
        credential.next_sync_scheduled = None

        logger.error(f"Sync job {job.id} failed: {error}")

    def _close_retryable(self, job: ReviewSyncJob, credential: ChannelCredential, error: Exception) -> None:
        now = datetime.utcnow()
        retry_count = (job.retry_count or 0) + 1

        job.status = SyncJobStatus.FAILED.value
        job.completed_at = now
        job.error_message = str(error)
        job.error_details = {
            "type": type(error).__name__,
            "platform": getattr(error, "platform", None),
            "status_code": getattr(error, "status_code", None),
        }
        job.retry_count = retry_count

        credential.last_sync_status = SYNC_FAILED
        credential.sync_error_message = str(error)

        if retry_count >= self.settings.max_sync_retries:
            credential.status = CredentialStatus.ERROR.value
            credential.next_sync_scheduled = None
            logger.error(
                f"Sync job {job.id} failed ({retry_count}/{self.settings.max_sync_retries}); "
                f"credential {credential.id} stops auto-syncing: {error}"
            )
        else:
            credential.next_sync_scheduled = now + compute_backoff(retry_count, self.settings)
            logger.warning(
                f"Sync job {job.id} failed ({retry_count}/{self.settings.max_sync_retries}), "
                f"retrying at {credential.next_sync_scheduled}: {error}"
            )
