"""
Review Normalizer

Turns platform payloads into canonical reviews and merges them into the
review store keyed on (business_id, source, source_review_id). A payload
that fails validation is skipped without aborting the batch.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from database.models import Review
from ..models import MergeCounts, MergeOutcome, PlatformReview

logger = logging.getLogger(__name__)

# Fields whose change on the platform makes a stored review "updated"
MUTABLE_FIELDS = ("comment", "rating", "platform_response")


class ReviewNormalizer:
    """
    Canonicalizes and deduplicates fetched reviews.
    """

    def normalize(self, payload: Any) -> PlatformReview:
        """
        Validate a client payload into the canonical shape.

        Raises:
            ValidationError: Missing id or timestamp, or rating outside 1-5
        """
        data = payload.model_dump() if isinstance(payload, BaseModel) else dict(payload)
        # Missing values fall back to the canonical defaults
        data = {k: v for k, v in data.items() if v is not None}
        if isinstance(data.get("comment"), str):
            data["comment"] = data["comment"].strip() or None
        return PlatformReview.model_validate(data)

    def merge(self, db: Session, business_id: int, payloads: Iterable[Any]) -> MergeCounts:
        """
        Merge a batch into the review store. Nothing is committed here.

        Returns:
            Per-outcome counts for the batch
        """
        counts = MergeCounts()
        # Rows touched in this batch; the session does not autoflush
        batch: Dict[Tuple[str, str], Review] = {}
        now = datetime.utcnow()

        for payload in payloads:
            counts.fetched += 1
            try:
                review = self.normalize(payload)
            except (ValidationError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparseable review for business {business_id}: {e}")
                counts.record(MergeOutcome.SKIPPED)
                continue

            key = (review.platform.value, review.platform_review_id)
            existing = batch.get(key) or self._find_existing(db, business_id, *key)

            if existing is None:
                row = self._to_row(business_id, review, now)
                db.add(row)
                batch[key] = row
                counts.record(MergeOutcome.NEW)
            else:
                batch[key] = existing
                counts.record(self._apply_changes(existing, review, now))

        db.flush()
        logger.info(
            f"Merged {counts.fetched} reviews for business {business_id}: "
            f"{counts.new} new, {counts.updated} updated, "
            f"{counts.unchanged} unchanged, {counts.skipped} skipped"
        )
        return counts

    def _find_existing(self, db: Session, business_id: int, source: str, source_review_id: str) -> Optional[Review]:
        return (
            db.query(Review)
            .filter(
                Review.business_id == business_id,
                Review.source == source,
                Review.source_review_id == source_review_id,
            )
            .first()
        )

    def _to_row(self, business_id: int, review: PlatformReview, now: datetime) -> Review:
        return Review(
            business_id=business_id,
            source=review.platform.value,
            source_review_id=review.platform_review_id,
            source_review_url=review.review_url,
            customer_name=review.reviewer_name,
            reviewer_photo_url=review.reviewer_photo_url,
            rating=review.rating,
            comment=review.comment,
            platform_verified=review.is_verified,
            platform_response=review.business_response,
            platform_response_at=review.business_response_at,
            source_created_at=review.created_at,
            source_updated_at=review.updated_at,
            source_metadata=review.metadata,
            synced_at=now,
        )

    def _apply_changes(self, row: Review, review: PlatformReview, now: datetime) -> MergeOutcome:
        incoming = {
            "comment": review.comment,
            "rating": review.rating,
            "platform_response": review.business_response,
        }
        changed = [field for field in MUTABLE_FIELDS if getattr(row, field) != incoming[field]]
        if not changed:
            return MergeOutcome.UNCHANGED

        for field in changed:
            setattr(row, field, incoming[field])
        row.platform_response_at = review.business_response_at
        row.source_updated_at = review.updated_at or row.source_updated_at
        row.customer_name = review.reviewer_name
        row.source_metadata = review.metadata
        row.synced_at = now

        logger.debug(f"Review {row.source_review_id} changed: {', '.join(changed)}")
        return MergeOutcome.UPDATED
