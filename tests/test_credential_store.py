"""Tests for credential persistence helpers."""

from datetime import datetime, timedelta

import pytest

from database.models import ChannelCredential, ReviewSyncJob
from review_sync.exceptions import DuplicateCredentialError
from review_sync.models import CredentialStatus, PlatformType, SyncJobStatus
from review_sync.services import credential_store


class TestCreateCredential:
    """Uniqueness per (organization, business, platform)."""

    def test_creates_pending_credential(self, db):
        credential = credential_store.create_credential(db, 1, 10, PlatformType.GOOGLE)
        db.commit()

        assert credential.id is not None
        assert credential.status == CredentialStatus.PENDING.value
        assert credential.platform_type == "google_my_business"

    def test_second_credential_for_same_triple_rejected(self, db):
        credential_store.create_credential(db, 1, 10, PlatformType.GOOGLE)
        db.commit()

        with pytest.raises(DuplicateCredentialError):
            credential_store.create_credential(db, 1, 10, "google_my_business")

    def test_same_triple_without_business_rejected(self, db):
        credential_store.create_credential(db, 1, None, PlatformType.FACEBOOK)
        db.commit()

        with pytest.raises(DuplicateCredentialError):
            credential_store.create_credential(db, 1, None, PlatformType.FACEBOOK)

    def test_other_platform_or_business_allowed(self, db):
        credential_store.create_credential(db, 1, 10, PlatformType.GOOGLE)
        credential_store.create_credential(db, 1, 10, PlatformType.FACEBOOK)
        credential_store.create_credential(db, 1, 11, PlatformType.GOOGLE)
        db.commit()

        assert len(credential_store.list_for_business(db, 1)) == 3
        assert len(credential_store.list_for_business(db, 1, 10)) == 2


class TestLookups:
    """Queries used by the scheduler and the reconnect UI."""

    def test_get_or_create_pending_reuses_existing_row(self, db, make_credential):
        existing = make_credential(status=CredentialStatus.EXPIRED)

        credential = credential_store.get_or_create_pending(db, 1, 10, PlatformType.GOOGLE)

        assert credential.id == existing.id

    def test_list_due_for_sync_only_returns_active_and_due(self, db, make_credential):
        now = datetime.utcnow()
        due = make_credential(next_sync_scheduled=now - timedelta(minutes=1))
        make_credential(business_id=11, next_sync_scheduled=now + timedelta(hours=1))
        make_credential(business_id=12, status=CredentialStatus.EXPIRED, next_sync_scheduled=now - timedelta(hours=1))
        make_credential(business_id=13)

        assert [c.id for c in credential_store.list_due_for_sync(db, now)] == [due.id]

    def test_expired_credentials_stay_queryable(self, db, make_credential):
        expired = make_credential(status=CredentialStatus.EXPIRED)
        make_credential(business_id=11)

        assert [c.id for c in credential_store.list_reconnect_required(db)] == [expired.id]
        assert credential_store.list_reconnect_required(db, organization_id=2) == []


class TestDeleteCredential:
    """Disconnect removes the credential and its history."""

    def test_delete_cascades_to_jobs(self, db, make_credential):
        credential = make_credential()
        db.add(ReviewSyncJob(
            credential_id=credential.id,
            platform_type=credential.platform_type,
            status=SyncJobStatus.SUCCEEDED.value,
        ))
        db.commit()

        assert credential_store.delete_credential(db, credential.id) is True
        db.commit()

        assert db.query(ChannelCredential).count() == 0
        assert db.query(ReviewSyncJob).count() == 0

    def test_delete_missing_credential_returns_false(self, db):
        assert credential_store.delete_credential(db, 999) is False
