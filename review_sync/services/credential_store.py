"""
Credential Store

Persistence helpers for ChannelCredential rows. At most one credential
exists per (organization, business, platform); expired credentials stay
queryable so the user can be prompted to reconnect.
"""

import logging
from datetime import datetime
from typing import Optional, List, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import ChannelCredential
from ..exceptions import DuplicateCredentialError
from ..models import CredentialStatus, PlatformType

logger = logging.getLogger(__name__)


def _platform_value(platform: Union[PlatformType, str]) -> str:
    return PlatformType(platform).value


def find_credential(
    db: Session,
    organization_id: int,
    business_id: Optional[int],
    platform: Union[PlatformType, str],
) -> Optional[ChannelCredential]:
    """Look up the credential for an (organization, business, platform) triple."""
    query = db.query(ChannelCredential).filter(
        ChannelCredential.organization_id == organization_id,
        ChannelCredential.platform_type == _platform_value(platform),
    )
    # NULL never equals NULL in SQL
    if business_id is None:
        query = query.filter(ChannelCredential.business_id.is_(None))
    else:
        query = query.filter(ChannelCredential.business_id == business_id)
    return query.first()


def get_credential(db: Session, credential_id: int) -> Optional[ChannelCredential]:
    return db.query(ChannelCredential).filter(ChannelCredential.id == credential_id).first()


def create_credential(
    db: Session,
    organization_id: int,
    business_id: Optional[int],
    platform: Union[PlatformType, str],
) -> ChannelCredential:
    """
    Create a PENDING credential.

    Raises:
        DuplicateCredentialError: If the triple already has a credential
    """
    platform_value = _platform_value(platform)
    if find_credential(db, organization_id, business_id, platform_value):
        raise DuplicateCredentialError(
            f"{platform_value} is already connected for organization {organization_id}"
            f" business {business_id}"
        )

    credential = ChannelCredential(
        organization_id=organization_id,
        business_id=business_id,
        platform_type=platform_value,
        status=CredentialStatus.PENDING.value,
        platform_metadata={},
    )
    db.add(credential)
    try:
        db.flush()
    except IntegrityError as e:
        # Lost a race with a concurrent insert
        db.rollback()
        raise DuplicateCredentialError(
            f"{platform_value} is already connected for organization {organization_id}"
            f" business {business_id}"
        ) from e

    logger.info(f"Created pending {platform_value} credential {credential.id} for org {organization_id}")
    return credential


def get_or_create_pending(
    db: Session,
    organization_id: int,
    business_id: Optional[int],
    platform: Union[PlatformType, str],
) -> ChannelCredential:
    """
    Credential to authorize against. Re-authorization reuses the existing row
    so a reconnect keeps the sync history.
    """
    existing = find_credential(db, organization_id, business_id, platform)
    if existing:
        logger.info(f"Reusing credential {existing.id} ({existing.status}) for re-authorization")
        return existing
    return create_credential(db, organization_id, business_id, platform)


def list_for_business(db: Session, organization_id: int, business_id: Optional[int] = None) -> List[ChannelCredential]:
    query = db.query(ChannelCredential).filter(ChannelCredential.organization_id == organization_id)
    if business_id is not None:
        query = query.filter(ChannelCredential.business_id == business_id)
    return query.order_by(ChannelCredential.id).all()


def list_due_for_sync(db: Session, now: Optional[datetime] = None) -> List[ChannelCredential]:
    """ACTIVE business credentials whose next scheduled sync has arrived."""
    now = now or datetime.utcnow()
    return (
        db.query(ChannelCredential)
        .filter(
            ChannelCredential.status == CredentialStatus.ACTIVE.value,
            ChannelCredential.business_id.isnot(None),
            ChannelCredential.next_sync_scheduled.isnot(None),
            ChannelCredential.next_sync_scheduled <= now,
        )
        .order_by(ChannelCredential.next_sync_scheduled)
        .all()
    )


def list_reconnect_required(db: Session, organization_id: Optional[int] = None) -> List[ChannelCredential]:
    query = db.query(ChannelCredential).filter(
        ChannelCredential.status == CredentialStatus.EXPIRED.value
    )
    if organization_id is not None:
        query = query.filter(ChannelCredential.organization_id == organization_id)
    return query.order_by(ChannelCredential.id).all()


def delete_credential(db: Session, credential_id: int) -> bool:
    """Delete a credential and its sync history. Returns False if it did not exist."""
    credential = get_credential(db, credential_id)
    if not credential:
        return False

    db.delete(credential)
    db.flush()
    logger.info(f"Deleted {credential.platform_type} credential {credential_id}")
    return True
