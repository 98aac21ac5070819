"""Shared fixtures for review sync tests."""

import os

# Must be set before database.database creates its engine
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import review_sync.clients as clients_module
import review_sync.config as config_module
import review_sync.services.credential_lock as lock_module
import review_sync.services.lifecycle as lifecycle_module
import review_sync.services.oauth_manager as oauth_module
import review_sync.services.token_cipher as cipher_module
from database import init_db
from database.models import ChannelCredential
from review_sync.config import ReviewSyncSettings
from review_sync.models import CredentialStatus, PlatformType


class FakeRedis:
    """In-memory stand-in for the redis.asyncio calls used by the OAuth manager."""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    async def setex(self, key: str, ttl: int, value: Any) -> None:
        self.store[key] = value
        self.ttls[key] = ttl

    async def get(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def settings() -> ReviewSyncSettings:
    """Settings with a throwaway encryption key, installed as the singleton."""
    return ReviewSyncSettings(
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        google_redirect_uri="https://app.example.com/callback/google",
        facebook_app_id="fb-app-id",
        facebook_app_secret="fb-app-secret",
        facebook_redirect_uri="https://app.example.com/callback/facebook",
        token_encryption_key=Fernet.generate_key().decode(),
        lock_backend="memory",
        lock_blocking_timeout_seconds=0.05,
    )


@pytest.fixture(autouse=True)
def reset_singletons(settings, monkeypatch):
    """Every test gets fresh singletons bound to the test settings."""
    monkeypatch.setattr(config_module, "_settings", settings)
    monkeypatch.setattr(cipher_module, "_token_cipher", None)
    monkeypatch.setattr(clients_module, "_clients", None)
    monkeypatch.setattr(lock_module, "_credential_lock", None)
    monkeypatch.setattr(lifecycle_module, "_lifecycle_manager", None)
    monkeypatch.setattr(oauth_module, "_oauth_manager", None)
    yield


@pytest.fixture
def engine():
    """In-memory SQLite shared across connections."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def make_credential(db) -> Callable[..., ChannelCredential]:
    """Factory for committed credentials with encrypted tokens."""

    def _make(
        platform: PlatformType = PlatformType.GOOGLE,
        organization_id: int = 1,
        business_id: Optional[int] = 10,
        status: CredentialStatus = CredentialStatus.ACTIVE,
        access_token: Optional[str] = "access-token",
        refresh_token: Optional[str] = "refresh-token",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        metadata: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> ChannelCredential:
        credential = ChannelCredential(
            organization_id=organization_id,
            business_id=business_id,
            platform_type=platform.value,
            status=status.value,
            platform_metadata=metadata or {},
            token_expires_at=datetime.utcnow() + expires_in if expires_in is not None else None,
            **fields,
        )
        credential.access_token = access_token
        credential.refresh_token = refresh_token
        db.add(credential)
        db.commit()
        return credential

    return _make
