"""
Per-credential exclusive lock.

Only one sync may refresh or use a credential's token at a time. The
in-memory backend covers single-process deployments; the Redis backend
covers multiple workers.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from ..config import get_review_sync_settings, ReviewSyncSettings
from ..exceptions import CredentialLockError

logger = logging.getLogger(__name__)


class InProcessCredentialLock:
    """Keyed asyncio locks, one per credential id."""

    def __init__(self, blocking_timeout: float = 5.0):
        self.blocking_timeout = blocking_timeout
        self._locks: Dict[int, asyncio.Lock] = {}
        # Holders plus waiters per credential; the lock is dropped at zero
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, credential_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(credential_id, asyncio.Lock())
        self._users[credential_id] = self._users.get(credential_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.blocking_timeout)
            except asyncio.TimeoutError:
                raise CredentialLockError(f"Credential {credential_id} is already being synced")

            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[credential_id] -= 1
            if self._users[credential_id] == 0:
                del self._users[credential_id]
                del self._locks[credential_id]


class RedisCredentialLock:
    """Distributed lock on `review_sync:lock:{credential_id}`."""

    def __init__(
        self,
        redis_url: str,
        timeout: int = 300,
        blocking_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self._redis = client

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    @asynccontextmanager
    async def hold(self, credential_id: int) -> AsyncIterator[None]:
        r = await self.get_redis()
        lock = r.lock(
            f"review_sync:lock:{credential_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise CredentialLockError(f"Could not lock credential {credential_id}: {e}") from e
        if not acquired:
            raise CredentialLockError(f"Credential {credential_id} is already being synced")

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Expired under us; the holder that took over owns it now
                logger.warning(f"Lock for credential {credential_id} expired before release")


# Singleton instance
_credential_lock = None


def get_credential_lock(settings: Optional[ReviewSyncSettings] = None):
    """Get the configured credential lock backend."""
    global _credential_lock
    if _credential_lock is None:
        settings = settings or get_review_sync_settings()
        if settings.lock_backend == "redis":
            _credential_lock = RedisCredentialLock(
                settings.redis_url,
                timeout=settings.lock_timeout_seconds,
                blocking_timeout=settings.lock_blocking_timeout_seconds,
            )
        else:
            _credential_lock = InProcessCredentialLock(
                blocking_timeout=settings.lock_blocking_timeout_seconds
            )
    return _credential_lock
