"""Tests for the per-credential lock backends."""

from typing import List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from review_sync.exceptions import CredentialLockError
from review_sync.models import SyncJobStatus
from review_sync.services.credential_lock import (
    get_credential_lock,
    InProcessCredentialLock,
    RedisCredentialLock,
)
from review_sync.services.sync_runner import SyncJobRunner

from tests.fakes import FakePlatformClient, make_payload


class FakeRedisLock:
    """Stand-in for a redis.asyncio Lock with scripted outcomes."""

    def __init__(
        self,
        acquired: bool = True,
        acquire_error: Optional[Exception] = None,
        release_error: Optional[Exception] = None,
    ):
        self.acquired = acquired
        self.acquire_error = acquire_error
        self.release_error = release_error
        self.released = False

    async def acquire(self) -> bool:
        if self.acquire_error:
            raise self.acquire_error
        return self.acquired

    async def release(self) -> None:
        self.released = True
        if self.release_error:
            raise self.release_error


class FakeLockingRedis:
    """Records lock() calls and hands back one scripted lock."""

    def __init__(self, lock: FakeRedisLock):
        self._lock = lock
        self.lock_calls: List[dict] = []

    def lock(self, name: str, timeout=None, blocking_timeout=None) -> FakeRedisLock:
        self.lock_calls.append({"name": name, "timeout": timeout, "blocking_timeout": blocking_timeout})
        return self._lock


def redis_lock_for(settings, fake_lock: FakeRedisLock) -> RedisCredentialLock:
    return RedisCredentialLock(settings.redis_url, timeout=60, client=FakeLockingRedis(fake_lock))


class TestRedisCredentialLock:
    """Distributed backend against a scripted client."""

    @pytest.mark.asyncio
    async def test_held_elsewhere_raises_lock_error(self, settings):
        lock = redis_lock_for(settings, FakeRedisLock(acquired=False))

        with pytest.raises(CredentialLockError, match="already being synced"):
            async with lock.hold(7):
                pass

    @pytest.mark.asyncio
    async def test_redis_failure_raises_lock_error(self, settings):
        lock = redis_lock_for(settings, FakeRedisLock(acquire_error=RedisConnectionError("refused")))

        with pytest.raises(CredentialLockError, match="Could not lock"):
            async with lock.hold(7):
                pass

    @pytest.mark.asyncio
    async def test_acquires_named_key_and_releases(self, settings):
        fake_lock = FakeRedisLock()
        lock = redis_lock_for(settings, fake_lock)

        async with lock.hold(7):
            assert fake_lock.released is False

        assert fake_lock.released is True
        assert lock._redis.lock_calls == [
            {"name": "review_sync:lock:7", "timeout": 60, "blocking_timeout": lock.blocking_timeout}
        ]

    @pytest.mark.asyncio
    async def test_expired_lock_on_release_is_tolerated(self, settings):
        fake_lock = FakeRedisLock(release_error=LockError("not owned"))
        lock = redis_lock_for(settings, fake_lock)
        ran = []

        async with lock.hold(7):
            ran.append(True)

        assert ran == [True]
        assert fake_lock.released is True

    @pytest.mark.asyncio
    async def test_runner_closes_job_failed_when_lock_held_elsewhere(self, db, settings, make_credential):
        client = FakePlatformClient(reviews=[make_payload("r1")])
        credential = make_credential()
        runner = SyncJobRunner(
            settings,
            clients={client.platform_type: client},
            lock=redis_lock_for(settings, FakeRedisLock(acquired=False)),
        )

        job = await runner.run(db, credential.id)

        assert job.status == SyncJobStatus.FAILED.value
        assert job.completed_at is not None
        assert job.retry_count == 0
        assert client.fetch_calls == []


class TestInProcessCredentialLock:
    """Single-process backend."""

    @pytest.mark.asyncio
    async def test_second_holder_times_out(self):
        lock = InProcessCredentialLock(blocking_timeout=0.01)

        async with lock.hold(3):
            with pytest.raises(CredentialLockError):
                async with lock.hold(3):
                    pass

    @pytest.mark.asyncio
    async def test_entries_dropped_after_release(self):
        lock = InProcessCredentialLock(blocking_timeout=0.01)

        async with lock.hold(3):
            assert 3 in lock._locks

        assert lock._locks == {}
        assert lock._users == {}

    @pytest.mark.asyncio
    async def test_entries_dropped_after_timed_out_contender(self):
        lock = InProcessCredentialLock(blocking_timeout=0.01)

        async with lock.hold(3):
            with pytest.raises(CredentialLockError):
                async with lock.hold(3):
                    pass
            assert lock._users == {3: 1}

        assert lock._locks == {}
        assert lock._users == {}

    @pytest.mark.asyncio
    async def test_distinct_credentials_do_not_contend(self):
        lock = InProcessCredentialLock(blocking_timeout=0.01)

        async with lock.hold(3):
            async with lock.hold(4):
                assert set(lock._locks) == {3, 4}

        assert lock._locks == {}


class TestBackendSelection:
    """Settings pick the backend."""

    def test_redis_backend_selected_from_settings(self, settings):
        lock = get_credential_lock(settings.model_copy(update={"lock_backend": "redis"}))

        assert isinstance(lock, RedisCredentialLock)
        assert lock.timeout == settings.lock_timeout_seconds

    def test_memory_backend_is_default_for_tests(self, settings):
        assert isinstance(get_credential_lock(settings), InProcessCredentialLock)
