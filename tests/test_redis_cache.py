"""Tests for the revoked-session denylist and its Redis wrappers."""

import pytest

from tutorgate.config import Settings, reset_settings_cache
from tutorgate.service.auth import AuthService
from tutorgate.service.errors import RevokedError
from tutorgate.service.runtime import Runtime
from tutorgate.storage.memory import MemoryStore
from tutorgate.storage.redis_cache import RedisCache, SyncRedisCache


class FakeRedis:
    """Dict-backed stand-in for the handful of redis commands we use."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    def ping(self):
        self._check()
        return True

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.ttls[key] = ex

    def exists(self, key):
        self._check()
        return int(key in self.data)

    def close(self):
        pass


class AsyncFakeRedis(FakeRedis):
    async def ping(self):
        return FakeRedis.ping(self)

    async def set(self, key, value, ex=None):
        return FakeRedis.set(self, key, value, ex=ex)

    async def exists(self, key):
        return FakeRedis.exists(self, key)


def _sync_cache():
    cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://fake"
    cache.client = FakeRedis()
    return cache


def _async_cache():
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://fake"
    cache.client = AsyncFakeRedis()
    return cache


class TestCacheWrappers:
    async def test_sync_cache_marks_with_ttl(self):
        cache = _sync_cache()
        await cache.mark_session_revoked("s1", 900)

        assert await cache.is_session_revoked("s1") is True
        assert await cache.is_session_revoked("s2") is False
        assert cache.client.ttls["auth:session:revoked:s1"] == 900

    async def test_async_cache_round_trip(self):
        cache = _async_cache()
        await cache.mark_session_revoked("s1", 60)
        assert await cache.is_session_revoked("s1") is True
        assert await cache.ping() is True

    async def test_zero_ttl_is_not_written(self):
        cache = _sync_cache()
        await cache.mark_session_revoked("s1", 0)
        assert cache.client.data == {}


@pytest.fixture
def strict_settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        strict_session_revocation=True,
    )


class TestStrictRevocationWithCache:
    async def test_logout_writes_denylist(self, tmp_path, strict_settings):
        store = MemoryStore(fs_root=str(tmp_path))
        cache = _sync_cache()
        service = AuthService(store, cache, strict_settings)
        user = store.create_user("r@x.com")
        service.credentials.set_password(user.id, "Good@123")
        _, session, tokens = await service.login("r@x.com", "Good@123")

        await service.logout(tokens.refresh_token)

        key = f"auth:session:revoked:{session.id}"
        assert cache.client.ttls[key] == strict_settings.access_token_ttl_minutes * 60
        with pytest.raises(RevokedError):
            await service.authenticate(f"Bearer {tokens.access_token}")

    async def test_cache_outage_fails_open(self, tmp_path, strict_settings):
        store = MemoryStore(fs_root=str(tmp_path))
        cache = _sync_cache()
        service = AuthService(store, cache, strict_settings)
        user = store.create_user("r@x.com")
        service.credentials.set_password(user.id, "Good@123")
        _, _, tokens = await service.login("r@x.com", "Good@123")

        cache.client.fail = True
        ctx = await service.authenticate(f"Bearer {tokens.access_token}")
        assert ctx.user_id == user.id

    async def test_write_failure_falls_back_to_process_denylist(self, tmp_path, strict_settings):
        store = MemoryStore(fs_root=str(tmp_path))
        cache = _sync_cache()
        service = AuthService(store, cache, strict_settings)
        user = store.create_user("r@x.com")
        service.credentials.set_password(user.id, "Good@123")
        _, _, tokens = await service.login("r@x.com", "Good@123")

        cache.client.fail = True
        await service.logout(tokens.refresh_token)
        with pytest.raises(RevokedError):
            await service.authenticate(f"Bearer {tokens.access_token}")


class TestRuntimeRedisPolicy:
    def test_strict_mode_requires_redis_outside_tests(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("STRICT_SESSION_REVOCATION", "true")
        monkeypatch.setenv("REDIS_URL", "")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        reset_settings_cache()

        with pytest.raises(RuntimeError):
            Runtime()

    def test_dev_fallback_allows_missing_redis(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("STRICT_SESSION_REVOCATION", "true")
        monkeypatch.setenv("REDIS_URL", "")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        reset_settings_cache()

        runtime = Runtime()
        assert runtime.cache is None
        assert runtime.auth.settings.strict_session_revocation is True
