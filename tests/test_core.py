"""
Core Component Tests

Simple tests for the supporting components:
- API key cipher and key store
- TTL cache
- Rate limiter
- Model configuration service caching
- Progress broadcaster
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from concierge_rag.core.cache import TTLCache
from concierge_rag.core.errors import ApiKeyNotConfiguredError
from concierge_rag.core.rate_limiter import InMemoryRateLimiter, RateLimit
from concierge_rag.db.model_configs import (
    EmbeddingConfig,
    GenerationConfig,
    ModelConfigService,
)
from concierge_rag.ingestion.notifications import ProgressBroadcaster, ProgressEvent
from concierge_rag.keys.store import (
    ApiKeyStore,
    KeyDecryptionError,
    decrypt_api_key,
    encrypt_api_key,
)

SECRET = "unit-test-encryption-secret"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class MockRow:
    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            setattr(self, k, v)


def session_returning(value):
    """AsyncSession mock whose execute() result yields `value`."""
    session = AsyncMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    session.execute.return_value = result
    return session


# ---------------------------------------------------------------------
# Key store
# ---------------------------------------------------------------------

class TestApiKeyCipher:
    def test_round_trip(self):
        key = "sk-proj-0123456789abcdefghijklmnop"
        encrypted = encrypt_api_key(key, SECRET)

        assert encrypted != key
        assert decrypt_api_key(encrypted, SECRET) == key

    def test_known_ciphertext(self):
        # XOR of "ab" with secret "\x01" is "`c", base64 "YGM="
        assert encrypt_api_key("ab", "\x01") == "YGM="
        assert decrypt_api_key("YGM=", "\x01") == "ab"

    def test_wrong_secret_does_not_reveal_key(self):
        encrypted = encrypt_api_key("sk-proj-0123456789abcdefghij", SECRET)
        try:
            assert decrypt_api_key(encrypted, "another-secret") != "sk-proj-0123456789abcdefghij"
        except KeyDecryptionError:
            pass

    def test_invalid_base64(self):
        with pytest.raises(KeyDecryptionError):
            decrypt_api_key("not base64!!", SECRET)


class TestApiKeyStore:
    @pytest.mark.asyncio
    async def test_get_key_decrypts(self):
        key = "sk-proj-0123456789abcdefghij"
        store = ApiKeyStore(session_returning(encrypt_api_key(key, SECRET)), secret=SECRET)

        assert await store.get_key("openai") == key

    @pytest.mark.asyncio
    async def test_missing_key(self):
        store = ApiKeyStore(session_returning(None), secret=SECRET)

        with pytest.raises(ApiKeyNotConfiguredError):
            await store.get_key("openai")

    @pytest.mark.asyncio
    async def test_short_key_is_invalid_format(self):
        store = ApiKeyStore(session_returning(encrypt_api_key("sk-short", SECRET)), secret=SECRET)

        with pytest.raises(ApiKeyNotConfiguredError, match="Invalid API key format"):
            await store.get_key("openai")


# ---------------------------------------------------------------------
# TTL cache
# ---------------------------------------------------------------------

class TestTTLCache:
    def test_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("k", "v")

        clock.now += 9.9
        assert cache.get("k") == "v"

        clock.now += 0.1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_invalidate_and_clear(self):
        cache = TTLCache(ttl=10)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.get("b") == 2

        cache.clear()
        assert len(cache) == 0

    def test_cleanup_drops_only_expired(self):
        clock = FakeClock()
        cache = TTLCache(ttl=10, clock=clock)
        cache.set("short", 1, ttl=1)
        cache.set("long", 2)

        clock.now += 5
        assert cache.cleanup() == 1
        assert cache.get("long") == 2


# ---------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------

class TestInMemoryRateLimiter:
    def test_limits_per_subject_and_operation(self):
        limiter = InMemoryRateLimiter({"chat": RateLimit(2, 60)}, clock=FakeClock())

        assert limiter.hit("1.1.1.1", "chat")
        assert limiter.hit("1.1.1.1", "chat")
        assert not limiter.hit("1.1.1.1", "chat")

        # Other subjects are counted separately
        assert limiter.hit("2.2.2.2", "chat")

    def test_window_reset(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter({"ingest": RateLimit(1, 60)}, clock=clock)

        assert limiter.hit("a", "ingest")
        assert not limiter.hit("a", "ingest")

        clock.now += 60
        assert limiter.hit("a", "ingest")

    def test_unconfigured_operation_is_unlimited(self):
        limiter = InMemoryRateLimiter({})
        assert all(limiter.hit("a", "search") for _ in range(100))

    def test_expired_counters_are_evicted(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter({"chat": RateLimit(10, 60)}, clock=clock)

        for n in range(10_000):
            limiter.hit(f"10.0.{n // 256}.{n % 256}", "chat")
        assert len(limiter) == 10_000

        clock.now += 3600
        assert limiter.hit("rotated-address", "chat")
        assert len(limiter) == 1

    def test_sweep_keeps_active_windows(self):
        clock = FakeClock()
        limiter = InMemoryRateLimiter({"chat": RateLimit(1, 60)}, clock=clock)

        limiter.hit("old", "chat")
        clock.now += 30
        limiter.hit("recent", "chat")
        clock.now += 40
        limiter.hit("new", "chat")

        assert len(limiter) == 2
        # "recent" is still inside its window
        assert not limiter.hit("recent", "chat")

    def test_reset(self):
        limiter = InMemoryRateLimiter({"chat": RateLimit(1, 60)})
        limiter.hit("a", "chat")
        limiter.reset()
        assert limiter.hit("a", "chat")


# ---------------------------------------------------------------------
# Model configuration
# ---------------------------------------------------------------------

class TestModelConfigService:
    @pytest.mark.asyncio
    async def test_defaults_when_no_row(self):
        service = ModelConfigService(session_returning(None), TTLCache(ttl=60))

        config = await service.get_embedding_config()

        assert config == EmbeddingConfig(
            provider="openai",
            model="text-embedding-3-large",
            dimensions=3072,
        )

    @pytest.mark.asyncio
    async def test_row_is_cached(self):
        row = MockRow(provider="xai", model="grok-2", temperature=0.2, max_tokens=512, dimensions=None)
        session = session_returning(row)
        service = ModelConfigService(session, TTLCache(ttl=60))

        first = await service.get_generation_config()
        second = await service.get_generation_config()

        assert first == second == GenerationConfig(
            provider="xai", model="grok-2", temperature=0.2, max_tokens=512
        )
        assert session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_save_invalidates_cache(self):
        cache = TTLCache(ttl=60)
        session = session_returning(None)
        service = ModelConfigService(session, cache)
        await service.get_embedding_config()
        assert cache.get("embedding") is not None

        await service.save(
            EmbeddingConfig(provider="cohere", model="embed-english-v3.0", dimensions=1024)
        )

        assert cache.get("embedding") is None
        session.commit.assert_awaited_once()


# ---------------------------------------------------------------------
# Progress broadcaster
# ---------------------------------------------------------------------

class TestProgressBroadcaster:
    def _event(self, progress=10):
        return ProgressEvent(source_id="s1", status="processing", progress=progress)

    @pytest.mark.asyncio
    async def test_fan_out(self):
        broadcaster = ProgressBroadcaster()

        async with broadcaster.subscribe() as first, broadcaster.subscribe() as second:
            assert broadcaster.publish(self._event()) == 2
            assert (await first.get()).progress == 10
            assert (await second.get()).progress == 10

        assert broadcaster.subscriber_count == 0

    def test_publish_without_subscribers(self):
        assert ProgressBroadcaster().publish(self._event()) == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_events(self):
        broadcaster = ProgressBroadcaster(max_queue_size=1)

        async with broadcaster.subscribe() as queue:
            assert broadcaster.publish(self._event(10)) == 1
            assert broadcaster.publish(self._event(20)) == 0
            assert queue.qsize() == 1
            assert (await asyncio.wait_for(queue.get(), 1)).progress == 10
