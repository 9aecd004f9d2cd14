"""Tests for the response cache."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from relay.app.core.store import SharedStore
from relay.app.services.response_cache import (
    ResponseCache,
    generate_fingerprint,
    has_attachments,
    is_cacheable,
)


async def _aiter(items):
    for item in items:
        yield item


@pytest.fixture
def cache(clock):
    return ResponseCache(enabled=True, default_ttl=3600, clock=clock)


class TestFingerprint:

    def test_deterministic(self):
        a = generate_fingerprint("hello", "qwen/qwen-3-4b:free", 0.7, "be brief")
        b = generate_fingerprint("hello", "qwen/qwen-3-4b:free", 0.7, "be brief")
        assert a == b
        assert a.startswith("cache:llm:")
        assert len(a) == len("cache:llm:") + 16

    @pytest.mark.parametrize(
        "changed",
        [
            ("hello!", "m", 0.7, "s"),
            ("hello", "other-model", 0.7, "s"),
            ("hello", "m", 0.2, "s"),
            ("hello", "m", 0.7, "other system"),
            ("hello", "m", 0.7, None),
        ],
    )
    def test_any_field_changes_fingerprint(self, changed):
        base = generate_fingerprint("hello", "m", 0.7, "s")
        assert generate_fingerprint(*changed) != base

    def test_message_list_key_order_is_irrelevant(self):
        a = generate_fingerprint([{"role": "user", "content": "hi"}], "m")
        b = generate_fingerprint([{"content": "hi", "role": "user"}], "m")
        assert a == b


class TestCacheability:

    def test_plain_request_is_cacheable(self):
        assert is_cacheable(False, [{"role": "user", "content": "hi"}]) is True

    def test_stream_is_not_cacheable(self):
        assert is_cacheable(True, [{"role": "user", "content": "hi"}]) is False

    def test_image_is_not_cacheable(self):
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "what is this"},
                    {"type": "image_url", "image_url": {"url": "https://x/y.png"}},
                ],
            }
        ]
        assert has_attachments(messages) is True
        assert is_cacheable(False, messages) is False
        assert is_cacheable(False, [], image="data:image/png;base64,AA") is False


class TestLocalCache:

    @pytest.mark.asyncio
    async def test_store_then_lookup(self, cache):
        fp = cache.fingerprint("hello", "m", 0.7, None)
        await cache.store(fp, "world")

        hit = await cache.lookup(fp)

        assert hit is not None
        assert hit.payload == "world"
        assert hit.cached is True
        assert hit.expires_at - hit.created_at == 3600 * 1000

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache, clock):
        await cache.store("cache:llm:a", "payload", ttl=10)

        clock.advance(9)
        assert await cache.lookup("cache:llm:a") is not None

        clock.advance(1)
        assert await cache.lookup("cache:llm:a") is None
        assert cache.stats().size == 0

    @pytest.mark.asyncio
    async def test_disabled_cache(self, clock):
        cache = ResponseCache(enabled=False, clock=clock)
        assert await cache.store("cache:llm:a", "x") is False
        assert await cache.lookup("cache:llm:a") is None

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.store("cache:llm:a", "x")
        await cache.lookup("cache:llm:a")
        await cache.lookup("cache:llm:a")
        await cache.lookup("cache:llm:b")

        stats = cache.stats()

        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(0.6667, abs=1e-4)
        assert stats.size == 1
        assert stats.backend == "memory"
        assert stats.enabled is True

    @pytest.mark.asyncio
    async def test_get_or_set(self, cache):
        producer = AsyncMock(return_value="fresh")

        first = await cache.get_or_set("cache:llm:a", producer)
        second = await cache.get_or_set("cache:llm:a", producer)

        assert first == ("fresh", False)
        assert second == ("fresh", True)
        producer.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalidate(self, cache):
        await cache.store("cache:llm:a", "x")
        await cache.store("cache:llm:b", "y")

        await cache.invalidate("cache:llm:a")
        assert await cache.lookup("cache:llm:a") is None
        assert await cache.lookup("cache:llm:b") is not None

        assert await cache.invalidate_all() == 1
        assert await cache.lookup("cache:llm:b") is None

    @pytest.mark.asyncio
    async def test_oversized_payload_not_stored(self, clock):
        cache = ResponseCache(enabled=True, max_payload_bytes=100, clock=clock)
        assert await cache.store("cache:llm:a", "x" * 200) is False
        assert await cache.lookup("cache:llm:a") is None

    @pytest.mark.asyncio
    async def test_unserializable_payload_not_stored(self, cache):
        assert await cache.store("cache:llm:a", object()) is False

    @pytest.mark.asyncio
    async def test_max_entries_evicts_oldest(self, clock):
        cache = ResponseCache(enabled=True, max_entries=2, clock=clock)
        await cache.store("cache:llm:a", "1")
        await cache.store("cache:llm:b", "2")
        await cache.store("cache:llm:c", "3")

        assert await cache.lookup("cache:llm:a") is None
        assert await cache.lookup("cache:llm:c") is not None
        assert cache.stats().size == 2

    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self, cache, clock):
        await cache.store("cache:llm:a", "1", ttl=5)
        await cache.store("cache:llm:b", "2", ttl=50)

        clock.advance(10)

        assert cache.sweep() == 1
        assert cache.stats().size == 1

    @pytest.mark.asyncio
    async def test_warm_skips_existing(self, cache):
        await cache.store("cache:llm:a", "original")

        written = await cache.warm([("cache:llm:a", "new"), ("cache:llm:b", "b")])

        assert written == 1
        assert (await cache.lookup("cache:llm:a")).payload == "original"
        assert (await cache.lookup("cache:llm:b")).payload == "b"

    @pytest.mark.asyncio
    async def test_background_sweeper(self, clock):
        cache = ResponseCache(enabled=True, sweep_interval=0.01, clock=clock)
        await cache.store("cache:llm:a", "1", ttl=1)
        clock.advance(5)

        await cache.start()
        await asyncio.sleep(0.05)
        await cache.stop()

        assert cache.stats().size == 0


class TestRedisCache:

    @pytest.fixture
    def redis_client(self):
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        client.setex = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        return client

    @pytest.fixture
    def cache(self, redis_client, clock):
        store = SharedStore(redis_client=redis_client, clock=clock)
        return ResponseCache(store, enabled=True, default_ttl=3600, clock=clock)

    @pytest.mark.asyncio
    async def test_store_uses_setex(self, cache, redis_client, clock):
        await cache.store("cache:llm:a", "payload")

        key, ttl, raw = redis_client.setex.call_args.args
        assert key == "cache:llm:a"
        assert ttl == 3600
        document = json.loads(raw)
        assert document["response"] == "payload"
        assert document["expires"] == int(clock() * 1000) + 3600 * 1000

    @pytest.mark.asyncio
    async def test_lookup_hit(self, cache, redis_client, clock):
        now_ms = int(clock() * 1000)
        redis_client.get.return_value = json.dumps(
            {"response": "cached", "created": now_ms, "expires": now_ms + 1000}
        ).encode()

        hit = await cache.lookup("cache:llm:a")

        assert hit.payload == "cached"
        assert hit.cached is True

    @pytest.mark.asyncio
    async def test_expiry_rechecked_on_read(self, cache, redis_client, clock):
        now_ms = int(clock() * 1000)
        redis_client.get.return_value = json.dumps(
            {"response": "stale", "created": now_ms - 5000, "expires": now_ms - 1}
        )
        assert await cache.lookup("cache:llm:a") is None

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, cache, redis_client):
        redis_client.get.return_value = b"not json"
        assert await cache.lookup("cache:llm:a") is None

    @pytest.mark.asyncio
    async def test_store_error_is_a_miss(self, cache, redis_client):
        redis_client.get.side_effect = redis.ConnectionError("down")

        assert await cache.lookup("cache:llm:a") is None
        assert cache.stats().backend == "memory"

    @pytest.mark.asyncio
    async def test_write_error_falls_back_to_local(self, cache, redis_client):
        redis_client.setex.side_effect = redis.ConnectionError("down")

        assert await cache.store("cache:llm:a", "x") is True
        assert (await cache.lookup("cache:llm:a")).payload == "x"

    @pytest.mark.asyncio
    async def test_invalidate_all_scans_prefix(self, cache, redis_client):
        redis_client.scan_iter = MagicMock(
            return_value=_aiter([b"cache:llm:a", b"cache:llm:b"])
        )
        redis_client.delete.return_value = 2

        removed = await cache.invalidate_all()

        assert removed == 2
        assert redis_client.scan_iter.call_args.kwargs["match"] == "cache:llm:*"
        redis_client.delete.assert_awaited_once_with(b"cache:llm:a", b"cache:llm:b")

    @pytest.mark.asyncio
    async def test_stats_size_counts_local_entries_only(self, cache):
        await cache.store("cache:llm:a", "payload")

        stats = cache.stats()

        assert stats.backend == "redis"
        assert stats.size == 0
