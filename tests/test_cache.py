"""
Tests for the cache backends.

Redis is exercised through a mocked client; no server is needed.
"""

import os
import sys
import time
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest
import redis

from cache import LocalCache, RedisCache, create_cache, get_cache, set_cache
from nonce_store import NonceStore


class TestLocalCache:
    """Tests for LocalCache."""

    def test_set_and_get(self):
        cache = LocalCache()
        cache.set("a", {"x": 1})
        assert cache.get("a") == {"x": 1}
        assert cache.get("missing", "default") == "default"

    def test_ttl_expiry(self):
        cache = LocalCache()
        cache.set("short", 1, ttl=0.05)
        assert cache.exists("short")
        time.sleep(0.1)
        assert cache.get("short") is None
        assert not cache.exists("short")

    def test_add_is_set_if_absent(self):
        cache = LocalCache()
        assert cache.add("nonce", ttl=10) is True
        assert cache.add("nonce", ttl=10) is False

    def test_add_succeeds_after_expiry(self):
        cache = LocalCache()
        assert cache.add("nonce", ttl=0.05) is True
        time.sleep(0.1)
        assert cache.add("nonce", ttl=0.05) is True

    def test_incr_keeps_original_expiry(self):
        cache = LocalCache()
        assert cache.incr("counter", ttl=0.1) == 1
        assert cache.incr("counter", ttl=60) == 2
        time.sleep(0.15)
        assert cache.incr("counter", ttl=60) == 1

    def test_delete_prefix(self):
        cache = LocalCache()
        cache.set("songs:list:a", 1)
        cache.set("songs:list:b", 2)
        cache.set("songs:detail:x", 3)
        assert cache.delete_prefix("songs:list:") == 2
        assert cache.get("songs:detail:x") == 3

    def test_eviction_at_max_size(self):
        cache = LocalCache(max_size=3)
        for i in range(5):
            cache.set(f"k{i}", i)
        assert cache.get_stats()["size"] <= 3
        assert cache.get("k4") == 4

    def test_uncapped_cache_keeps_live_entries(self):
        cache = LocalCache(max_size=None)
        for i in range(20):
            cache.set(f"k{i}", i, ttl=60)
        assert cache.get_stats()["size"] == 20
        assert cache.get("k0") == 0

    def test_stats_track_hits(self):
        cache = LocalCache()
        cache.set("a", 1)
        cache.get("a")
        cache.get("b")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5


class TestRedisCache:
    """Tests for RedisCache with a mocked client."""

    def _cache(self, fallback=True):
        client = MagicMock()
        return RedisCache("redis://unused", fallback=fallback, client=client), client

    def test_get_deserializes_json(self):
        cache, client = self._cache()
        client.get.return_value = b'{"a": 1}'
        assert cache.get("k") == {"a": 1}
        client.get.assert_called_once_with("mycelix:k")

    def test_set_uses_setex(self):
        cache, client = self._cache()
        assert cache.set("k", [1, 2], ttl=30) is True
        client.setex.assert_called_once_with("mycelix:k", 30, "[1, 2]")

    def test_add_uses_set_nx_px(self):
        cache, client = self._cache()
        client.set.return_value = True
        assert cache.add("nonce:0xabc:1", ttl=600) is True
        client.set.assert_called_once_with("mycelix:nonce:0xabc:1", "1", nx=True, px=600000)

    def test_add_existing_key_returns_false(self):
        cache, client = self._cache()
        client.set.return_value = None
        assert cache.add("nonce:0xabc:1", ttl=600) is False

    def test_incr_creates_counter_with_expiry_in_one_transaction(self):
        cache, client = self._cache()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [True, 1]

        assert cache.incr("ratelimit:ip:1", ttl=60) == 1

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.set.assert_called_once_with("mycelix:ratelimit:ip:1", 0, ex=60, nx=True)
        pipe.incrby.assert_called_once_with("mycelix:ratelimit:ip:1", 1)
        client.expire.assert_not_called()

        pipe.execute.return_value = [None, 2]
        assert cache.incr("ratelimit:ip:1", ttl=60) == 2

    def test_incr_without_ttl(self):
        cache, client = self._cache()
        client.incrby.return_value = 5
        assert cache.incr("counter", amount=5) == 5
        client.pipeline.assert_not_called()

    def test_delete_prefix_scans(self):
        cache, client = self._cache()
        client.scan_iter.return_value = iter([b"mycelix:songs:list:a", b"mycelix:songs:list:b"])
        client.delete.return_value = 1
        assert cache.delete_prefix("songs:list:") == 2
        client.scan_iter.assert_called_once_with(match="mycelix:songs:list:*", count=100)

    def test_falls_back_to_local_on_connection_error(self):
        cache, client = self._cache()
        client.setex.side_effect = redis.ConnectionError("down")
        client.get.side_effect = redis.ConnectionError("down")
        assert cache.set("songs:list:a", [1], ttl=30) is True
        assert cache.get("songs:list:a") == [1]
        assert cache.get_stats()["using_fallback"] is True

    def test_add_never_falls_back(self):
        cache, client = self._cache()
        client.set.side_effect = redis.ConnectionError("down")
        with pytest.raises(redis.ConnectionError):
            cache.add("nonce", ttl=60)

    def test_error_propagates_without_fallback(self):
        cache, client = self._cache(fallback=False)
        client.get.side_effect = redis.ConnectionError("down")
        with pytest.raises(redis.ConnectionError):
            cache.get("k")

    def test_is_available_uses_ping(self):
        cache, client = self._cache()
        client.ping.return_value = True
        assert cache.is_available() is True
        client.ping.side_effect = redis.ConnectionError("down")
        assert cache.is_available() is False

    def test_nonce_store_on_redis(self):
        cache, client = self._cache()
        client.set.side_effect = [True, None]
        store = NonceStore(cache, ttl_seconds=600)
        assert store.consume("0xABC", "n-1") is True
        assert store.consume("0xabc", "n-1") is False
        assert client.set.call_args_list[0].args[0] == "mycelix:nonce:0xabc:n-1"


class TestCacheFactory:
    """Tests for create_cache and the process-wide cache."""

    def test_memory_backend(self):
        assert isinstance(create_cache("memory"), LocalCache)

    def test_redis_backend_requires_url(self):
        with pytest.raises(ValueError):
            create_cache("redis", None)

    def test_redis_backend(self):
        with patch("cache.redis.from_url") as from_url:
            cache = create_cache("redis", "redis://localhost:6379/0")
        assert isinstance(cache, RedisCache)
        from_url.assert_called_once_with("redis://localhost:6379/0")

    def test_set_and_get_global_cache(self):
        local = LocalCache()
        set_cache(local)
        try:
            assert get_cache() is local
        finally:
            set_cache(None)
