"""
Shared cache for the Mycelix Music API.

Backs three concerns with one interface:
- response caching for song listings (short TTL, invalidated on writes)
- one-time nonce consumption for signed writes (atomic ``add``)
- fixed-window rate limit counters (``incr`` with expiry)

Backends:
- LocalCache: In-memory cache for single-instance deployments and tests
- RedisCache: Redis-backed cache shared by every API instance

Usage:
    from cache import get_cache

    cache = get_cache()
    cache.set("songs:list:...", payload, ttl=30)
    if not cache.add("nonce:0xabc:n-1", ttl=600):
        ...  # already consumed
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import redis

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A cache entry with value and expiration."""
    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) > self.expires_at


class Cache(ABC):
    """
    Abstract base class for cache backends.

    Values must be JSON-serializable so that every backend stores the
    same shapes.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Get a value, or ``default`` when the key is missing or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """
        Set a value in the cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time-to-live in seconds (None = no expiration)

        Returns:
            True if successful
        """

    @abstractmethod
    def add(self, key: str, value: Any = 1, ttl: float | None = None) -> bool:
        """
        Set a value only if the key is absent.

        This is a single atomic check-and-set. Exactly one of any number of
        concurrent callers for the same key gets True.

        Returns:
            True if the key was created, False if it already existed
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a key exists in the cache."""

    @abstractmethod
    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        """
        Atomically increment a counter.

        ``ttl`` is applied only when the increment creates the counter, so a
        fixed window starts at its first hit.
        """

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``."""
        return 0

    def is_available(self) -> bool:
        return True

    def clear(self) -> None:
        """Clear all cached values."""

    def get_stats(self) -> dict[str, Any]:
        return {}


class LocalCache(Cache):
    """
    In-memory cache for single-instance deployments.

    Thread-safe with automatic expiration cleanup. With ``max_size=None``
    live entries are never evicted; only expired ones are dropped.
    """

    def __init__(self, max_size: int | None = 10000, cleanup_interval: float = 60.0):
        self._cache: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._max_size = max_size
        self._hits = 0
        self._misses = 0
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = time.time()

    def _maybe_cleanup(self) -> None:
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        expired = [k for k, v in self._cache.items() if v.is_expired(now)]
        for key in expired:
            self._cache.pop(key, None)

    def _evict_if_needed(self) -> None:
        if self._max_size is None:
            self._maybe_cleanup()
            return
        if len(self._cache) < self._max_size:
            return

        self._maybe_cleanup()

        # Still full: drop oldest entries first
        while len(self._cache) >= self._max_size:
            try:
                oldest = next(iter(self._cache))
                del self._cache[oldest]
            except (StopIteration, KeyError):
                break

    def _live_entry(self, key: str) -> CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._maybe_cleanup()
            entry = self._live_entry(key)
            if entry is None:
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        with self._lock:
            self._evict_if_needed()
            expires_at = time.time() + ttl if ttl is not None else None
            self._cache[key] = CacheEntry(value=value, expires_at=expires_at)
            return True

    def add(self, key: str, value: Any = 1, ttl: float | None = None) -> bool:
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            return self.set(key, value, ttl)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key) is not None

    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                expires_at = time.time() + ttl if ttl is not None else None
                current = 0
            else:
                expires_at = entry.expires_at
                current = int(entry.value)

            new_value = current + amount
            self._cache[key] = CacheEntry(value=new_value, expires_at=expires_at)
            return new_value

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._cache if k.startswith(prefix)]
            for key in keys:
                del self._cache[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "type": "LocalCache",
                "size": len(self._cache),
                "max_size": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
            }


class RedisCache(Cache):
    """
    Distributed cache using Redis.

    When ``fallback`` is enabled, connection failures are logged and the
    operation is served from a process-local LocalCache instead, so a Redis
    outage degrades to single-instance behaviour rather than failing
    requests. ``add`` is the exception: a set-if-absent recorded only in
    this process would not be seen by other instances, so its errors
    always propagate.
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "mycelix:",
        default_ttl: float = 3600.0,
        fallback: bool = True,
        client: Any = None,
    ):
        self._redis = client if client is not None else redis.from_url(redis_url)
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl
        self._fallback = LocalCache() if fallback else None
        self._using_fallback = False

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value)

    def _deserialize(self, data: bytes | str | None) -> Any:
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)

    def _on_redis_error(self, op: str, error: Exception) -> LocalCache:
        if self._fallback is None:
            raise error
        if not self._using_fallback:
            logger.warning("Redis %s failed, using local fallback cache: %s", op, error)
            self._using_fallback = True
        return self._fallback

    def _mark_healthy(self) -> None:
        if self._using_fallback:
            logger.info("Redis connection restored")
            self._using_fallback = False

    def get(self, key: str, default: Any = None) -> Any:
        try:
            data = self._redis.get(self._key(key))
        except redis.RedisError as e:
            return self._on_redis_error("get", e).get(key, default)
        self._mark_healthy()
        if data is None:
            return default
        try:
            return self._deserialize(data)
        except (json.JSONDecodeError, TypeError):
            return default

    def set(self, key: str, value: Any, ttl: float | None = None) -> bool:
        try:
            data = self._serialize(value)
        except TypeError:
            return False

        if ttl is None:
            ttl = self._default_ttl
        try:
            if ttl:
                self._redis.setex(self._key(key), max(1, int(ttl)), data)
            else:
                self._redis.set(self._key(key), data)
        except redis.RedisError as e:
            return self._on_redis_error("set", e).set(key, value, ttl)
        self._mark_healthy()
        return True

    def add(self, key: str, value: Any = 1, ttl: float | None = None) -> bool:
        # SET key value NX PX ttl: one round trip, atomic on the server
        px = max(1, int(ttl * 1000)) if ttl else None
        created = self._redis.set(self._key(key), self._serialize(value), nx=True, px=px)
        self._mark_healthy()
        return bool(created)

    def delete(self, key: str) -> bool:
        try:
            deleted = self._redis.delete(self._key(key))
        except redis.RedisError as e:
            return self._on_redis_error("delete", e).delete(key)
        return deleted > 0

    def exists(self, key: str) -> bool:
        try:
            found = self._redis.exists(self._key(key))
        except redis.RedisError as e:
            return self._on_redis_error("exists", e).exists(key)
        return found > 0

    def incr(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        redis_key = self._key(key)
        try:
            if ttl:
                # MULTI: create the counter with its expiry, then increment
                pipe = self._redis.pipeline(transaction=True)
                pipe.set(redis_key, 0, ex=max(1, int(ttl)), nx=True)
                pipe.incrby(redis_key, amount)
                _, value = pipe.execute()
            else:
                value = self._redis.incrby(redis_key, amount)
        except redis.RedisError as e:
            return self._on_redis_error("incr", e).incr(key, amount, ttl)
        return int(value)

    def delete_prefix(self, prefix: str) -> int:
        pattern = f"{self._key(prefix)}*"
        deleted = 0
        try:
            for redis_key in self._redis.scan_iter(match=pattern, count=100):
                deleted += self._redis.delete(redis_key)
        except redis.RedisError as e:
            return self._on_redis_error("delete_prefix", e).delete_prefix(prefix)
        if self._fallback is not None:
            self._fallback.delete_prefix(prefix)
        return deleted

    def is_available(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False

    def clear(self) -> None:
        self.delete_prefix("")

    def get_stats(self) -> dict[str, Any]:
        return {
            "type": "RedisCache",
            "connected": self.is_available(),
            "using_fallback": self._using_fallback,
        }

    def close(self):
        self._redis.close()


def create_cache(backend: str = "memory", redis_url: str | None = None, fallback: bool = True) -> Cache:
    """Build a cache for the configured backend name."""
    if backend == "redis":
        if not redis_url:
            raise ValueError("REDIS_URL is required for the redis cache backend")
        return RedisCache(redis_url, fallback=fallback)
    return LocalCache()


_cache: Cache | None = None
_cache_lock = threading.Lock()


def get_cache() -> Cache:
    """Get the process-wide cache, creating it from the environment on first use."""
    global _cache
    if _cache is None:
        with _cache_lock:
            if _cache is None:
                from config import AppConfig

                config = AppConfig.from_env(dotenv=False)
                _cache = create_cache(config.cache_backend, config.redis_url, config.cache_fallback)
    return _cache


def set_cache(cache: Cache | None) -> None:
    """Replace the process-wide cache (used by the app factory and tests)."""
    global _cache
    with _cache_lock:
        _cache = cache
