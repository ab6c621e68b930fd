"""
One-time nonce tracking for signed write requests.

A nonce is scoped to the signer that used it and is remembered for a
bounded TTL, long enough to outlive every timestamp the verifier would
still accept. Consumption is a single atomic set-if-absent on the shared
cache (``SET NX PX`` on Redis, a locked dict insert locally), so two
concurrent requests carrying the same nonce can never both succeed.

Nonces never live in a size-capped cache: evicting a consumed nonce
before its TTL would let the same signed request through again. When the
shared store cannot be reached, consumption fails closed.
"""

import logging

import redis

from cache import Cache, LocalCache, RedisCache
from errors import MycelixError

logger = logging.getLogger(__name__)

NONCE_KEY_PREFIX = "nonce:"
MAX_NONCE_LENGTH = 128


class NonceStoreUnavailableError(MycelixError):
    """Raised when a nonce cannot be recorded in the shared store."""

    status_code = 503
    error_code = "nonce_store_unavailable"


class NonceStore:
    """Tracks consumed nonces per signer."""

    def __init__(self, cache: Cache | None = None, ttl_seconds: float = 600.0):
        self._cache = cache if cache is not None else LocalCache(max_size=None)
        self.ttl_seconds = ttl_seconds

    @classmethod
    def for_cache(cls, shared: Cache, ttl_seconds: float = 600.0) -> "NonceStore":
        """
        Build a store alongside the response cache.

        Redis is shared by every instance and is used directly. A local
        response cache is size-capped, so nonces get their own uncapped one.
        """
        if isinstance(shared, RedisCache):
            return cls(shared, ttl_seconds)
        return cls(LocalCache(max_size=None), ttl_seconds)

    @staticmethod
    def key(signer: str, nonce: str) -> str:
        return f"{NONCE_KEY_PREFIX}{signer.lower()}:{nonce}"

    def consume(self, signer: str, nonce: str) -> bool:
        """
        Mark ``nonce`` as used by ``signer``.

        Returns:
            True on first use, False if the nonce was already consumed
            within its TTL

        Raises:
            NonceStoreUnavailableError: If the shared store failed
        """
        try:
            fresh = self._cache.add(self.key(signer, nonce), 1, ttl=self.ttl_seconds)
        except redis.RedisError as e:
            logger.error("Nonce store unavailable: %s", e)
            raise NonceStoreUnavailableError("Nonce store unavailable, retry later") from e
        if not fresh:
            logger.warning("Nonce replay rejected for %s", signer)
        return fresh

    def is_consumed(self, signer: str, nonce: str) -> bool:
        return self._cache.exists(self.key(signer, nonce))
