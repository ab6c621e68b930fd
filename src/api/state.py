"""
Shared state for the Mycelix Music API.

This module holds the shared instances used across all blueprints. They
are created by ``init_state`` (called from the app factory) so tests can
swap in fresh in-memory backends per test.
"""

import logging

from cache import Cache, create_cache, set_cache
from config import AppConfig
from indexer import PaymentIndexer
from nonce_store import NonceStore
from signature_auth import SignatureVerifier
from storage import CatalogStore, get_storage_backend

logger = logging.getLogger(__name__)

# ============================================================
# Shared State
# ============================================================

config: AppConfig = AppConfig()
store: CatalogStore | None = None
cache: Cache | None = None
nonce_store: NonceStore | None = None
verifier: SignatureVerifier | None = None
indexer: PaymentIndexer | None = None


def init_state(
    app_config: AppConfig,
    catalog: CatalogStore | None = None,
    shared_cache: Cache | None = None,
) -> None:
    """
    Build (or inject) the catalog store and cache, then the verifier and indexer on top.

    Args:
        app_config: Loaded configuration
        catalog: Pre-built store; created from config when omitted
        shared_cache: Pre-built cache; created from config when omitted
    """
    global config, store, cache, nonce_store, verifier, indexer

    config = app_config
    store = catalog or get_storage_backend(app_config.storage_backend, app_config.database_url)
    cache = shared_cache or create_cache(app_config.cache_backend, app_config.redis_url, app_config.cache_fallback)
    set_cache(cache)
    nonce_store = NonceStore.for_cache(cache, ttl_seconds=app_config.nonce_ttl_seconds)
    verifier = SignatureVerifier.from_config(app_config, nonce_store)
    indexer = PaymentIndexer.from_config(app_config, store)

    logger.info(
        "State initialized",
        extra={
            "storage": store.__class__.__name__,
            "cache": cache.__class__.__name__,
            "signature_ttl_ms": app_config.signature_ttl_ms,
        },
    )
