"""
Mycelix Music API - Backend for the Mycelix music-streaming platform

A REST API over a catalog of songs whose payments are split on-chain
according to programmable economic strategies.

Core Components:
    - revenue_split: Strategy configs, split validation and payout computation
    - signature_auth: Wallet signature verification for write requests
    - nonce_store: Replay protection for signed writes
    - indexer: Idempotent ingestion of on-chain payment events

Infrastructure:
    - storage: Pluggable catalog backends (Memory, PostgreSQL)
    - cache: Local and Redis caches (response cache, nonces, rate limits)
    - monitoring: Structured logging and request middleware

Usage:
    from revenue_split import StrategyConfig, compute_payouts

    config = StrategyConfig.from_payload({
        "splits": [{"role": "artist", "pct": 70}, {"role": "platform", "pct": 30}],
    })
    compute_payouts(config, "10.01")   # {"artist": Decimal("7.01"), "platform": Decimal("3.00")}
"""

__version__ = "0.3.0"
