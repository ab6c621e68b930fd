"""
Core service blueprint.

Liveness and diagnostics:
- /health: cheap liveness probe
- /health/details: backend availability, missing configuration and
  optional client clock skew
"""

import time
from datetime import UTC, datetime

from flask import Blueprint, jsonify, request

from config import API_VERSION

from . import state

# Create the blueprint
core_bp = Blueprint("core", __name__)


@core_bp.route("/health", methods=["GET"])
def health_check():
    """Liveness probe."""
    return jsonify(
        {
            "status": "healthy",
            "service": "mycelix-music-api",
            "version": API_VERSION,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )


@core_bp.route("/health/details", methods=["GET"])
def health_details():
    """
    Detailed health report.

    Query params:
        client_ts: Client clock in milliseconds; the response reports the
            skew against the server clock so signers can detect drift
            before their signatures go stale.
    """
    storage_ok = state.store.is_available()
    cache_ok = state.cache.is_available()
    missing = state.config.missing_critical()

    now_ms = int(time.time() * 1000)
    report = {
        "status": "healthy" if storage_ok and not missing else "degraded",
        "storage": {
            "backend": state.store.__class__.__name__,
            "available": storage_ok,
        },
        "cache": {**state.cache.get_stats(), "available": cache_ok},
        "config": {
            "missing": missing,
            "admin_key_configured": bool(state.config.admin_key),
            "eip712_configured": bool(state.config.eip712_verifier),
            "admin_signer_configured": bool(state.config.admin_signer_address),
            "signature_ttl_ms": state.config.signature_ttl_ms,
        },
        "server_time_ms": now_ms,
    }

    client_ts = request.args.get("client_ts", type=int)
    if client_ts is not None:
        skew = now_ms - client_ts
        report["clock"] = {
            "client_ts": client_ts,
            "skew_ms": skew,
            "within_ttl": abs(skew) <= state.config.signature_ttl_ms,
        }

    return jsonify(report), 200 if report["status"] == "healthy" else 503
