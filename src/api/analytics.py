"""
Mycelix Music - Analytics API Blueprint

Read-only aggregates over the catalog:
- Per-artist totals
- Top songs by plays
- Play and revenue totals per payment type
"""

from flask import Blueprint, jsonify, request

from revenue_split import clamp_preview_days

from . import state
from .utils import require_eth_address, validate_pagination_params

analytics_bp = Blueprint("analytics", __name__)

DEFAULT_TOP_SONGS = 10


@analytics_bp.route("/api/artists/<address>/stats", methods=["GET"])
def artist_stats(address):
    """Song count, total plays and total earnings for an artist wallet."""
    require_eth_address(address, "address")
    return jsonify(state.store.artist_stats(address))


@analytics_bp.route("/api/analytics/top-songs", methods=["GET"])
def top_songs():
    limit, _ = validate_pagination_params(request.args.get("limit"), default_limit=DEFAULT_TOP_SONGS)
    songs = state.store.top_songs(limit=limit)
    return jsonify({"songs": songs, "count": len(songs)})


@analytics_bp.route("/api/analytics/summary", methods=["GET"])
def summary():
    """
    Play and net revenue totals per payment type.

    Query params:
        days: Window size, clamped to 1-90 (default 30)
    """
    days = clamp_preview_days(request.args.get("days"))
    per_type = state.store.play_totals_by_type(days)
    return jsonify(
        {
            "days": days,
            "perType": per_type,
            "totalPlays": sum(row["plays"] for row in per_type),
            "totalNet": sum(row["net"] for row in per_type),
        }
    )
