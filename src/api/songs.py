"""
Mycelix Music - Songs API Blueprint

Catalog endpoints:
- List and search songs (cached)
- Register a song (admin key or artist signature)
- Record a play (admin key or listener signature)
- List a song's plays
- Create a claim for an uploaded song
"""

import logging
import uuid

from flask import Blueprint, jsonify, request

from errors import ConflictError, NotFoundError, ValidationError
from revenue_split import PaymentModel, PaymentType, to_decimal
from storage.base import SONG_SORT_FIELDS, DuplicateRecordError

from . import state
from .utils import (
    SONG_DETAIL_TTL,
    SONG_LIST_TTL,
    authorize_write,
    get_json_body,
    invalidate_song_cache,
    require_eth_address,
    require_schema,
    song_detail_cache_key,
    song_list_cache_key,
    validate_pagination_params,
)

logger = logging.getLogger(__name__)

songs_bp = Blueprint("songs", __name__)

MAX_TEXT_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 5000
MAX_PLAYS_LIMIT = 500

SONG_REQUIRED = {
    "id": str,
    "title": str,
    "artist": str,
    "artistAddress": str,
    "ipfsHash": str,
    "paymentModel": str,
}
SONG_OPTIONAL = {"genre": str, "description": str, "strategyId": str}
SONG_MAX_LENGTHS = {
    "id": 200,
    "title": MAX_TEXT_LENGTH,
    "artist": MAX_TEXT_LENGTH,
    "ipfsHash": 200,
    "genre": 100,
    "description": MAX_DESCRIPTION_LENGTH,
    "strategyId": 100,
}


# =============================================================================
# Song Catalog
# =============================================================================


@songs_bp.route("/api/songs", methods=["GET"])
def list_songs():
    """
    List songs.

    Query params:
        q: Case-insensitive match on title or artist
        genre: Exact genre filter
        model: Payment model filter
        sort: created_at | plays | earnings | title (default created_at)
        order: asc | desc (default desc)
        limit, offset: Pagination

    Returns:
        {"songs": [...], "total": n, "limit": l, "offset": o}
    """
    limit, offset = validate_pagination_params(request.args.get("limit"), request.args.get("offset"))
    sort = request.args.get("sort") or "created_at"
    order = (request.args.get("order") or "desc").lower()
    if sort not in SONG_SORT_FIELDS:
        raise ValidationError(f"sort must be one of: {', '.join(SONG_SORT_FIELDS)}")
    if order not in ("asc", "desc"):
        raise ValidationError("order must be 'asc' or 'desc'")

    params = {
        "q": (request.args.get("q") or "").strip() or None,
        "genre": request.args.get("genre") or None,
        "model": request.args.get("model") or None,
        "sort": sort,
        "order": order,
        "limit": limit,
        "offset": offset,
    }
    cache_key = song_list_cache_key(params)
    cached = state.cache.get(cache_key)
    if cached is not None:
        return jsonify(cached)

    songs, total = state.store.list_songs(**params)
    body = {"songs": songs, "total": total, "limit": limit, "offset": offset}
    state.cache.set(cache_key, body, ttl=SONG_LIST_TTL)
    return jsonify(body)


@songs_bp.route("/api/songs/<song_id>", methods=["GET"])
def get_song(song_id):
    cache_key = song_detail_cache_key(song_id)
    cached = state.cache.get(cache_key)
    if cached is not None:
        return jsonify(cached)

    song = state.store.get_song(song_id)
    if song is None:
        raise NotFoundError(f"Song not found: {song_id}")
    state.cache.set(cache_key, song, ttl=SONG_DETAIL_TTL)
    return jsonify(song)


@songs_bp.route("/api/songs", methods=["POST"])
def register_song():
    """
    Register a song.

    Request body:
        {
            "id": "artist-song-1",
            "title": "...",
            "artist": "...",
            "artistAddress": "0x...",
            "ipfsHash": "Qm...",
            "paymentModel": "pay_per_stream",
            "genre": "...",                 // optional
            "description": "...",           // optional
            "strategyId": "...",            // optional
            "signer": "0x...",              // signature auth, unless x-api-key
            "signature": "0x...",
            "timestamp": 1700000000000,
            "nonce": "...",                 // optional
            "method": "eip712"              // optional, default personal_sign
        }
    """
    data = require_schema(get_json_body(), SONG_REQUIRED, SONG_OPTIONAL, SONG_MAX_LENGTHS)
    require_eth_address(data["artistAddress"], "artistAddress")
    if data["paymentModel"] not in PaymentModel.values():
        raise ValidationError(
            f"paymentModel must be one of: {', '.join(PaymentModel.values())}"
        )

    fields = {k: data[k] for k in ("id", "artistAddress", "ipfsHash", "paymentModel")}
    auth = authorize_write("song", fields, data)

    try:
        song = state.store.create_song(
            {
                "id": data["id"],
                "title": data["title"],
                "artist": data["artist"],
                "artist_address": data["artistAddress"],
                "genre": data.get("genre"),
                "description": data.get("description"),
                "ipfs_hash": data["ipfsHash"],
                "payment_model": data["paymentModel"],
                "strategy_id": data.get("strategyId"),
            }
        )
    except DuplicateRecordError:
        raise ConflictError(f"Song already exists: {data['id']}", error_code="duplicate_song")

    invalidate_song_cache(song["id"])
    logger.info("Song registered", extra={"song_id": song["id"], "auth_method": auth.method.value})
    return jsonify(song), 201


# =============================================================================
# Plays
# =============================================================================


@songs_bp.route("/api/songs/<song_id>/play", methods=["POST"])
def record_play(song_id):
    """
    Record a play (manual payment event, no transaction hash).

    Request body:
        {
            "listenerAddress": "0x...",
            "amount": "0.01",
            "paymentType": "stream",        // label or 0-4
            ...signature fields as for song registration
        }
    """
    data = require_schema(
        get_json_body(),
        {"listenerAddress": str, "amount": (str, int, float), "paymentType": (str, int)},
    )
    require_eth_address(data["listenerAddress"], "listenerAddress")
    amount = to_decimal(data["amount"])
    if amount < 0:
        raise ValidationError("amount must not be negative")
    payment_type = PaymentType.parse(data["paymentType"])

    fields = {
        "songId": song_id,
        "listener": data["listenerAddress"],
        "amount": data["amount"],
        "paymentType": data["paymentType"],
    }
    authorize_write("play", fields, data)

    if state.store.get_song(song_id) is None:
        raise NotFoundError(f"Song not found: {song_id}")

    state.store.record_payment(
        {
            "song_id": song_id,
            "listener_address": data["listenerAddress"],
            "amount": amount,
            "payment_type": payment_type.label,
        }
    )
    invalidate_song_cache(song_id)
    return jsonify({"success": True, "song_id": song_id, "payment_type": payment_type.label}), 201


@songs_bp.route("/api/songs/<song_id>/plays", methods=["GET"])
def list_plays(song_id):
    limit, _ = validate_pagination_params(request.args.get("limit"), max_limit=MAX_PLAYS_LIMIT, default_limit=100)
    if state.store.get_song(song_id) is None:
        raise NotFoundError(f"Song not found: {song_id}")
    plays = state.store.list_plays(song_id, limit=limit)
    return jsonify({"song_id": song_id, "plays": plays, "count": len(plays)})


# =============================================================================
# Claims
# =============================================================================


@songs_bp.route("/api/claims", methods=["POST"])
def create_claim():
    """
    Create a claim for an uploaded song.

    Request body:
        {
            "songId": "...",
            "artistAddress": "0x...",
            "ipfsHash": "Qm...",
            "title": "...",
            "artist": "...",                // optional
            "tiers": {"epistemic": ..., "network": ..., "memory": ...},   // optional
            ...signature fields
        }

    Returns:
        The claim with its generated stream_id
    """
    data = require_schema(
        get_json_body(),
        {"songId": str, "artistAddress": str, "ipfsHash": str, "title": str},
        {"artist": str, "tiers": dict},
        {"songId": 200, "ipfsHash": 200, "title": MAX_TEXT_LENGTH, "artist": MAX_TEXT_LENGTH},
    )
    require_eth_address(data["artistAddress"], "artistAddress")

    fields = {k: data[k] for k in ("songId", "artistAddress", "ipfsHash", "title")}
    authorize_write("claim", fields, data)

    claim = state.store.create_claim(
        {
            "song_id": data["songId"],
            "artist_address": data["artistAddress"],
            "ipfs_hash": data["ipfsHash"],
            "title": data["title"],
            "artist": data.get("artist"),
            "tiers": data.get("tiers") or {},
            "stream_id": f"stream-{uuid.uuid4().hex[:16]}",
        }
    )
    logger.info("Claim created", extra={"song_id": claim["song_id"], "stream_id": claim["stream_id"]})
    return jsonify(claim), 201
