"""
Mycelix Music - Indexer API Blueprint

Admin endpoints around payment event ingestion:
- Push decoded events (idempotent on tx hash and log index)
- Replay a block range from the chain
- Inspect the poison list and retry queue
"""

import logging

from flask import Blueprint, jsonify, request

from errors import ValidationError
from indexer import PaymentEvent

from . import state
from .utils import get_json_body, require_admin_key, validate_pagination_params

logger = logging.getLogger(__name__)

indexer_bp = Blueprint("indexer", __name__)

MAX_EVENTS_PER_REQUEST = 1000
MAX_REPLAY_RANGE = 100000


@indexer_bp.route("/api/indexer/events", methods=["POST"])
@require_admin_key
def ingest_events():
    """
    Ingest decoded payment events.

    Request body:
        {
            "events": [
                {
                    "tx_hash": "0x...",
                    "log_index": 0,
                    "block_number": 123,
                    "song_hash": "0x<keccak256 of the song id>",
                    "listener_address": "0x...",
                    "amount_wei": "10000000000000000",
                    "protocol_fee_wei": "100000000000000",      // optional
                    "net_amount_wei": "9900000000000000",       // optional
                    "payment_type": 0                           // 0-4 or label
                }
            ]
        }

    The whole batch is validated before anything is written.

    Returns:
        {"inserted": n, "duplicates": n, "failed": n, "failures": [...], "total": n}
    """
    data = get_json_body()
    raw_events = data.get("events")
    if not isinstance(raw_events, list) or not raw_events:
        raise ValidationError("events must be a non-empty list")
    if len(raw_events) > MAX_EVENTS_PER_REQUEST:
        raise ValidationError(f"At most {MAX_EVENTS_PER_REQUEST} events per request")

    events = []
    for i, raw in enumerate(raw_events):
        try:
            events.append(PaymentEvent.from_dict(raw))
        except ValidationError as e:
            raise ValidationError(f"event {i}: {e.message}")

    result = state.indexer.ingest(events)
    logger.info(
        "Payment events ingested",
        extra={"inserted": result.inserted, "duplicates": result.duplicates, "failed": result.failed},
    )
    return jsonify(result.to_dict())


@indexer_bp.route("/api/indexer/replay", methods=["POST"])
@require_admin_key
def replay_blocks():
    """
    Re-read a block range from the router and ingest it.

    Request body:
        {"fromBlock": 100, "toBlock": 200}
    """
    data = get_json_body()
    from_block, to_block = data.get("fromBlock"), data.get("toBlock")
    if (
        not isinstance(from_block, int)
        or not isinstance(to_block, int)
        or isinstance(from_block, bool)
        or isinstance(to_block, bool)
        or from_block < 0
        or from_block > to_block
    ):
        raise ValidationError("fromBlock and toBlock must be integers with fromBlock <= toBlock",
                              error_code="invalid_block_range")
    if to_block - from_block > MAX_REPLAY_RANGE:
        raise ValidationError(f"Block range exceeds {MAX_REPLAY_RANGE} blocks", error_code="invalid_block_range")

    return jsonify({"ok": True, **state.indexer.replay(from_block, to_block)})


@indexer_bp.route("/api/indexer/poison", methods=["GET"])
@require_admin_key
def list_poison():
    limit, _ = validate_pagination_params(request.args.get("limit"), default_limit=100)
    return jsonify(
        {
            "poison": state.store.list_poison(limit=limit),
            "retry_queue": len(state.indexer.retry_queue),
        }
    )


@indexer_bp.route("/api/indexer/retries", methods=["POST"])
@require_admin_key
def process_retries():
    """Run one pass over the retry queue."""
    return jsonify(state.indexer.process_retries())
