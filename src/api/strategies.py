"""
Mycelix Music - Strategy API Blueprint

Economic strategy endpoints:
- Strategy configs: save, list, fetch, publish (hash-checked, optionally
  admin-signed)
- Payout previews for a stored config
- Module lift simulation over recent plays
- The built-in strategy catalog and basis-point split previews
"""

import logging
from typing import Any

from flask import Blueprint, jsonify, request

from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from revenue_split import (
    PRESET_STRATEGIES,
    STRATEGY_CATALOG,
    StrategyConfig,
    clamp_preview_days,
    compute_config_hash,
    payout_breakdown,
    preview_splits,
    simulate_preview,
)
from signature_auth import verify_admin_signature

from . import state
from .utils import get_json_body, is_admin_request, require_admin_key, require_schema

logger = logging.getLogger(__name__)

strategies_bp = Blueprint("strategies", __name__)

MAX_CONFIG_NAME_LENGTH = 200


def _with_signature_status(record: dict[str, Any]) -> dict[str, Any]:
    """Add ``signature_valid``: the stored admin signature checks out against the configured signer."""
    return {
        **record,
        "signature_valid": verify_admin_signature(
            record.get("hash"), record.get("admin_signature"), state.config.admin_signer_address
        ),
    }


def _include_unpublished() -> bool:
    """``?admin=true`` widens a lookup to unpublished configs, for admins only."""
    if str(request.args.get("admin", "false")).lower() != "true":
        return False
    if not is_admin_request():
        raise ForbiddenError("Admin key required to view unpublished configs")
    return True


def _load_config(config_id: int, published_only: bool = True) -> dict[str, Any]:
    record = state.store.get_strategy_config(config_id, published_only=published_only)
    if record is None:
        raise NotFoundError(f"Strategy config not found: {config_id}")
    return record


# =============================================================================
# Strategy Configs
# =============================================================================


@strategies_bp.route("/api/strategy-configs", methods=["POST"])
@require_admin_key
def create_strategy_config():
    """
    Save a strategy config.

    Request body:
        {
            "name": "loyalty-v2",
            "payload": {"splits": [...], "pricing": {...}, "offers": [...], "modules": [...]},
            "hash": "<sha256 hex of the canonical payload>",
            "published": false,                 // optional
            "adminSignature": "0x..."           // optional
        }

    The payload is fully validated and its hash recomputed; a config whose
    hash does not match is refused with 409.
    """
    data = require_schema(
        get_json_body(),
        {"name": str, "payload": dict, "hash": str},
        {"published": bool, "adminSignature": str, "admin_signature": str},
        {"name": MAX_CONFIG_NAME_LENGTH},
    )
    payload = data["payload"]
    StrategyConfig.from_payload(payload, name=data["name"])

    computed = compute_config_hash(payload)
    if data["hash"].lower() != computed:
        raise ConflictError(
            "Config hash does not match payload",
            details={"expected": computed},
            error_code="hash_mismatch",
        )

    record = state.store.save_strategy_config(
        data["name"],
        payload,
        computed,
        admin_signature=data.get("adminSignature") or data.get("admin_signature"),
        published=bool(data.get("published")),
    )
    logger.info(
        "Strategy config saved",
        extra={"config_id": record["id"], "config_hash": computed, "published": record["published"]},
    )
    return jsonify(_with_signature_status(record)), 201


@strategies_bp.route("/api/strategy-configs", methods=["GET"])
@require_admin_key
def list_strategy_configs():
    configs = [_with_signature_status(c) for c in state.store.list_strategy_configs()]
    return jsonify({"configs": configs, "count": len(configs)})


@strategies_bp.route("/api/strategy-configs/latest", methods=["GET"])
def latest_strategy_config():
    """Newest published config (``?admin=true`` includes unpublished)."""
    include_unpublished = _include_unpublished()
    record = state.store.latest_strategy_config(published_only=not include_unpublished)
    if record is None:
        raise NotFoundError("No strategy configs", error_code="no_configs")
    return jsonify(_with_signature_status(record))


@strategies_bp.route("/api/strategy-configs/<int:config_id>", methods=["GET"])
def get_strategy_config(config_id):
    record = _load_config(config_id, published_only=not _include_unpublished())
    return jsonify(_with_signature_status(record))


@strategies_bp.route("/api/strategy-configs/<int:config_id>/publish", methods=["POST"])
@require_admin_key
def publish_strategy_config(config_id):
    """
    Publish a stored config.

    Request body:
        {
            "expectedHash": "<hash the admin reviewed>",
            "adminSignature": "0x..."   // required when ADMIN_SIGNER_ADDRESS is set
        }
    """
    data = get_json_body()
    record = _load_config(config_id, published_only=False)

    expected_hash = data.get("expectedHash")
    if not expected_hash or expected_hash != record["hash"]:
        raise ConflictError("expectedHash does not match the stored config", error_code="hash_mismatch")

    signature = data.get("adminSignature") or data.get("admin_signature")
    signer_address = state.config.admin_signer_address
    if signer_address:
        if not signature:
            raise ValidationError("adminSignature is required", error_code="admin_signature_required")
        if not verify_admin_signature(expected_hash, signature, signer_address):
            raise ForbiddenError("adminSignature was not made by the admin signer", error_code="invalid_signature")

    published = state.store.publish_strategy_config(config_id, admin_signature=signature)
    if published is None:
        raise NotFoundError(f"Strategy config not found: {config_id}")

    logger.info("Strategy config published", extra={"config_id": config_id, "config_hash": record["hash"]})
    return jsonify({"ok": True, "id": config_id, "config": _with_signature_status(published)})


@strategies_bp.route("/api/strategy-configs/<int:config_id>/payouts", methods=["POST"])
def strategy_payouts(config_id):
    """
    Payout breakdown for one payment under a stored config.

    Request body:
        {
            "amount": "10.01",          // optional, defaults to the offer price
            "context": {"plays": 12}    // optional listener context for offers
        }

    Unpublished configs are only visible to admins.
    """
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    context = data.get("context") or {}
    if not isinstance(context, dict):
        raise ValidationError("context must be an object")

    record = _load_config(config_id, published_only=not is_admin_request())
    config = StrategyConfig.from_payload(record["payload"], name=record["name"])
    result = payout_breakdown(config, data.get("amount"), context)
    return jsonify({"config_id": config_id, "hash": record["hash"], **result.to_dict()})


@strategies_bp.route("/api/strategy-configs/<int:config_id>/preview", methods=["POST"])
def strategy_preview(config_id):
    """
    Simulate pricing modules over recent plays.

    Request body:
        {"days": 30, "modules": ["dynamic", "loyalty"]}

    Admin only unless ENABLE_PREVIEW_PUBLIC is set; the config must be
    published.
    """
    if not is_admin_request() and not state.config.preview_public:
        raise ForbiddenError("Preview is restricted to admins")

    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    modules = data.get("modules")
    modules = [str(m) for m in modules] if isinstance(modules, list) else []

    record = _load_config(config_id, published_only=True)
    days = clamp_preview_days(data.get("days", 30))
    per_type = state.store.play_totals_by_type(days)
    preview = simulate_preview(record["payload"], per_type, days, modules)
    return jsonify({"preview": preview, "config": record["payload"]})


# =============================================================================
# Strategy Catalog
# =============================================================================


@strategies_bp.route("/api/strategies", methods=["GET"])
def list_strategies():
    return jsonify(
        {
            "strategies": [info.to_dict() for info in STRATEGY_CATALOG.values()],
            "presets": PRESET_STRATEGIES,
        }
    )


@strategies_bp.route("/api/strategies/<strategy_id>/preview-splits", methods=["POST"])
def strategy_preview_splits(strategy_id):
    """
    Preview a basis-point split for a catalog strategy.

    Request body:
        {
            "amount": "1.0",                                  // or integer wei
            "splits": [{"role": "artist", "basis_points": 9000}, ...],
            "preset": "independentArtist"                     // instead of splits
        }
    """
    data = get_json_body()
    if data.get("amount") in (None, ""):
        raise ValidationError("Missing required field: amount")

    splits = data.get("splits")
    if splits is None and data.get("preset"):
        preset = PRESET_STRATEGIES.get(data["preset"])
        if preset is None:
            raise NotFoundError(f"Unknown preset: {data['preset']}")
        splits = preset["splits"]

    return jsonify(preview_splits(strategy_id, data["amount"], splits))
