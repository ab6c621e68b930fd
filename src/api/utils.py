"""
Shared utilities for the Mycelix Music API.

This module contains common validation helpers, the write-authorization
entry point, admin-key decorators, rate limiting and response caching
used across all API blueprints.
"""

import ipaddress
import logging
import re
import time
from functools import wraps
from typing import Any

from flask import g, request

from errors import ValidationError
from monitoring.logging import set_request_context
from signature_auth import (
    AuthConfigurationError,
    AuthResult,
    Credentials,
    InvalidAdminKeyError,
    MissingCredentialsError,
)

from . import state

logger = logging.getLogger(__name__)

# Bounded parameters
MAX_RESULTS = 100
MAX_OFFSET = 100000  # Maximum offset to prevent memory exhaustion
DEFAULT_PAGE_LIMIT = 20

ETH_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

SONG_LIST_TTL = 30
SONG_DETAIL_TTL = 60
SONG_CACHE_PREFIX = "songs:"


# ============================================================
# Validation Utilities
# ============================================================

def validate_pagination_params(
    limit: Any,
    offset: Any = 0,
    max_limit: int = MAX_RESULTS,
    max_offset: int = MAX_OFFSET,
    default_limit: int = DEFAULT_PAGE_LIMIT,
) -> tuple:
    """
    Validate and bound pagination parameters.

    Args:
        limit: Requested limit
        offset: Requested offset
        max_limit: Maximum allowed limit
        max_offset: Maximum allowed offset
        default_limit: Limit used when none is given

    Returns:
        Tuple of (bounded_limit, bounded_offset)

    Raises:
        ValidationError: If either value is not an integer
    """
    try:
        limit = int(limit) if limit not in (None, "") else default_limit
        offset = int(offset) if offset not in (None, "") else 0
    except (TypeError, ValueError):
        raise ValidationError("limit and offset must be integers")

    bounded_limit = max(1, min(limit, max_limit))
    bounded_offset = max(0, min(offset, max_offset))
    return bounded_limit, bounded_offset


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple],
    optional_fields: dict[str, type | tuple] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        value = data.get(field_name)
        if value is None or value == "":
            return False, f"Missing required field: {field_name}"
        if isinstance(value, bool) and expected_type is not bool:
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"
        if not isinstance(value, expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not isinstance(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def _type_name(expected: type | tuple) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def require_schema(data: Any, required_fields, optional_fields=None, max_lengths=None) -> dict[str, Any]:
    """validate_json_schema that raises ValidationError instead of returning a tuple."""
    is_valid, error = validate_json_schema(data, required_fields, optional_fields, max_lengths)
    if not is_valid:
        raise ValidationError(error)
    return data


def get_json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def is_eth_address(value: Any) -> bool:
    return isinstance(value, str) and bool(ETH_ADDRESS_RE.match(value))


def require_eth_address(value: Any, field_name: str) -> str:
    if not is_eth_address(value):
        raise ValidationError(f"Field '{field_name}' must be a 0x-prefixed 20-byte hex address")
    return value


# ============================================================
# IP and Rate Limiting Utilities
# ============================================================

def is_valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str.strip())
        return True
    except (ValueError, AttributeError):
        return False


def get_client_ip() -> str:
    """
    Get client IP address, considering proxies.

    Only trusts X-Forwarded-For when the request comes from a proxy listed
    in MYCELIX_TRUSTED_PROXIES, and then uses the rightmost untrusted IP.
    """
    remote_addr = request.remote_addr or "unknown"
    trusted = state.config.trusted_proxies

    if trusted and remote_addr in trusted:
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            parts = [p.strip() for p in xff.split(",")]

            for ip in reversed(parts):
                if ip and is_valid_ip(ip) and ip not in trusted:
                    return ip

            # All hops are trusted proxies: use the leftmost
            for ip in parts:
                if ip and is_valid_ip(ip):
                    return ip

    return remote_addr


def check_rate_limit() -> dict[str, Any] | None:
    """
    Check if client has exceeded the fixed-window rate limit.

    Counters live in the shared cache so every API instance enforces the
    same window.

    Returns:
        None if within limit, error dict if exceeded
    """
    window = max(1, state.config.rate_limit_window)
    now = time.time()
    window_index = int(now // window)
    key = f"ratelimit:{get_client_ip()}:{window_index}"

    count = state.cache.incr(key, 1, ttl=window)
    if count > state.config.rate_limit_requests:
        return {
            "error": "rate_limited",
            "message": "Rate limit exceeded",
            "retry_after": max(1, int((window_index + 1) * window - now)),
        }
    return None


# ============================================================
# Authentication
# ============================================================

def is_admin_request() -> bool:
    return state.verifier.is_admin_key(request.headers.get("x-api-key"))


def require_admin_key(f):
    """Decorator restricting an endpoint to holders of the admin key."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not state.config.admin_key:
            raise AuthConfigurationError("Admin key is not configured", reason="admin_key_not_configured")

        provided_key = request.headers.get("x-api-key")
        if not provided_key:
            raise MissingCredentialsError("x-api-key header required")
        if not state.verifier.is_admin_key(provided_key):
            raise InvalidAdminKeyError("x-api-key does not match")

        return f(*args, **kwargs)
    return decorated_function


def authorize_write(kind: str, fields: dict[str, Any], body: dict[str, Any]) -> AuthResult:
    """
    Authorize a signed write (song, play or claim).

    The admin key header wins outright; otherwise the signature fields in
    ``body`` are verified against the canonical message for ``kind``.
    """
    result = state.verifier.authorize(
        kind,
        fields,
        Credentials.from_body(body),
        api_key=request.headers.get("x-api-key"),
    )
    g.auth = result
    set_request_context(auth_method=result.method.value, signer=result.signer)
    return result


# ============================================================
# Response Caching
# ============================================================

def song_list_cache_key(params: dict[str, Any]) -> str:
    parts = [f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, "")]
    return f"{SONG_CACHE_PREFIX}list:{'&'.join(parts)}"


def song_detail_cache_key(song_id: str) -> str:
    return f"{SONG_CACHE_PREFIX}detail:{song_id}"


def invalidate_song_cache(song_id: str | None = None) -> None:
    """Drop cached song listings (and one song's detail) after a write."""
    state.cache.delete_prefix(f"{SONG_CACHE_PREFIX}list:")
    if song_id:
        state.cache.delete(song_detail_cache_key(song_id))
