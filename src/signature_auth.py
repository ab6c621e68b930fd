"""
Mycelix Music - Signature Authentication

Write endpoints (song registration, play recording, claim creation) accept
one of two independent credentials:

1. ADMIN_KEY: the ``x-api-key`` header equals the configured admin secret
2. A wallet signature over a canonical description of the write:
   - PERSONAL_SIGN: EIP-191 personal message over a pipe-delimited string
   - TYPED_DATA: EIP-712 structured data (request sends ``method: "eip712"``)

Canonical messages (the nonce slot is always present, empty when unused):

    mycelix-song|<id>|<artistAddress>|<ipfsHash>|<paymentModel>|<nonce>|<timestamp>
    mycelix-play|<songId>|<listener>|<amount>|<paymentType>|<nonce>|<timestamp>
    mycelix-claim|<songId>|<artistAddress>|<ipfsHash>|<title>|<nonce>|<timestamp>

Verification order for signatures:
    recompute message -> recover signer -> compare with declared signer and
    payload subject -> timestamp freshness -> nonce consumption

Every failure raises an AuthorizationError subclass carrying a ``reason``
so callers can tell a bad signature from a stale timestamp from a replay.
"""

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from eth_account import Account
from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from web3 import Web3

from errors import MycelixError
from nonce_store import MAX_NONCE_LENGTH, NonceStore

logger = logging.getLogger(__name__)

EIP712_DOMAIN_NAME = "MycelixMusic"
EIP712_DOMAIN_VERSION = "1"


# =============================================================================
# Errors
# =============================================================================


class AuthorizationError(MycelixError):
    """Base class for write-authorization failures."""

    status_code = 401
    error_code = "auth_failed"
    reason = "unauthorized"

    def __init__(self, message: str, reason: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        if reason:
            self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "reason": self.reason, "message": self.message, **self.details}


class MissingCredentialsError(AuthorizationError):
    reason = "missing_credentials"


class InvalidAdminKeyError(AuthorizationError):
    reason = "invalid_admin_key"


class InvalidSignatureError(AuthorizationError):
    reason = "invalid_signature"


class StaleTimestampError(AuthorizationError):
    reason = "expired"


class NonceReplayError(AuthorizationError):
    status_code = 409
    reason = "nonce_replay"


class AuthConfigurationError(AuthorizationError):
    """The server cannot verify this kind of credential."""

    status_code = 503
    reason = "typed_data_unconfigured"


# =============================================================================
# Types
# =============================================================================


class AuthMethod(Enum):
    """How a write request was authorized."""

    ADMIN_KEY = "admin_key"
    PERSONAL_SIGN = "personal_sign"
    TYPED_DATA = "eip712"


@dataclass(frozen=True)
class MessageSchema:
    """Field layout for one kind of signed write."""

    prefix: str
    primary_type: str
    fields: tuple[str, ...]
    subject: str  # field holding the address that must sign

    def typed_fields(self) -> list[dict[str, str]]:
        types = [
            {"name": name, "type": "address" if name == self.subject else "string"}
            for name in self.fields
        ]
        types.append({"name": "nonce", "type": "string"})
        types.append({"name": "timestamp", "type": "uint256"})
        return types


SCHEMAS: dict[str, MessageSchema] = {
    "song": MessageSchema(
        "mycelix-song", "Song", ("id", "artistAddress", "ipfsHash", "paymentModel"), "artistAddress"
    ),
    "play": MessageSchema(
        "mycelix-play", "Play", ("songId", "listener", "amount", "paymentType"), "listener"
    ),
    "claim": MessageSchema(
        "mycelix-claim", "Claim", ("songId", "artistAddress", "ipfsHash", "title"), "artistAddress"
    ),
}


@dataclass
class Credentials:
    """Signature credentials extracted from a request."""

    signer: str | None = None
    signature: str | None = None
    timestamp: Any = None
    nonce: str | None = None
    method: str | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "Credentials":
        nonce = body.get("nonce")
        return cls(
            signer=body.get("signer"),
            signature=body.get("signature"),
            timestamp=body.get("timestamp"),
            nonce=str(nonce) if nonce not in (None, "") else None,
            method=body.get("method"),
        )

    @property
    def present(self) -> bool:
        return bool(self.signer or self.signature)

    @property
    def auth_method(self) -> AuthMethod:
        if str(self.method or "").lower() == AuthMethod.TYPED_DATA.value:
            return AuthMethod.TYPED_DATA
        return AuthMethod.PERSONAL_SIGN


@dataclass
class AuthResult:
    """Outcome of a successful authorization."""

    method: AuthMethod
    signer: str | None = None
    nonce: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method.value, "signer": self.signer}


# =============================================================================
# Canonical payloads
# =============================================================================


def js_string(value: Any) -> str:
    """
    Render a field the way a JavaScript client stringifies it.

    Integral floats lose their fractional part (``1.0`` -> ``"1"``) and
    missing values become the empty string.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral_value() else format(value, "f")
    return str(value)


def parse_timestamp(value: Any) -> int:
    """Millisecond timestamp from an int or numeric string."""
    if value is None or value == "" or isinstance(value, bool):
        raise MissingCredentialsError("timestamp is required", reason="missing_timestamp")
    try:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError
            return int(value)
        return int(str(value).strip())
    except ValueError:
        raise InvalidSignatureError("timestamp must be an integer in milliseconds")


def _schema(kind: str) -> MessageSchema:
    try:
        return SCHEMAS[kind]
    except KeyError:
        raise ValueError(f"Unknown signed message kind: {kind}")


def canonical_message(kind: str, fields: dict[str, Any], timestamp: int, nonce: str | None = None) -> str:
    """Build the pipe-delimited string a wallet signs for ``kind``."""
    schema = _schema(kind)
    parts = [schema.prefix]
    parts.extend(js_string(fields.get(name)) for name in schema.fields)
    parts.append(nonce or "")
    parts.append(str(timestamp))
    return "|".join(parts)


def build_domain(chain_id: int, verifying_contract: str) -> dict[str, Any]:
    return {
        "name": EIP712_DOMAIN_NAME,
        "version": EIP712_DOMAIN_VERSION,
        "chainId": int(chain_id),
        "verifyingContract": verifying_contract,
    }


def build_typed_payload(kind: str, fields: dict[str, Any], timestamp: int, nonce: str | None = None) -> tuple[dict, dict]:
    """Return ``(types, value)`` for the EIP-712 struct of ``kind``."""
    schema = _schema(kind)
    value = {name: js_string(fields.get(name)) for name in schema.fields}
    value["nonce"] = nonce or ""
    value["timestamp"] = int(timestamp)
    return {schema.primary_type: schema.typed_fields()}, value


def encode_typed(
    kind: str,
    fields: dict[str, Any],
    timestamp: int,
    nonce: str | None,
    chain_id: int,
    verifying_contract: str,
) -> SignableMessage:
    types, value = build_typed_payload(kind, fields, timestamp, nonce)
    return encode_typed_data(
        domain_data=build_domain(chain_id, verifying_contract),
        message_types=types,
        message_data=value,
    )


def recover_signer(signable: SignableMessage, signature: str) -> str:
    """Recover the checksummed address that produced ``signature``."""
    try:
        return Account.recover_message(signable, signature=signature)
    except Exception as e:
        # eth_account raises a mix of ValueError, TypeError and eth_keys errors
        raise InvalidSignatureError(f"Signature could not be recovered: {e}")


def same_address(a: str | None, b: str | None) -> bool:
    if not a or not b or not Web3.is_address(a) or not Web3.is_address(b):
        return False
    return Web3.to_checksum_address(a) == Web3.to_checksum_address(b)


def verify_admin_signature(config_hash: str, signature: str | None, admin_address: str | None) -> bool:
    """True when ``signature`` is an EIP-191 signature of ``config_hash`` by ``admin_address``."""
    if not config_hash or not signature or not admin_address:
        return False
    try:
        signer = recover_signer(encode_defunct(text=config_hash), signature)
    except InvalidSignatureError:
        return False
    return same_address(signer, admin_address)


# =============================================================================
# Verifier
# =============================================================================


def _now_ms() -> int:
    return int(time.time() * 1000)


class SignatureVerifier:
    """
    Authorizes write requests by admin key or wallet signature.

    Args:
        admin_key: Secret for the ``x-api-key`` bypass (None disables it)
        nonce_store: Where consumed nonces are recorded
        ttl_ms: Maximum allowed ``|now - timestamp|`` in milliseconds
        chain_id: EIP-712 domain chain id
        verifying_contract: EIP-712 domain contract; typed data is refused
            with a 503 when unset
        clock: Returns the current time in milliseconds
    """

    def __init__(
        self,
        admin_key: str | None = None,
        nonce_store: NonceStore | None = None,
        ttl_ms: int = 300000,
        chain_id: int = 31337,
        verifying_contract: str | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.admin_key = admin_key
        self.nonce_store = nonce_store or NonceStore()
        self.ttl_ms = ttl_ms
        self.chain_id = chain_id
        self.verifying_contract = verifying_contract or None
        self._clock = clock or _now_ms

    @classmethod
    def from_config(cls, config, nonce_store: NonceStore) -> "SignatureVerifier":
        return cls(
            admin_key=config.admin_key,
            nonce_store=nonce_store,
            ttl_ms=config.signature_ttl_ms,
            chain_id=config.eip712_chain_id,
            verifying_contract=config.eip712_verifier,
        )

    def is_admin_key(self, provided: str | None) -> bool:
        if not self.admin_key or not provided:
            return False
        return secrets.compare_digest(provided.encode(), self.admin_key.encode())

    def authorize(
        self,
        kind: str,
        fields: dict[str, Any],
        credentials: Credentials,
        api_key: str | None = None,
    ) -> AuthResult:
        """
        Authorize one write.

        A matching admin key wins outright. A wrong admin key is only fatal
        when no signature was offered as an alternative.
        """
        if api_key:
            if self.is_admin_key(api_key):
                return AuthResult(AuthMethod.ADMIN_KEY)
            if not credentials.present:
                raise InvalidAdminKeyError("x-api-key does not match")

        if not credentials.present:
            raise MissingCredentialsError("Provide x-api-key or signer/signature/timestamp")
        return self.verify_signature(kind, fields, credentials)

    def verify_signature(self, kind: str, fields: dict[str, Any], credentials: Credentials) -> AuthResult:
        schema = _schema(kind)
        if not credentials.signer or not credentials.signature:
            raise MissingCredentialsError("signer and signature are required")
        timestamp = parse_timestamp(credentials.timestamp)
        nonce = credentials.nonce
        if nonce is not None and len(nonce) > MAX_NONCE_LENGTH:
            raise InvalidSignatureError(f"nonce longer than {MAX_NONCE_LENGTH} characters")

        method = credentials.auth_method
        if method is AuthMethod.TYPED_DATA:
            if not self.verifying_contract or not Web3.is_address(self.verifying_contract):
                raise AuthConfigurationError("EIP-712 verification is not configured on this server")
            try:
                signable = encode_typed(kind, fields, timestamp, nonce, self.chain_id, self.verifying_contract)
            except (ValueError, TypeError) as e:
                raise InvalidSignatureError(f"Typed payload could not be encoded: {e}")
        else:
            signable = encode_defunct(text=canonical_message(kind, fields, timestamp, nonce))

        recovered = recover_signer(signable, credentials.signature)
        if not same_address(recovered, credentials.signer):
            raise InvalidSignatureError("Signature does not match signer")

        subject = fields.get(schema.subject)
        if subject and not same_address(subject, credentials.signer):
            raise InvalidSignatureError(
                f"Signer does not match {schema.subject}", reason="signer_mismatch"
            )

        diff = abs(self._clock() - timestamp)
        if diff > self.ttl_ms:
            raise StaleTimestampError("Signature timestamp outside allowed window", details={"ts_diff_ms": diff})

        if nonce is not None and not self.nonce_store.consume(credentials.signer, nonce):
            raise NonceReplayError("Nonce has already been used")

        return AuthResult(method, signer=Web3.to_checksum_address(credentials.signer), nonce=nonce)


# =============================================================================
# Client-side signing helpers
# =============================================================================


def _signed(signed, account_address: str, timestamp: int, nonce: str | None, **extra) -> dict[str, Any]:
    result = {
        "signer": account_address,
        "signature": Web3.to_hex(signed.signature),
        "timestamp": timestamp,
        **extra,
    }
    if nonce:
        result["nonce"] = nonce
    return result


def sign_payload(
    kind: str,
    private_key: str,
    fields: dict[str, Any],
    timestamp: int | None = None,
    nonce: str | None = None,
) -> dict[str, Any]:
    """Sign the canonical personal message for ``kind``; returns request auth fields."""
    account = Account.from_key(private_key)
    ts = int(timestamp if timestamp is not None else _now_ms())
    message = canonical_message(kind, fields, ts, nonce)
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return _signed(signed, account.address, ts, nonce, message=message)


def sign_typed_payload(
    kind: str,
    private_key: str,
    fields: dict[str, Any],
    chain_id: int,
    verifying_contract: str,
    timestamp: int | None = None,
    nonce: str | None = None,
) -> dict[str, Any]:
    """Sign the EIP-712 struct for ``kind``; returns request auth fields with ``method``."""
    account = Account.from_key(private_key)
    ts = int(timestamp if timestamp is not None else _now_ms())
    signable = encode_typed(kind, fields, ts, nonce, chain_id, verifying_contract)
    signed = Account.sign_message(signable, private_key=private_key)
    return _signed(signed, account.address, ts, nonce, method=AuthMethod.TYPED_DATA.value)


def sign_song_payload(private_key: str, fields: dict[str, Any], **kwargs) -> dict[str, Any]:
    return sign_payload("song", private_key, fields, **kwargs)


def sign_play_payload(private_key: str, fields: dict[str, Any], **kwargs) -> dict[str, Any]:
    return sign_payload("play", private_key, fields, **kwargs)


def sign_claim_payload(private_key: str, fields: dict[str, Any], **kwargs) -> dict[str, Any]:
    return sign_payload("claim", private_key, fields, **kwargs)


def sign_song_typed(private_key: str, fields: dict[str, Any], chain_id: int, verifying_contract: str, **kwargs) -> dict[str, Any]:
    return sign_typed_payload("song", private_key, fields, chain_id, verifying_contract, **kwargs)


def sign_play_typed(private_key: str, fields: dict[str, Any], chain_id: int, verifying_contract: str, **kwargs) -> dict[str, Any]:
    return sign_typed_payload("play", private_key, fields, chain_id, verifying_contract, **kwargs)


def sign_claim_typed(private_key: str, fields: dict[str, Any], chain_id: int, verifying_contract: str, **kwargs) -> dict[str, Any]:
    return sign_typed_payload("claim", private_key, fields, chain_id, verifying_contract, **kwargs)


def sign_config_hash(private_key: str, config_hash: str) -> str:
    """EIP-191 admin signature over a strategy config hash."""
    signed = Account.sign_message(encode_defunct(text=config_hash), private_key=private_key)
    return Web3.to_hex(signed.signature)
