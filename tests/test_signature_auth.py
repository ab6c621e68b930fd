"""
Tests for wallet signature authentication.

Tests cover:
- Canonical message construction
- Personal-sign and EIP-712 verification
- Timestamp freshness and nonce replay protection
- Admin key bypass
- Admin signatures over strategy config hashes
"""

import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest
from conftest import (
    CHAIN_ID,
    OTHER_ADDRESS,
    OTHER_PRIVATE_KEY,
    TEST_ADDRESS,
    TEST_PRIVATE_KEY,
    VERIFYING_CONTRACT,
)

from cache import LocalCache
from nonce_store import NonceStore
from signature_auth import (
    AuthConfigurationError,
    AuthMethod,
    Credentials,
    InvalidAdminKeyError,
    InvalidSignatureError,
    MissingCredentialsError,
    NonceReplayError,
    SignatureVerifier,
    StaleTimestampError,
    canonical_message,
    js_string,
    sign_claim_payload,
    sign_config_hash,
    sign_play_payload,
    sign_song_payload,
    sign_song_typed,
    verify_admin_signature,
)

NOW_MS = 1_700_000_000_000
TTL_MS = 300_000

SONG_FIELDS = {
    "id": "mycelix-test-song",
    "artistAddress": TEST_ADDRESS,
    "ipfsHash": "QmTestHash123",
    "paymentModel": "pay_per_stream",
}

PLAY_FIELDS = {
    "songId": "mycelix-test-song",
    "listener": TEST_ADDRESS,
    "amount": "0.01",
    "paymentType": "stream",
}


@pytest.fixture
def nonce_store():
    return NonceStore(LocalCache(), ttl_seconds=600)


@pytest.fixture
def verifier(nonce_store):
    return SignatureVerifier(
        admin_key="admin-secret",
        nonce_store=nonce_store,
        ttl_ms=TTL_MS,
        chain_id=CHAIN_ID,
        verifying_contract=VERIFYING_CONTRACT,
        clock=lambda: NOW_MS,
    )


def _credentials(signed):
    return Credentials.from_body(signed)


# ============================================================
# Canonical Messages
# ============================================================

class TestCanonicalMessage:
    """Tests for the pipe-delimited signed strings."""

    def test_song_message_without_nonce(self):
        message = canonical_message("song", SONG_FIELDS, NOW_MS)
        assert message == (
            f"mycelix-song|mycelix-test-song|{TEST_ADDRESS}|QmTestHash123|pay_per_stream||{NOW_MS}"
        )

    def test_song_message_with_nonce(self):
        message = canonical_message("song", SONG_FIELDS, NOW_MS, nonce="n-1")
        assert message.endswith(f"|pay_per_stream|n-1|{NOW_MS}")

    def test_play_message_field_order(self):
        message = canonical_message("play", PLAY_FIELDS, NOW_MS)
        assert message == f"mycelix-play|mycelix-test-song|{TEST_ADDRESS}|0.01|stream||{NOW_MS}"

    def test_claim_message_prefix(self):
        fields = {"songId": "s", "artistAddress": TEST_ADDRESS, "ipfsHash": "Qm", "title": "T"}
        assert canonical_message("claim", fields, 1).startswith("mycelix-claim|s|")

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            canonical_message("album", {}, NOW_MS)

    @pytest.mark.parametrize(
        "value,expected",
        [(1.0, "1"), (0.01, "0.01"), (5, "5"), (None, ""), ("0.010", "0.010"), (True, "true")],
    )
    def test_js_string(self, value, expected):
        assert js_string(value) == expected


# ============================================================
# Personal Sign
# ============================================================

class TestPersonalSign:
    """Tests for EIP-191 verification."""

    def test_valid_signature(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        result = verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert result.method is AuthMethod.PERSONAL_SIGN
        assert result.signer == TEST_ADDRESS

    def test_signer_case_insensitive(self, verifier):
        fields = dict(SONG_FIELDS, artistAddress=TEST_ADDRESS.lower())
        signed = sign_song_payload(TEST_PRIVATE_KEY, fields, timestamp=NOW_MS)
        signed["signer"] = TEST_ADDRESS.lower()
        assert verifier.authorize("song", fields, _credentials(signed)).signer == TEST_ADDRESS

    def test_tampered_amount_rejected(self, verifier):
        signed = sign_play_payload(TEST_PRIVATE_KEY, PLAY_FIELDS, timestamp=NOW_MS)
        tampered = dict(PLAY_FIELDS, amount="100")
        with pytest.raises(InvalidSignatureError) as exc:
            verifier.authorize("play", tampered, _credentials(signed))
        assert exc.value.reason == "invalid_signature"
        assert exc.value.status_code == 401

    def test_signature_from_other_key_rejected(self, verifier):
        signed = sign_song_payload(OTHER_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        signed["signer"] = TEST_ADDRESS
        with pytest.raises(InvalidSignatureError):
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_signer_must_match_subject_address(self, verifier):
        """A valid signature by someone other than the artist is refused."""
        signed = sign_song_payload(OTHER_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        assert signed["signer"] == OTHER_ADDRESS
        with pytest.raises(InvalidSignatureError) as exc:
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert exc.value.reason == "signer_mismatch"

    def test_claim_signature(self, verifier):
        fields = {"songId": "s", "artistAddress": TEST_ADDRESS, "ipfsHash": "Qm", "title": "T"}
        signed = sign_claim_payload(TEST_PRIVATE_KEY, fields, timestamp=NOW_MS)
        assert verifier.authorize("claim", fields, _credentials(signed)).signer == TEST_ADDRESS

    def test_garbage_signature_rejected(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        signed["signature"] = "0xdeadbeef"
        with pytest.raises(InvalidSignatureError):
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_missing_timestamp(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        del signed["timestamp"]
        with pytest.raises(MissingCredentialsError) as exc:
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert exc.value.reason == "missing_timestamp"

    def test_missing_signature(self, verifier):
        with pytest.raises(MissingCredentialsError):
            verifier.authorize("song", SONG_FIELDS, Credentials(signer=TEST_ADDRESS, timestamp=NOW_MS))


# ============================================================
# Timestamp Freshness
# ============================================================

class TestTimestampWindow:
    """Tests for the signature TTL."""

    def test_stale_timestamp_rejected(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS - TTL_MS - 1)
        with pytest.raises(StaleTimestampError) as exc:
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert exc.value.reason == "expired"
        assert exc.value.to_dict()["ts_diff_ms"] == TTL_MS + 1

    def test_future_timestamp_rejected(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS + TTL_MS + 1)
        with pytest.raises(StaleTimestampError):
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_edge_of_window_accepted(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS - TTL_MS)
        assert verifier.authorize("song", SONG_FIELDS, _credentials(signed)).signer == TEST_ADDRESS

    def test_string_timestamp_accepted(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        signed["timestamp"] = str(NOW_MS)
        verifier.authorize("song", SONG_FIELDS, _credentials(signed))


# ============================================================
# Nonces
# ============================================================

class TestNonceReplay:
    """Tests for one-time nonces."""

    def test_nonce_reuse_rejected(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS, nonce="once")
        verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        with pytest.raises(NonceReplayError) as exc:
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert exc.value.status_code == 409
        assert exc.value.reason == "nonce_replay"

    def test_nonce_scoped_to_signer(self, verifier):
        verifier.nonce_store.consume(OTHER_ADDRESS, "shared")
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS, nonce="shared")
        verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_failed_signature_does_not_burn_nonce(self, verifier):
        signed = sign_play_payload(TEST_PRIVATE_KEY, PLAY_FIELDS, timestamp=NOW_MS, nonce="keep")
        with pytest.raises(InvalidSignatureError):
            verifier.authorize("play", dict(PLAY_FIELDS, amount="2"), _credentials(signed))
        assert not verifier.nonce_store.is_consumed(TEST_ADDRESS, "keep")
        verifier.authorize("play", PLAY_FIELDS, _credentials(signed))
        assert verifier.nonce_store.is_consumed(TEST_ADDRESS, "keep")

    def test_concurrent_nonce_use_single_winner(self, nonce_store):
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(nonce_store.consume(TEST_ADDRESS, "race"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count(True) == 1
        assert results.count(False) == 7


# ============================================================
# Admin Key
# ============================================================

class TestAdminKey:
    """Tests for the x-api-key bypass."""

    def test_admin_key_bypasses_signature(self, verifier):
        result = verifier.authorize("song", SONG_FIELDS, Credentials(), api_key="admin-secret")
        assert result.method is AuthMethod.ADMIN_KEY
        assert result.signer is None

    def test_wrong_admin_key_without_signature(self, verifier):
        with pytest.raises(InvalidAdminKeyError):
            verifier.authorize("song", SONG_FIELDS, Credentials(), api_key="wrong")

    def test_wrong_admin_key_falls_back_to_signature(self, verifier):
        signed = sign_song_payload(TEST_PRIVATE_KEY, SONG_FIELDS, timestamp=NOW_MS)
        result = verifier.authorize("song", SONG_FIELDS, _credentials(signed), api_key="wrong")
        assert result.method is AuthMethod.PERSONAL_SIGN

    def test_no_credentials(self, verifier):
        with pytest.raises(MissingCredentialsError) as exc:
            verifier.authorize("song", SONG_FIELDS, Credentials())
        assert exc.value.to_dict()["reason"] == "missing_credentials"

    def test_unconfigured_admin_key_never_matches(self, nonce_store):
        verifier = SignatureVerifier(admin_key=None, nonce_store=nonce_store)
        assert verifier.is_admin_key("") is False
        assert verifier.is_admin_key("anything") is False


# ============================================================
# EIP-712
# ============================================================

class TestTypedData:
    """Tests for EIP-712 verification."""

    def test_valid_typed_signature(self, verifier):
        signed = sign_song_typed(TEST_PRIVATE_KEY, SONG_FIELDS, CHAIN_ID, VERIFYING_CONTRACT, timestamp=NOW_MS)
        assert signed["method"] == "eip712"
        result = verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert result.method is AuthMethod.TYPED_DATA
        assert result.signer == TEST_ADDRESS

    def test_typed_signature_with_nonce(self, verifier):
        signed = sign_song_typed(
            TEST_PRIVATE_KEY, SONG_FIELDS, CHAIN_ID, VERIFYING_CONTRACT, timestamp=NOW_MS, nonce="t-1"
        )
        verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        with pytest.raises(NonceReplayError):
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_typed_tampered_field_rejected(self, verifier):
        signed = sign_song_typed(TEST_PRIVATE_KEY, SONG_FIELDS, CHAIN_ID, VERIFYING_CONTRACT, timestamp=NOW_MS)
        with pytest.raises(InvalidSignatureError):
            verifier.authorize("song", dict(SONG_FIELDS, ipfsHash="QmOther"), _credentials(signed))

    def test_wrong_chain_rejected(self, verifier):
        signed = sign_song_typed(TEST_PRIVATE_KEY, SONG_FIELDS, 1, VERIFYING_CONTRACT, timestamp=NOW_MS)
        with pytest.raises(InvalidSignatureError):
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))

    def test_typed_data_requires_verifying_contract(self, nonce_store):
        verifier = SignatureVerifier(nonce_store=nonce_store, clock=lambda: NOW_MS)
        signed = sign_song_typed(TEST_PRIVATE_KEY, SONG_FIELDS, CHAIN_ID, VERIFYING_CONTRACT, timestamp=NOW_MS)
        with pytest.raises(AuthConfigurationError) as exc:
            verifier.authorize("song", SONG_FIELDS, _credentials(signed))
        assert exc.value.status_code == 503
        assert exc.value.reason == "typed_data_unconfigured"


# ============================================================
# Admin Signatures
# ============================================================

class TestAdminSignature:
    """Tests for config hash signatures."""

    CONFIG_HASH = "a" * 64

    def test_valid_admin_signature(self):
        signature = sign_config_hash(TEST_PRIVATE_KEY, self.CONFIG_HASH)
        assert verify_admin_signature(self.CONFIG_HASH, signature, TEST_ADDRESS) is True
        assert verify_admin_signature(self.CONFIG_HASH, signature, TEST_ADDRESS.lower()) is True

    def test_wrong_signer(self):
        signature = sign_config_hash(OTHER_PRIVATE_KEY, self.CONFIG_HASH)
        assert verify_admin_signature(self.CONFIG_HASH, signature, TEST_ADDRESS) is False

    def test_different_hash(self):
        signature = sign_config_hash(TEST_PRIVATE_KEY, self.CONFIG_HASH)
        assert verify_admin_signature("b" * 64, signature, TEST_ADDRESS) is False

    @pytest.mark.parametrize("signature", [None, "", "0x1234"])
    def test_missing_or_malformed_signature(self, signature):
        assert verify_admin_signature(self.CONFIG_HASH, signature, TEST_ADDRESS) is False

    def test_no_admin_address_configured(self):
        signature = sign_config_hash(TEST_PRIVATE_KEY, self.CONFIG_HASH)
        assert verify_admin_signature(self.CONFIG_HASH, signature, None) is False
