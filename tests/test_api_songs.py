"""
Tests for the catalog endpoints: health, songs, plays, claims and analytics.
"""

import time

import pytest
from conftest import (
    ADMIN_KEY,
    CHAIN_ID,
    OTHER_ADDRESS,
    OTHER_PRIVATE_KEY,
    TEST_ADDRESS,
    TEST_PRIVATE_KEY,
    VERIFYING_CONTRACT,
)

from signature_auth import sign_claim_payload, sign_play_payload, sign_song_payload, sign_song_typed
from storage.base import StorageReadError

JSON = {"Content-Type": "application/json"}


def song_fields(body):
    return {k: body[k] for k in ("id", "artistAddress", "ipfsHash", "paymentModel")}


def register(client, body, headers=None):
    return client.post("/api/songs", json=body, headers=headers or JSON)


class TestHealth:
    """Tests for the health endpoints."""

    def test_health(self, flask_client):
        response = flask_client.get("/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["service"] == "mycelix-music-api"

    def test_health_details_reports_clock_skew(self, flask_client):
        client_ts = int(time.time() * 1000)
        response = flask_client.get(f"/health/details?client_ts={client_ts}")
        assert response.status_code == 200
        data = response.get_json()
        assert data["storage"]["available"] is True
        assert data["config"]["admin_key_configured"] is True
        assert data["clock"]["within_ttl"] is True

    def test_unknown_endpoint_is_json_404(self, flask_client):
        response = flask_client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_request_id_echoed(self, flask_client):
        response = flask_client.get("/health", headers={"X-Request-ID": "req-abc-123"})
        assert response.headers["X-Request-ID"] == "req-abc-123"

        generated = flask_client.get("/health").headers["X-Request-ID"]
        assert len(generated) == 12

    def test_storage_failure_is_503(self, flask_client, memory_store, monkeypatch):
        def broken(**kwargs):
            raise StorageReadError("database unavailable")

        monkeypatch.setattr(memory_store, "list_songs", broken)
        response = flask_client.get("/api/songs")
        assert response.status_code == 503
        assert response.get_json()["error"] == "storage_unavailable"


class TestRegisterSong:
    """Tests for POST /api/songs."""

    def test_register_with_admin_key(self, flask_client, admin_headers, song_body):
        response = register(flask_client, song_body, admin_headers)
        assert response.status_code == 201
        data = response.get_json()
        assert data["id"] == song_body["id"]
        assert data["artist_address"] == TEST_ADDRESS
        assert data["plays"] == 0
        assert data["song_hash"].startswith("0x")

    def test_register_with_personal_signature(self, flask_client, song_body):
        body = {**song_body, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body), nonce="n-1")}
        response = register(flask_client, body)
        assert response.status_code == 201

    def test_register_with_typed_signature(self, flask_client, song_body):
        body = {
            **song_body,
            **sign_song_typed(TEST_PRIVATE_KEY, song_fields(song_body), CHAIN_ID, VERIFYING_CONTRACT, nonce="t-1"),
        }
        response = register(flask_client, body)
        assert response.status_code == 201

    def test_duplicate_song(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        response = register(flask_client, song_body, admin_headers)
        assert response.status_code == 409
        assert response.get_json()["error"] == "duplicate_song"

    def test_missing_credentials(self, flask_client, song_body):
        response = register(flask_client, song_body)
        assert response.status_code == 401
        assert response.get_json()["reason"] == "missing_credentials"

    def test_wrong_admin_key_without_signature(self, flask_client, song_body):
        response = register(flask_client, song_body, {**JSON, "x-api-key": "wrong"})
        assert response.status_code == 401
        assert response.get_json()["reason"] == "invalid_admin_key"

    def test_wrong_admin_key_falls_back_to_signature(self, flask_client, song_body):
        body = {**song_body, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body))}
        response = register(flask_client, body, {**JSON, "x-api-key": "wrong"})
        assert response.status_code == 201

    def test_signer_must_be_artist(self, flask_client, song_body):
        body = {**song_body, **sign_song_payload(OTHER_PRIVATE_KEY, song_fields(song_body))}
        response = register(flask_client, body)
        assert response.status_code == 401
        assert response.get_json()["reason"] == "signer_mismatch"

    def test_tampered_field_rejected(self, flask_client, song_body):
        signed = sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body))
        body = {**song_body, **signed, "ipfsHash": "QmSomethingElse"}
        response = register(flask_client, body)
        assert response.status_code == 401
        assert response.get_json()["reason"] == "invalid_signature"

    def test_stale_timestamp_rejected(self, flask_client, song_body):
        stale = int(time.time() * 1000) - 10 * 60 * 1000
        body = {**song_body, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body), timestamp=stale)}
        response = register(flask_client, body)
        assert response.status_code == 401
        assert response.get_json()["reason"] == "expired"

    def test_nonce_replay_rejected(self, flask_client, song_body):
        first = {**song_body, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body), nonce="once")}
        assert register(flask_client, first).status_code == 201

        second_song = {**song_body, "id": "mycelix-test-song-2"}
        second = {**second_song, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(second_song), nonce="once")}
        response = register(flask_client, second)
        assert response.status_code == 409
        assert response.get_json()["reason"] == "nonce_replay"

    def test_nonce_survives_full_response_cache(self, app_config, memory_store, song_body):
        from app import create_app
        from cache import LocalCache

        client = create_app(app_config, store=memory_store, cache=LocalCache(max_size=5)).test_client()
        first = {**song_body, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(song_body), nonce="n-1")}
        assert register(client, first).status_code == 201

        for i in range(20):
            assert client.get(f"/api/songs?q=x{i}").status_code == 200

        second_song = {**song_body, "id": "mycelix-test-song-2"}
        second = {**second_song, **sign_song_payload(TEST_PRIVATE_KEY, song_fields(second_song), nonce="n-1")}
        response = register(client, second)
        assert response.status_code == 409
        assert response.get_json()["reason"] == "nonce_replay"

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"title": ""}, "title"),
            ({"artistAddress": "0x123"}, "artistAddress"),
            ({"paymentModel": "barter"}, "paymentModel"),
            ({"genre": 7}, "genre"),
        ],
    )
    def test_validation_errors(self, flask_client, admin_headers, song_body, overrides, message):
        response = register(flask_client, {**song_body, **overrides}, admin_headers)
        assert response.status_code == 400
        data = response.get_json()
        assert data["error"] == "invalid_request"
        assert message in data["message"]

    def test_non_json_body(self, flask_client, admin_headers):
        response = flask_client.post("/api/songs", data="not json", headers=admin_headers)
        assert response.status_code == 400


class TestListSongs:
    """Tests for song listing and detail."""

    def test_list_and_cache_invalidation(self, flask_client, admin_headers, song_body):
        empty = flask_client.get("/api/songs").get_json()
        assert empty["total"] == 0

        register(flask_client, song_body, admin_headers)

        listed = flask_client.get("/api/songs").get_json()
        assert listed["total"] == 1
        assert listed["songs"][0]["id"] == song_body["id"]

    def test_search_and_filters(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        register(flask_client, {**song_body, "id": "other", "title": "Root Network", "genre": "techno"}, admin_headers)

        data = flask_client.get("/api/songs?q=spore").get_json()
        assert [s["id"] for s in data["songs"]] == [song_body["id"]]

        data = flask_client.get("/api/songs?genre=techno").get_json()
        assert [s["id"] for s in data["songs"]] == ["other"]

        data = flask_client.get("/api/songs?sort=title&order=asc&limit=1").get_json()
        assert data["total"] == 2
        assert data["limit"] == 1
        assert data["songs"][0]["title"] == "Root Network"

    @pytest.mark.parametrize("query", ["sort=price", "order=sideways", "limit=abc"])
    def test_invalid_query(self, flask_client, query):
        response = flask_client.get(f"/api/songs?{query}")
        assert response.status_code == 400

    def test_get_song(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        response = flask_client.get(f"/api/songs/{song_body['id']}")
        assert response.status_code == 200
        assert response.get_json()["title"] == "Spore Drift"

    def test_get_missing_song(self, flask_client):
        response = flask_client.get("/api/songs/missing")
        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"


class TestPlays:
    """Tests for recording and listing plays."""

    @pytest.fixture
    def song(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        return song_body["id"]

    def test_play_with_admin_key(self, flask_client, admin_headers, song):
        body = {"listenerAddress": OTHER_ADDRESS, "amount": "0.01", "paymentType": "stream"}
        response = flask_client.post(f"/api/songs/{song}/play", json=body, headers=admin_headers)
        assert response.status_code == 201
        assert response.get_json() == {"success": True, "song_id": song, "payment_type": "stream"}

        detail = flask_client.get(f"/api/songs/{song}").get_json()
        assert detail["plays"] == 1
        assert detail["earnings"] == "0.01"

    def test_play_signed_by_listener(self, flask_client, song):
        fields = {"songId": song, "listener": OTHER_ADDRESS, "amount": "0.5", "paymentType": 2}
        body = {
            "listenerAddress": OTHER_ADDRESS,
            "amount": "0.5",
            "paymentType": 2,
            **sign_play_payload(OTHER_PRIVATE_KEY, fields),
        }
        response = flask_client.post(f"/api/songs/{song}/play", json=body, headers=JSON)
        assert response.status_code == 201
        assert response.get_json()["payment_type"] == "tip"

    def test_play_for_unknown_song(self, flask_client, admin_headers):
        body = {"listenerAddress": OTHER_ADDRESS, "amount": "0.01", "paymentType": "stream"}
        response = flask_client.post("/api/songs/ghost/play", json=body, headers=admin_headers)
        assert response.status_code == 404

    def test_unauthenticated_play_does_not_reveal_songs(self, flask_client, song):
        body = {"listenerAddress": OTHER_ADDRESS, "amount": "0.01", "paymentType": "stream"}
        known = flask_client.post(f"/api/songs/{song}/play", json=body, headers=JSON)
        unknown = flask_client.post("/api/songs/ghost/play", json=body, headers=JSON)
        assert known.status_code == unknown.status_code == 401

    @pytest.mark.parametrize(
        "overrides",
        [{"amount": "-1"}, {"amount": "lots"}, {"paymentType": "barter"}, {"listenerAddress": "nope"}],
    )
    def test_invalid_play(self, flask_client, admin_headers, song, overrides):
        body = {"listenerAddress": OTHER_ADDRESS, "amount": "0.01", "paymentType": "stream", **overrides}
        response = flask_client.post(f"/api/songs/{song}/play", json=body, headers=admin_headers)
        assert response.status_code == 400

    def test_list_plays(self, flask_client, admin_headers, song):
        for amount in ("0.01", "0.02"):
            flask_client.post(
                f"/api/songs/{song}/play",
                json={"listenerAddress": OTHER_ADDRESS, "amount": amount, "paymentType": "stream"},
                headers=admin_headers,
            )
        data = flask_client.get(f"/api/songs/{song}/plays").get_json()
        assert data["count"] == 2
        assert {p["amount"] for p in data["plays"]} == {"0.01", "0.02"}

    def test_list_plays_unknown_song(self, flask_client):
        assert flask_client.get("/api/songs/ghost/plays").status_code == 404


class TestClaims:
    """Tests for POST /api/claims."""

    CLAIM = {
        "songId": "claimed-song",
        "artistAddress": TEST_ADDRESS,
        "ipfsHash": "QmClaim",
        "title": "Hyphal Bloom",
        "tiers": {"epistemic": 1, "network": 2, "memory": 3},
    }

    def test_claim_with_signature(self, flask_client):
        fields = {k: self.CLAIM[k] for k in ("songId", "artistAddress", "ipfsHash", "title")}
        body = {**self.CLAIM, **sign_claim_payload(TEST_PRIVATE_KEY, fields)}
        response = flask_client.post("/api/claims", json=body, headers=JSON)
        assert response.status_code == 201
        data = response.get_json()
        assert data["stream_id"].startswith("stream-")
        assert data["tiers"] == self.CLAIM["tiers"]

    def test_claim_with_admin_key(self, flask_client):
        response = flask_client.post("/api/claims", json=self.CLAIM, headers={**JSON, "x-api-key": ADMIN_KEY})
        assert response.status_code == 201

    def test_claim_requires_auth(self, flask_client):
        response = flask_client.post("/api/claims", json=self.CLAIM, headers=JSON)
        assert response.status_code == 401


class TestAnalytics:
    """Tests for the analytics endpoints."""

    def _play(self, client, headers, song_id, amount, payment_type="stream"):
        client.post(
            f"/api/songs/{song_id}/play",
            json={"listenerAddress": OTHER_ADDRESS, "amount": amount, "paymentType": payment_type},
            headers=headers,
        )

    def test_artist_stats(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        self._play(flask_client, admin_headers, song_body["id"], "1.5")

        data = flask_client.get(f"/api/artists/{TEST_ADDRESS.lower()}/stats").get_json()
        assert data["totalSongs"] == 1
        assert data["totalPlays"] == 1
        assert data["totalEarnings"] == "1.5"

    def test_artist_stats_rejects_bad_address(self, flask_client):
        assert flask_client.get("/api/artists/not-an-address/stats").status_code == 400

    def test_top_songs(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        register(flask_client, {**song_body, "id": "popular"}, admin_headers)
        for _ in range(2):
            self._play(flask_client, admin_headers, "popular", "0.01")

        data = flask_client.get("/api/analytics/top-songs?limit=1").get_json()
        assert data["count"] == 1
        assert data["songs"][0]["id"] == "popular"

    def test_summary(self, flask_client, admin_headers, song_body):
        register(flask_client, song_body, admin_headers)
        self._play(flask_client, admin_headers, song_body["id"], "1", "stream")
        self._play(flask_client, admin_headers, song_body["id"], "2", "tip")

        data = flask_client.get("/api/analytics/summary?days=500").get_json()
        assert data["days"] == 90
        assert data["totalPlays"] == 2
        assert data["totalNet"] == pytest.approx(3.0)
        assert [row["payment_type"] for row in data["perType"]] == ["stream", "tip"]


class TestRateLimit:
    """Tests for the fixed-window rate limit."""

    def test_limit_exceeded(self, app_config, memory_store, local_cache):
        from app import create_app

        app_config.rate_limit_requests = 2
        app_config.rate_limit_window = 60
        client = create_app(app_config, store=memory_store, cache=local_cache).test_client()

        assert client.get("/api/songs").status_code == 200
        assert client.get("/api/songs").status_code == 200
        response = client.get("/api/songs")
        assert response.status_code == 429
        assert response.get_json()["error"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

        assert client.get("/health").status_code == 200
