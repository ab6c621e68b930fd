"""
In-memory catalog backend.

This backend keeps the catalog in process memory only, useful for:
- Unit testing
- Development
- Single-instance demos
"""

import copy
import itertools
import threading
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any

from storage.base import (
    SONG_SORT_FIELDS,
    CatalogStore,
    DuplicateRecordError,
    decimal_str,
    song_hash_for,
    utcnow,
)


class MemoryCatalogStore(CatalogStore):
    """
    In-memory catalog backend.

    All data is lost when the process exits. Thread-safe operations.
    """

    def __init__(self):
        # Reentrant: record_payment updates songs while holding the lock
        self._lock = threading.RLock()
        self._reset()

    def _reset(self) -> None:
        self._songs: dict[str, dict[str, Any]] = {}
        self._plays: list[dict[str, Any]] = []
        self._play_keys: set[tuple[str, int]] = set()
        self._claims: list[dict[str, Any]] = []
        self._configs: dict[int, dict[str, Any]] = {}
        self._checkpoints: dict[str, int] = {}
        self._poison: dict[tuple[str, int], dict[str, Any]] = {}
        self._play_ids = itertools.count(1)
        self._claim_ids = itertools.count(1)
        self._config_ids = itertools.count(1)

    # Songs

    @staticmethod
    def _song_out(song: dict[str, Any]) -> dict[str, Any]:
        out = copy.deepcopy(song)
        out["earnings"] = decimal_str(song["earnings"])
        out["created_at"] = song["created_at"].isoformat()
        return out

    def create_song(self, song: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            song_id = song["id"]
            if song_id in self._songs:
                raise DuplicateRecordError(f"Song already exists: {song_id}")
            record = {
                "id": song_id,
                "title": song.get("title"),
                "artist": song.get("artist"),
                "artist_address": song.get("artist_address"),
                "genre": song.get("genre"),
                "description": song.get("description"),
                "ipfs_hash": song.get("ipfs_hash"),
                "payment_model": song.get("payment_model"),
                "strategy_id": song.get("strategy_id"),
                "song_hash": (song.get("song_hash") or song_hash_for(song_id)).lower(),
                "tx_hash": song.get("tx_hash"),
                "block_number": song.get("block_number"),
                "plays": 0,
                "earnings": Decimal("0"),
                "created_at": utcnow(),
            }
            self._songs[song_id] = record
            return self._song_out(record)

    def get_song(self, song_id: str) -> dict[str, Any] | None:
        with self._lock:
            song = self._songs.get(song_id)
            return self._song_out(song) if song else None

    def find_song_by_hash(self, song_hash: str) -> dict[str, Any] | None:
        wanted = song_hash.lower()
        with self._lock:
            for song in self._songs.values():
                if song["song_hash"] == wanted:
                    return self._song_out(song)
            return None

    def list_songs(
        self,
        q: str | None = None,
        genre: str | None = None,
        model: str | None = None,
        sort: str = "created_at",
        order: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        sort = sort if sort in SONG_SORT_FIELDS else "created_at"
        with self._lock:
            songs = list(self._songs.values())

            if q:
                needle = q.lower()
                songs = [
                    s for s in songs
                    if needle in (s.get("title") or "").lower() or needle in (s.get("artist") or "").lower()
                ]
            if genre:
                songs = [s for s in songs if s.get("genre") == genre]
            if model:
                songs = [s for s in songs if s.get("payment_model") == model]

            def sort_key(song):
                value = song.get(sort)
                if sort == "title":
                    return (value or "").lower()
                return value

            songs.sort(key=sort_key, reverse=order.lower() != "asc")
            total = len(songs)
            return [self._song_out(s) for s in songs[offset:offset + limit]], total

    # Plays

    def record_payment(self, event: dict[str, Any]) -> bool:
        with self._lock:
            tx_hash = event.get("tx_hash")
            log_index = int(event.get("log_index") or 0)
            if tx_hash:
                key = (tx_hash.lower(), log_index)
                if key in self._play_keys:
                    return False
                self._play_keys.add(key)

            song_id = event.get("song_id")
            song = self._songs.get(song_id) if song_id else None
            if song is None and event.get("song_hash"):
                song = next(
                    (s for s in self._songs.values() if s["song_hash"] == event["song_hash"].lower()),
                    None,
                )

            amount = Decimal(str(event.get("amount") or "0"))
            net = event.get("net_amount")
            net_amount = Decimal(str(net)) if net is not None else amount

            self._plays.append(
                {
                    "id": next(self._play_ids),
                    "song_id": song["id"] if song else None,
                    "song_hash": (event.get("song_hash") or (song["song_hash"] if song else None)),
                    "listener_address": event.get("listener_address"),
                    "amount": amount,
                    "payment_type": event.get("payment_type", "stream"),
                    "tx_hash": tx_hash,
                    "log_index": log_index,
                    "block_number": event.get("block_number"),
                    "protocol_fee": event.get("protocol_fee"),
                    "net_amount": net_amount,
                    "timestamp": event.get("timestamp") or utcnow(),
                }
            )

            if song is not None:
                song["plays"] += 1
                song["earnings"] += net_amount
            return True

    def list_plays(self, song_id: str, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            plays = [p for p in self._plays if p["song_id"] == song_id]
            plays.sort(key=lambda p: (p["timestamp"], p["id"]), reverse=True)
            result = []
            for play in plays[:limit]:
                out = dict(play)
                out["amount"] = decimal_str(play["amount"])
                out["net_amount"] = decimal_str(play["net_amount"])
                if play["protocol_fee"] is not None:
                    out["protocol_fee"] = decimal_str(play["protocol_fee"])
                out["timestamp"] = play["timestamp"].isoformat()
                result.append(out)
            return result

    # Claims

    def create_claim(self, claim: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            record = {
                "id": next(self._claim_ids),
                "song_id": claim.get("song_id"),
                "artist_address": claim.get("artist_address"),
                "ipfs_hash": claim.get("ipfs_hash"),
                "title": claim.get("title"),
                "artist": claim.get("artist"),
                "tiers": copy.deepcopy(claim.get("tiers") or {}),
                "stream_id": claim.get("stream_id") or f"stream-{uuid.uuid4().hex[:16]}",
                "created_at": utcnow().isoformat(),
            }
            self._claims.append(record)
            return copy.deepcopy(record)

    # Analytics

    def artist_stats(self, artist_address: str) -> dict[str, Any]:
        wanted = artist_address.lower()
        with self._lock:
            songs = [s for s in self._songs.values() if (s.get("artist_address") or "").lower() == wanted]
            return {
                "artist_address": artist_address,
                "totalSongs": len(songs),
                "totalPlays": sum(s["plays"] for s in songs),
                "totalEarnings": decimal_str(sum((s["earnings"] for s in songs), Decimal("0"))),
            }

    def top_songs(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._lock:
            songs = sorted(self._songs.values(), key=lambda s: (s["plays"], s["earnings"]), reverse=True)
            return [self._song_out(s) for s in songs[:limit]]

    def play_totals_by_type(self, days: int) -> list[dict[str, Any]]:
        since = utcnow() - timedelta(days=days)
        totals: dict[str, dict[str, Any]] = {}
        with self._lock:
            for play in self._plays:
                if play["timestamp"] < since:
                    continue
                row = totals.setdefault(play["payment_type"], {"payment_type": play["payment_type"], "plays": 0, "net": 0.0})
                row["plays"] += 1
                row["net"] += float(play["amount"])
        return sorted(totals.values(), key=lambda r: r["payment_type"])

    # Strategy configs

    def save_strategy_config(
        self,
        name: str,
        payload: dict[str, Any],
        config_hash: str,
        admin_signature: str | None = None,
        published: bool = False,
    ) -> dict[str, Any]:
        with self._lock:
            now = utcnow()
            record = {
                "id": next(self._config_ids),
                "name": name,
                "payload": copy.deepcopy(payload),
                "hash": config_hash,
                "admin_signature": admin_signature,
                "published": bool(published),
                "published_at": now.isoformat() if published else None,
                "created_at": now.isoformat(),
            }
            self._configs[record["id"]] = record
            return copy.deepcopy(record)

    def get_strategy_config(self, config_id: int, published_only: bool = True) -> dict[str, Any] | None:
        with self._lock:
            record = self._configs.get(config_id)
            if record is None or (published_only and not record["published"]):
                return None
            return copy.deepcopy(record)

    def latest_strategy_config(self, published_only: bool = True) -> dict[str, Any] | None:
        with self._lock:
            candidates = [c for c in self._configs.values() if c["published"] or not published_only]
            if not candidates:
                return None
            return copy.deepcopy(max(candidates, key=lambda c: c["id"]))

    def list_strategy_configs(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            configs = sorted(self._configs.values(), key=lambda c: c["id"], reverse=True)[:limit]
            return [{k: v for k, v in copy.deepcopy(c).items() if k != "payload"} for c in configs]

    def publish_strategy_config(self, config_id: int, admin_signature: str | None = None) -> dict[str, Any] | None:
        with self._lock:
            record = self._configs.get(config_id)
            if record is None:
                return None
            record["published"] = True
            record["published_at"] = utcnow().isoformat()
            record["admin_signature"] = admin_signature
            return copy.deepcopy(record)

    # Indexer bookkeeping

    def get_checkpoint(self, name: str) -> int | None:
        with self._lock:
            return self._checkpoints.get(name)

    def set_checkpoint(self, name: str, block_number: int) -> None:
        with self._lock:
            self._checkpoints[name] = int(block_number)

    def record_poison(self, item: dict[str, Any]) -> None:
        with self._lock:
            key = (item["tx_hash"].lower(), int(item.get("log_index") or 0))
            existing = self._poison.get(key)
            record = {
                "tx_hash": item["tx_hash"],
                "log_index": key[1],
                "song_hash": item.get("song_hash"),
                "reason": item.get("reason"),
                "attempts": int(item.get("attempts") or 0),
                "block_number": item.get("block_number"),
                "created_at": existing["created_at"] if existing else utcnow().isoformat(),
            }
            self._poison[key] = record

    def list_poison(self, limit: int = 100) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(p) for p in list(self._poison.values())[:limit]]

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info.update(
                {
                    "song_count": len(self._songs),
                    "play_count": len(self._plays),
                    "strategy_config_count": len(self._configs),
                }
            )
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._reset()
