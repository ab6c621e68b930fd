"""
Abstract base class for catalog storage backends.

This module defines the interface that all storage backends must implement,
and the record shapes they exchange (plain dicts with snake_case keys, the
same shapes the API returns).
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from web3 import Web3

SONG_SORT_FIELDS = ("created_at", "plays", "earnings", "title")


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class DuplicateRecordError(StorageWriteError):
    """Raised when a record with the same unique key already exists."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def song_hash_for(song_id: str) -> str:
    """bytes32 on-chain identifier for a song id (keccak256 of the UTF-8 id)."""
    return Web3.to_hex(Web3.keccak(text=song_id)).lower()


def decimal_str(value: Any) -> str:
    """Render a stored numeric as a plain decimal string."""
    if value is None:
        return "0"
    d = value if isinstance(value, Decimal) else Decimal(str(value))
    return format(d.normalize(), "f")


class CatalogStore(ABC):
    """
    Abstract base class for the music catalog.

    Covers songs, plays (payment events), claims, strategy configs and
    indexer bookkeeping. Timestamps are returned as ISO-8601 strings and
    amounts as decimal strings.
    """

    # Songs

    @abstractmethod
    def create_song(self, song: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new song.

        Args:
            song: Song fields; ``id`` is required

        Returns:
            The stored song record

        Raises:
            DuplicateRecordError: If a song with the same id exists
        """
        pass

    @abstractmethod
    def get_song(self, song_id: str) -> dict[str, Any] | None:
        pass

    @abstractmethod
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
        """
        List songs with filtering and sorting.

        ``q`` matches title or artist case-insensitively.

        Returns:
            (page of songs, total matching count)
        """
        pass

    # Plays / payment events

    @abstractmethod
    def record_payment(self, event: dict[str, Any]) -> bool:
        """
        Append a play and update the song's aggregates.

        Events carrying a ``tx_hash`` are unique on ``(tx_hash, log_index)``;
        a repeat is ignored and reported by returning False. Aggregates are
        only updated when a row was actually inserted.

        Returns:
            True if the event was inserted, False if it was a duplicate
        """
        pass

    @abstractmethod
    def list_plays(self, song_id: str, limit: int = 100) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def find_song_by_hash(self, song_hash: str) -> dict[str, Any] | None:
        pass

    # Claims

    @abstractmethod
    def create_claim(self, claim: dict[str, Any]) -> dict[str, Any]:
        pass

    # Analytics

    @abstractmethod
    def artist_stats(self, artist_address: str) -> dict[str, Any]:
        """Song count, total plays and total earnings for an artist wallet."""
        pass

    @abstractmethod
    def top_songs(self, limit: int = 10) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def play_totals_by_type(self, days: int) -> list[dict[str, Any]]:
        """
        Plays and net amount per payment type over the last ``days`` days.

        Returns:
            ``[{payment_type, plays, net}]`` with ``net`` as a float
        """
        pass

    # Strategy configs

    @abstractmethod
    def save_strategy_config(
        self,
        name: str,
        payload: dict[str, Any],
        config_hash: str,
        admin_signature: str | None = None,
        published: bool = False,
    ) -> dict[str, Any]:
        pass

    @abstractmethod
    def get_strategy_config(self, config_id: int, published_only: bool = True) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def latest_strategy_config(self, published_only: bool = True) -> dict[str, Any] | None:
        pass

    @abstractmethod
    def list_strategy_configs(self, limit: int = 50) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def publish_strategy_config(self, config_id: int, admin_signature: str | None = None) -> dict[str, Any] | None:
        """Mark a config published. Returns the updated record or None if missing."""
        pass

    # Indexer bookkeeping

    @abstractmethod
    def get_checkpoint(self, name: str) -> int | None:
        pass

    @abstractmethod
    def set_checkpoint(self, name: str, block_number: int) -> None:
        pass

    @abstractmethod
    def record_poison(self, item: dict[str, Any]) -> None:
        """Upsert a failed event on ``(tx_hash, log_index)``."""
        pass

    @abstractmethod
    def list_poison(self, limit: int = 100) -> list[dict[str, Any]]:
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def close(self) -> None:
        """
        Close the storage connection and release resources.

        Default implementation does nothing - backends with connections
        should override this.
        """
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
