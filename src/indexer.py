"""
Payment event indexer.

Pulls ``PaymentRecorded`` events from the payment router contract in block
chunks and writes them to the catalog as plays. Ingestion is idempotent on
``(tx_hash, log_index)``, so replaying a block range never double counts.

Events that fail to store are kept in a retry queue; after
``retry_limit`` failed retries they are written to the poison list for
manual inspection.

Usage:
    from indexer import PaymentIndexer

    indexer = PaymentIndexer.from_config(config, store)
    indexer.run_forever()

or as a process: ``mycelix-indexer`` (see ``run_indexer``).
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from web3 import Web3

from config import AppConfig
from errors import MycelixError, ValidationError
from monitoring import configure_logging
from revenue_split import PaymentType
from storage import get_storage_backend
from storage.base import CatalogStore, StorageError

logger = logging.getLogger(__name__)

CHECKPOINT_NAME = "router"

IDLE_SLEEP_SECONDS = 1.0
ERROR_SLEEP_SECONDS = 3.0

PAYMENT_RECORDED_SIGNATURE = "PaymentRecorded(bytes32,address,uint256,uint256,uint256,uint8)"

PAYMENT_RECORDED_ABI = {
    "anonymous": False,
    "name": "PaymentRecorded",
    "type": "event",
    "inputs": [
        {"indexed": True, "name": "songId", "type": "bytes32"},
        {"indexed": True, "name": "listener", "type": "address"},
        {"indexed": False, "name": "grossAmount", "type": "uint256"},
        {"indexed": False, "name": "protocolFee", "type": "uint256"},
        {"indexed": False, "name": "netAmount", "type": "uint256"},
        {"indexed": False, "name": "paymentType", "type": "uint8"},
    ],
}

_TX_HASH_LENGTH = 66


class IndexerConfigurationError(MycelixError):
    """Raised when chain access is needed but no RPC or router is configured."""

    status_code = 503
    error_code = "indexer_unconfigured"


# =============================================================================
# Events
# =============================================================================


def _wei(value: Any, field_name: str) -> int:
    """Parse a wei amount (int or decimal string) into an int."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer wei amount")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"{field_name} must be an integer wei amount")
    if result < 0:
        raise ValidationError(f"{field_name} must not be negative")
    return result


def _payment_type_label(code: int) -> str:
    try:
        return PaymentType(int(code)).label
    except ValueError:
        return PaymentType.STREAM.label


@dataclass
class PaymentEvent:
    """
    One decoded ``PaymentRecorded`` log.

    Amounts are kept in wei; ``to_play`` converts them to ether for storage.
    """

    tx_hash: str
    log_index: int
    block_number: int | None
    song_hash: str
    listener: str
    gross_wei: int
    protocol_fee_wei: int = 0
    net_wei: int | None = None
    payment_type: int = PaymentType.STREAM.value

    @property
    def key(self) -> tuple[str, int]:
        return self.tx_hash.lower(), self.log_index

    @classmethod
    def from_log(cls, log: Any) -> "PaymentEvent":
        """Build from a web3 decoded event (``process_log`` output)."""
        args = log["args"]
        return cls(
            tx_hash=Web3.to_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            block_number=int(log["blockNumber"]),
            song_hash=Web3.to_hex(args["songId"]).lower(),
            listener=args["listener"],
            gross_wei=int(args["grossAmount"]),
            protocol_fee_wei=int(args["protocolFee"]),
            net_wei=int(args["netAmount"]),
            payment_type=int(args["paymentType"]),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentEvent":
        """
        Build from a JSON event record.

        Accepts snake_case or camelCase keys; ``amount_wei``/``grossAmount``
        and the fee fields are integer wei (number or decimal string).
        """
        if not isinstance(data, dict):
            raise ValidationError("Each event must be an object")

        tx_hash = data.get("tx_hash", data.get("txHash"))
        if not isinstance(tx_hash, str) or len(tx_hash) != _TX_HASH_LENGTH or not tx_hash.startswith("0x"):
            raise ValidationError("tx_hash must be a 0x-prefixed 32-byte hex string")

        song_hash = data.get("song_hash", data.get("songId", data.get("song_id")))
        if not isinstance(song_hash, str) or not song_hash:
            raise ValidationError("song_hash is required")

        listener = data.get("listener_address", data.get("listener"))
        if not isinstance(listener, str) or not Web3.is_address(listener):
            raise ValidationError("listener_address must be an address")

        log_index = data.get("log_index", data.get("logIndex", 0))
        block_number = data.get("block_number", data.get("blockNumber"))
        try:
            log_index = int(log_index)
            block_number = int(block_number) if block_number is not None else None
        except (TypeError, ValueError):
            raise ValidationError("log_index and block_number must be integers")

        gross = _wei(data.get("amount_wei", data.get("grossAmount")), "amount_wei")
        fee = _wei(data.get("protocol_fee_wei", data.get("protocolFee", 0)), "protocol_fee_wei")
        net_raw = data.get("net_amount_wei", data.get("netAmount"))
        net = _wei(net_raw, "net_amount_wei") if net_raw is not None else None

        return cls(
            tx_hash=tx_hash,
            log_index=log_index,
            block_number=block_number,
            song_hash=song_hash.lower(),
            listener=listener,
            gross_wei=gross,
            protocol_fee_wei=fee,
            net_wei=net,
            payment_type=PaymentType.parse(data.get("payment_type", data.get("paymentType", 0))).value,
        )

    def to_play(self) -> dict[str, Any]:
        """Play record in ether units, as stored by ``CatalogStore.record_payment``."""
        net_wei = self.net_wei if self.net_wei is not None else self.gross_wei - self.protocol_fee_wei
        return {
            "song_hash": self.song_hash,
            "listener_address": self.listener,
            "amount": Decimal(Web3.from_wei(self.gross_wei, "ether")),
            "protocol_fee": Decimal(Web3.from_wei(self.protocol_fee_wei, "ether")),
            "net_amount": Decimal(Web3.from_wei(net_wei, "ether")),
            "payment_type": _payment_type_label(self.payment_type),
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
        }


@dataclass
class RetryItem:
    event: PaymentEvent
    reason: str
    attempts: int = 1


@dataclass
class IngestResult:
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "failures": self.failures,
            "total": self.inserted + self.duplicates + self.failed,
        }


# =============================================================================
# Indexer
# =============================================================================


class PaymentIndexer:
    """
    Chunked, idempotent ingestion of router payment events.

    Args:
        store: Catalog the plays are written to
        web3: Connected Web3 instance (only needed for chain reads)
        router_address: Payment router contract address
        chunk_size: Blocks fetched per ``get_logs`` call
        start_block: First block when no checkpoint exists (default: head)
        retry_limit: Retries before an event is moved to the poison list
    """

    def __init__(
        self,
        store: CatalogStore,
        web3: Web3 | None = None,
        router_address: str | None = None,
        chunk_size: int = 2000,
        start_block: int | None = None,
        retry_limit: int = 3,
    ):
        self.store = store
        self.web3 = web3
        self.router_address = Web3.to_checksum_address(router_address) if router_address else None
        self.chunk_size = max(1, chunk_size)
        self.start_block = start_block
        self.retry_limit = retry_limit
        self.retry_queue: list[RetryItem] = []
        self._contract = None

    @classmethod
    def from_config(cls, config, store: CatalogStore) -> "PaymentIndexer":
        web3 = Web3(Web3.HTTPProvider(config.rpc_url)) if config.rpc_url else None
        return cls(
            store,
            web3=web3,
            router_address=config.router_address,
            chunk_size=config.indexer_chunk_size,
            start_block=config.indexer_start_block,
            retry_limit=config.indexer_retry_limit,
        )

    @property
    def chain_configured(self) -> bool:
        return self.web3 is not None and self.router_address is not None

    def _require_chain(self):
        if not self.chain_configured:
            raise IndexerConfigurationError("RPC_URL and ROUTER_ADDRESS are required for chain reads")
        if self._contract is None:
            self._contract = self.web3.eth.contract(address=self.router_address, abi=[PAYMENT_RECORDED_ABI])
        return self._contract

    # Storage

    def upsert(self, event: PaymentEvent) -> bool:
        """Store one event. Returns False when it was already recorded."""
        return self.store.record_payment(event.to_play())

    def ingest(self, events: list[PaymentEvent]) -> IngestResult:
        """Store a batch; failures go to the retry queue instead of aborting the batch."""
        result = IngestResult()
        for event in events:
            try:
                inserted = self.upsert(event)
            except StorageError as e:
                self.enqueue_retry(event, str(e))
                result.failed += 1
                result.failures.append({"tx_hash": event.tx_hash, "log_index": event.log_index, "reason": str(e)})
                continue
            if inserted:
                result.inserted += 1
            else:
                result.duplicates += 1
        return result

    def enqueue_retry(self, event: PaymentEvent, reason: str) -> None:
        for item in self.retry_queue:
            if item.event.key == event.key:
                item.attempts += 1
                item.reason = reason
                return
        self.retry_queue.append(RetryItem(event, reason))
        logger.warning(
            "Payment event queued for retry",
            extra={"tx_hash": event.tx_hash, "log_index": event.log_index, "reason": reason},
        )

    def process_retries(self) -> dict[str, int]:
        """Retry queued events once; move those past the retry limit to the poison list."""
        retried = poisoned = 0
        remaining = []
        for item in self.retry_queue:
            try:
                self.upsert(item.event)
                retried += 1
                continue
            except StorageError as e:
                item.attempts += 1
                item.reason = str(e)

            if item.attempts > self.retry_limit:
                self._poison(item)
                poisoned += 1
            else:
                remaining.append(item)
        self.retry_queue = remaining
        return {"retried": retried, "poisoned": poisoned, "pending": len(remaining)}

    def _poison(self, item: RetryItem) -> None:
        logger.error(
            "Payment event moved to poison list",
            extra={
                "tx_hash": item.event.tx_hash,
                "log_index": item.event.log_index,
                "attempts": item.attempts,
                "reason": item.reason,
            },
        )
        self.store.record_poison(
            {
                "tx_hash": item.event.tx_hash,
                "log_index": item.event.log_index,
                "song_hash": item.event.song_hash,
                "reason": item.reason,
                "attempts": item.attempts,
                "block_number": item.event.block_number,
            }
        )

    # Chain reads

    def fetch_events(self, from_block: int, to_block: int) -> list[PaymentEvent]:
        contract = self._require_chain()
        topic = Web3.to_hex(Web3.keccak(text=PAYMENT_RECORDED_SIGNATURE))
        logs = self.web3.eth.get_logs(
            {
                "address": self.router_address,
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [topic],
            }
        )
        event_type = contract.events.PaymentRecorded()
        return [PaymentEvent.from_log(event_type.process_log(log)) for log in logs]

    def next_block(self) -> int:
        """First block still to index: checkpoint + 1, else the configured start, else head."""
        checkpoint = self.store.get_checkpoint(CHECKPOINT_NAME)
        if checkpoint is not None:
            return checkpoint + 1
        if self.start_block is not None:
            return self.start_block
        self._require_chain()
        return self.web3.eth.block_number

    def run_once(self) -> dict[str, Any] | None:
        """
        Index one chunk.

        Returns:
            Summary of the chunk, or None when already at the chain head
        """
        self._require_chain()
        from_block = self.next_block()
        head = self.web3.eth.block_number
        if from_block > head:
            return None

        to_block = min(head, from_block + self.chunk_size)
        events = self.fetch_events(from_block, to_block)
        result = self.ingest(events)
        retries = self.process_retries()
        self.store.set_checkpoint(CHECKPOINT_NAME, to_block)

        summary = {
            "from_block": from_block,
            "to_block": to_block,
            "lag": max(0, head - to_block),
            **result.to_dict(),
            "retries": retries,
        }
        logger.info("Indexed block range", extra={k: v for k, v in summary.items() if k != "failures"})
        return summary

    def replay(self, from_block: int, to_block: int) -> dict[str, Any]:
        """Re-ingest a block range without moving the checkpoint."""
        if from_block < 0 or from_block > to_block:
            raise ValidationError("Invalid block range", error_code="invalid_block_range")
        events = self.fetch_events(from_block, to_block)
        result = self.ingest(events)
        return {"scanned": len(events), **result.to_dict()}

    def run_forever(self, max_iterations: int | None = None, sleep: Callable[[float], None] = time.sleep) -> int:
        """
        Poll the chain until stopped.

        Sleeps ``IDLE_SLEEP_SECONDS`` at the head and ``ERROR_SLEEP_SECONDS``
        after a failed chunk; the checkpoint only moves on success, so a
        failed chunk is fetched again.

        Args:
            max_iterations: Stop after this many polls (None = run forever)
            sleep: Sleep function, replaceable in tests

        Returns:
            Number of polls made
        """
        self._require_chain()
        logger.info(
            "Indexer started",
            extra={"router": self.router_address, "from_block": self.next_block()},
        )

        iterations = 0
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            try:
                summary = self.run_once()
            except Exception as e:
                logger.error("Indexer poll failed: %s", e)
                sleep(ERROR_SLEEP_SECONDS)
                continue
            if summary is None:
                if self.retry_queue:
                    self.process_retries()
                sleep(IDLE_SLEEP_SECONDS)
        return iterations


def run_indexer():
    """Run the chain indexer as a standalone process."""
    config = AppConfig.from_env()
    configure_logging()
    store = get_storage_backend(config.storage_backend, config.database_url)
    indexer = PaymentIndexer.from_config(config, store)
    try:
        indexer.run_forever()
    except KeyboardInterrupt:
        logger.info("Indexer stopped")
    finally:
        store.close()


if __name__ == "__main__":
    run_indexer()
