"""Web3-backed chain source: historical logs, new blocks and live logs.

Implements :class:`core.ports.ChainSource` over JSON-RPC HTTP providers.
Subscriptions are served by polling threads, not websocket filters:
private and public HTTP endpoints are the common denominator, and
``eth_getLogs`` over an explicit block range cannot silently drop a log
the way an expired server-side filter can.

Threads:
    - ``block-poller`` — polls ``eth_getBlockByNumber("latest")`` every
      ``poll_interval_seconds`` and invokes block callbacks once per new
      head.
    - ``log-poller`` — for every event subscription, fetches logs from
      the block after the last one covered up to the head.

Both loops back off exponentially with jitter on RPC errors and reset
to the normal poll interval after the next success. They only exit on
shutdown.

Log continuity:
    The first live log poll starts right after the last block covered by
    :meth:`Web3ChainSource.query_events`, so catch-up followed by
    subscription leaves no gap.

Callback isolation:
    Each callback runs inside its own ``try/except``; a failing callback
    is logged and counted and never stops the poller.
"""

import logging
import random
import threading
from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field
from web3 import Web3

from core.events import BlockRef
from core.ports import BlockCallback, LogCallback, RawLog

logger: logging.Logger = logging.getLogger(__name__)

JOB_DATA_FEED_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "dataFeed",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]
"""Minimal job ABI for resolving the data-feed contract."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ChainSourceState(str, Enum):
    """Lifecycle of :class:`Web3ChainSource`.

    States:
        INIT: Created, no subscription yet.
        RUNNING: At least one polling thread started.
        SHUTDOWN: ``shutdown()`` called. Terminal.
    """

    INIT = "INIT"
    RUNNING = "RUNNING"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ChainSourceConfig(BaseModel):
    """Configuration for :class:`Web3ChainSource`.

    Attributes:
        rpc_url: Main JSON-RPC HTTP endpoint.
        logs_rpc_url: Endpoint for ``eth_getLogs``. Archive-friendly
            providers are often different from the main one. ``None``
            uses ``rpc_url``.
        request_timeout_seconds: HTTP request timeout.
        poll_interval_seconds: Head polling interval. Default 4 seconds
            (a third of a mainnet slot).
        log_chunk_blocks: Maximum block span of one ``eth_getLogs`` call.
        backoff_min_delay: First delay after an RPC error.
        backoff_max_delay: Cap for the exponential backoff.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rpc_url: str = Field(description="Main JSON-RPC HTTP endpoint")
    logs_rpc_url: str | None = Field(
        default=None,
        description="Endpoint for eth_getLogs; None uses rpc_url",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    poll_interval_seconds: float = Field(default=4.0, gt=0.0)
    log_chunk_blocks: int = Field(default=2_000, gt=0)
    backoff_min_delay: float = Field(default=1.0, ge=0.1)
    backoff_max_delay: float = Field(default=30.0, ge=1.0)


# ---------------------------------------------------------------------------
# Chain Source
# ---------------------------------------------------------------------------


class Web3ChainSource:
    """Polling :class:`core.ports.ChainSource` over web3 HTTP providers.

    Args:
        config: Endpoint and polling configuration.
        web3: Pre-built client for the main endpoint. Injectable for tests.
        logs_web3: Pre-built client for the logs endpoint.

    Example::

        source = Web3ChainSource(ChainSourceConfig(rpc_url=url))
        data_feed = source.resolve_data_feed(job_address)
        source.subscribe_blocks(on_block)
        # ... receive blocks ...
        source.shutdown()
    """

    def __init__(
        self,
        config: ChainSourceConfig,
        web3: Web3 | None = None,
        logs_web3: Web3 | None = None,
    ) -> None:
        self._config: ChainSourceConfig = config
        self._web3: Web3 = web3 or self._connect(config.rpc_url)
        if logs_web3 is not None:
            self._logs_web3: Web3 = logs_web3
        elif config.logs_rpc_url and config.logs_rpc_url != config.rpc_url:
            self._logs_web3 = self._connect(config.logs_rpc_url)
        else:
            self._logs_web3 = self._web3

        # Subscription registries
        self._block_callbacks: list[BlockCallback] = []
        self._log_subscriptions: list[tuple[dict[str, Any], LogCallback]] = []
        self._sub_lock: threading.Lock = threading.Lock()

        # Log continuity: last block covered by query_events / log polling
        self._last_log_block: int | None = None
        self._last_head: int | None = None

        # State machine
        self._state: ChainSourceState = ChainSourceState.INIT
        self._state_lock: threading.Lock = threading.Lock()
        self._shutdown_event: threading.Event = threading.Event()
        self._threads: dict[str, threading.Thread] = {}

        # Counters
        self._blocks_delivered: int = 0
        self._logs_delivered: int = 0
        self._callback_errors: int = 0
        self._rpc_errors: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    def _connect(self, url: str) -> Web3:
        return Web3(
            Web3.HTTPProvider(
                url,
                request_kwargs={"timeout": self._config.request_timeout_seconds},
            ),
        )

    @property
    def web3(self) -> Web3:
        """Client for the main endpoint, shared with oracle and channels."""
        return self._web3

    @property
    def state(self) -> ChainSourceState:
        with self._state_lock:
            return self._state

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def resolve_data_feed(self, job_address: str) -> str:
        """Read the data-feed address from the job contract."""
        job = self._web3.eth.contract(
            address=Web3.to_checksum_address(job_address),
            abi=JOB_DATA_FEED_ABI,
        )
        data_feed: str = Web3.to_checksum_address(job.functions.dataFeed().call())
        logger.info("Resolved data feed %s from job %s", data_feed, job_address)
        return data_feed

    def get_latest_block(self) -> BlockRef:
        """Return the current head block."""
        block: Mapping[str, Any] = self._web3.eth.get_block("latest")
        return _block_ref(block)

    def query_events(
        self,
        event_filter: Mapping[str, Any],
        from_block: int,
        to_block: int | None = None,
    ) -> list[RawLog]:
        """Fetch logs matching ``event_filter`` in ``[from_block, to_block]``.

        The range is split into ``log_chunk_blocks``-sized requests.
        Results are in ascending ``(blockNumber, logIndex)`` order.

        Args:
            event_filter: ``address`` / ``topics`` filter.
            from_block: First block (inclusive).
            to_block: Last block (inclusive). Defaults to the head.

        Returns:
            Raw logs as returned by ``eth_getLogs``.
        """
        end: int = to_block if to_block is not None else self._web3.eth.block_number
        logs: list[RawLog] = []
        start: int = from_block
        while start <= end:
            chunk_end: int = min(start + self._config.log_chunk_blocks - 1, end)
            params: dict[str, Any] = {
                **event_filter,
                "fromBlock": start,
                "toBlock": chunk_end,
            }
            chunk: list[RawLog] = list(self._logs_web3.eth.get_logs(params))
            logger.debug(
                "Fetched %d logs in blocks %d-%d", len(chunk), start, chunk_end,
            )
            logs.extend(chunk)
            start = chunk_end + 1

        with self._sub_lock:
            if self._last_log_block is None or end > self._last_log_block:
                self._last_log_block = end
        return logs

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_blocks(self, callback: BlockCallback) -> None:
        """Invoke ``callback`` once for every new head block."""
        with self._sub_lock:
            self._block_callbacks.append(callback)
        self._ensure_thread("block-poller", self._block_loop)

    def subscribe_events(
        self,
        event_filter: Mapping[str, Any],
        callback: LogCallback,
    ) -> None:
        """Invoke ``callback`` for every new log matching ``event_filter``."""
        with self._sub_lock:
            self._log_subscriptions.append((dict(event_filter), callback))
        self._ensure_thread("log-poller", self._log_loop)

    def shutdown(self) -> None:
        """Stop polling threads. Idempotent."""
        with self._state_lock:
            if self._state == ChainSourceState.SHUTDOWN:
                return
            self._state = ChainSourceState.SHUTDOWN

        logger.info("Shutting down chain source")
        self._shutdown_event.set()
        for thread in self._threads.values():
            thread.join(timeout=self._config.request_timeout_seconds)

        stats: dict[str, str | int | None] = self.stats()
        logger.info(
            "Chain source shut down (blocks=%d, logs=%d, callback_errors=%d, "
            "rpc_errors=%d)",
            stats["blocks_delivered"],
            stats["logs_delivered"],
            stats["callback_errors"],
            stats["rpc_errors"],
        )

    def stats(self) -> dict[str, str | int | None]:
        """Return state, counters and the last head seen."""
        with self._counter_lock:
            counters: dict[str, int] = {
                "blocks_delivered": self._blocks_delivered,
                "logs_delivered": self._logs_delivered,
                "callback_errors": self._callback_errors,
                "rpc_errors": self._rpc_errors,
            }
        return {
            "state": self.state.value,
            "last_head": self._last_head,
            **counters,
        }

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _ensure_thread(self, name: str, target: Any) -> None:
        with self._state_lock:
            if self._state == ChainSourceState.SHUTDOWN:
                raise RuntimeError("Cannot subscribe: chain source is shut down")
            self._state = ChainSourceState.RUNNING
            if name in self._threads:
                return
            thread: threading.Thread = threading.Thread(
                target=target, daemon=True, name=name,
            )
            self._threads[name] = thread
        thread.start()
        logger.info("Started %s (interval=%.1fs)", name, self._config.poll_interval_seconds)

    def _block_loop(self) -> None:
        self._poll_forever(self.poll_blocks_once)

    def _log_loop(self) -> None:
        self._poll_forever(self.poll_logs_once)

    def _poll_forever(self, poll_once: Any) -> None:
        """Run ``poll_once`` until shutdown, with backoff on errors."""
        delay: float = self._config.backoff_min_delay
        wait: float = 0.0
        while not self._shutdown_event.wait(timeout=wait):
            try:
                poll_once()
                delay = self._config.backoff_min_delay
                wait = self._config.poll_interval_seconds
            except Exception:
                with self._counter_lock:
                    self._rpc_errors += 1
                logger.exception("Chain poll failed (retry in ~%.1fs)", delay)
                wait = delay * random.uniform(0.8, 1.2)
                delay = min(delay * 2, self._config.backoff_max_delay)

    def poll_blocks_once(self) -> bool:
        """Fetch the head and notify block callbacks if it is new.

        Returns:
            ``True`` if a new block was delivered.
        """
        block: BlockRef = self.get_latest_block()
        if self._last_head is not None and block.number <= self._last_head:
            return False
        if self._last_head is not None and block.number > self._last_head + 1:
            logger.debug(
                "Skipped %d blocks between polls",
                block.number - self._last_head - 1,
            )
        self._last_head = block.number

        with self._sub_lock:
            callbacks: list[BlockCallback] = list(self._block_callbacks)
        with self._counter_lock:
            self._blocks_delivered += 1
        for callback in callbacks:
            try:
                callback(block)
            except Exception:
                with self._counter_lock:
                    self._callback_errors += 1
                logger.exception("Block callback error at block %d", block.number)
        return True

    def poll_logs_once(self) -> int:
        """Fetch logs since the last covered block and notify callbacks.

        Returns:
            Number of logs delivered.
        """
        head: int = self._web3.eth.block_number
        with self._sub_lock:
            subscriptions: list[tuple[dict[str, Any], LogCallback]] = list(
                self._log_subscriptions,
            )
            last: int | None = self._last_log_block
        if last is None:
            # Nothing covered yet: start from the head
            with self._sub_lock:
                self._last_log_block = head
            return 0
        if head <= last:
            return 0

        delivered: int = 0
        for event_filter, callback in subscriptions:
            raw_logs: list[RawLog] = self.query_events(event_filter, last + 1, head)
            for raw_log in raw_logs:
                delivered += 1
                try:
                    callback(raw_log)
                except Exception:
                    with self._counter_lock:
                        self._callback_errors += 1
                    logger.exception(
                        "Log callback error (block=%s index=%s)",
                        raw_log.get("blockNumber"),
                        raw_log.get("logIndex"),
                    )

        with self._sub_lock:
            self._last_log_block = max(self._last_log_block or head, head)
        with self._counter_lock:
            self._logs_delivered += delivered
        return delivered


def _block_ref(block: Mapping[str, Any]) -> BlockRef:
    block_hash: Any = block.get("hash") or ""
    if isinstance(block_hash, (bytes, bytearray)):
        block_hash = "0x" + bytes(block_hash).hex()
    base_fee: Any = block.get("baseFeePerGas")
    return BlockRef(
        number=int(block["number"]),
        hash=block_hash,
        timestamp=int(block.get("timestamp") or 0),
        base_fee_per_gas=int(base_fee) if base_fee is not None else None,
    )
