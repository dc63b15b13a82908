"""Interfaces of the external collaborators the core consumes.

The core never constructs providers, signers or relays itself. The
pipeline controller receives implementations of these protocols at
construction time, which keeps every network-bound suspension point
(event/block fetch, oracle read, broadcast) behind an injectable seam.
``infra`` provides the web3-backed implementations; tests use mocks.
"""

from typing import Any, Callable, Mapping, Protocol, Sequence

from core.events import BlockRef, TxReceiptRef, WorkRequest

RawLog = Mapping[str, Any]
"""A raw chain log as returned by ``eth_getLogs`` (``topics``, ``data``, ...)."""

BlockCallback = Callable[[BlockRef], None]
"""Callback signature for new blocks: ``(block) -> None``."""

LogCallback = Callable[[RawLog], None]
"""Callback signature for new logs: ``(raw_log) -> None``."""


class ChainSource(Protocol):
    """Supplies historical and live events and current block metadata."""

    def get_latest_block(self) -> BlockRef: ...

    def query_events(
        self,
        event_filter: Mapping[str, Any],
        from_block: int,
    ) -> Sequence[RawLog]: ...

    def subscribe_blocks(self, callback: BlockCallback) -> None: ...

    def subscribe_events(
        self,
        event_filter: Mapping[str, Any],
        callback: LogCallback,
    ) -> None: ...

    def shutdown(self) -> None: ...


class SequenceOracle(Protocol):
    """Supplies the last sequence already confirmed on a target."""

    def get_last_confirmed_sequence(self, target_id: int, pool_id: str) -> int:
        """Raises :class:`core.errors.OracleReadError` on failure."""
        ...


class BroadcastChannel(Protocol):
    """Accepts a work call and either confirms inclusion or fails.

    Implementations raise :class:`core.errors.BroadcastFailure` (or any
    other exception, which the adapter treats identically) when the
    submission does not land. Timeouts are the channel's responsibility.
    """

    def submit(
        self,
        target_contract: str,
        method_signature: str,
        args: Sequence[Any],
        block: BlockRef,
    ) -> TxReceiptRef: ...


class DeadLetterSink(Protocol):
    """Append-only store for requests that exhausted their retries."""

    def record(self, work_request: WorkRequest, final_attempt_count: int) -> None: ...


class PoolRegistry(Protocol):
    """Supplies the pools the data feed currently whitelists."""

    def get_whitelisted_pools(self) -> list[str]:
        """Return ``bytes32`` pool ids as ``0x`` hex strings."""
        ...
