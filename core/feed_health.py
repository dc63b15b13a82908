"""Block stream liveness monitor.

Live mode is driven entirely by new blocks: every block starts a cycle,
refreshes target state and re-evaluates the observation backlog. If the
block subscription silently stops delivering, nothing gets dispatched and
nothing fails loudly. :class:`StreamHealthMonitor` detects that case.

Uses monotonic timestamps (``time.perf_counter_ns()``) only, never wall
clock, so NTP adjustments cannot raise false alerts.

Startup-aware state:
    Before the first block is seen, :meth:`StreamHealthMonitor.is_stalled`
    returns ``False`` (unknown, not stalled). Use
    :meth:`StreamHealthMonitor.has_ever_received` to tell the two apart.

Thread safety:
    Written by the block subscription thread, read by the controller's
    watchdog thread. Single writer; reads of the two ``int`` fields are
    atomic in CPython and only need to be eventually consistent.

Example:
    >>> monitor = StreamHealthMonitor(
    ...     config=StreamHealthConfig(max_block_gap_seconds=60.0),
    ... )
    >>> monitor.on_block(19_000_000)
    >>> monitor.is_stalled()
    False
    >>> monitor.last_block_number
    19000000
"""

import time

from pydantic import BaseModel, ConfigDict, Field


class StreamHealthConfig(BaseModel):
    """Configuration for :class:`StreamHealthMonitor`.

    Attributes:
        max_block_gap_seconds: Silence after which the block stream is
            considered stalled. Default 120 seconds (ten mainnet slots).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_block_gap_seconds: float = Field(
        default=120.0,
        gt=0.0,
        description="Block silence (seconds) before the stream is stalled.",
    )


class StreamHealthMonitor:
    """Tracks the last block seen and flags a stalled block stream.

    Args:
        config: Monitor configuration.
    """

    __slots__ = (
        "_config",
        "_max_gap_ns",
        "_last_block_mono_ns",
        "_last_block_number",
        "_blocks_seen",
    )

    def __init__(self, config: StreamHealthConfig | None = None) -> None:
        self._config: StreamHealthConfig = config or StreamHealthConfig()
        self._max_gap_ns: int = int(
            self._config.max_block_gap_seconds * 1_000_000_000,
        )

        # None = no block received yet (startup-aware)
        self._last_block_mono_ns: int | None = None
        self._last_block_number: int | None = None
        self._blocks_seen: int = 0

    def on_block(self, number: int, now_ns: int | None = None) -> None:
        """Record that block ``number`` arrived.

        Args:
            number: Block number.
            now_ns: Optional pre-captured ``time.perf_counter_ns()``.
        """
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        self._last_block_mono_ns = now
        self._last_block_number = number
        self._blocks_seen += 1

    def is_stalled(self, now_ns: int | None = None) -> bool:
        """Whether no block has arrived for longer than the max gap.

        Returns ``False`` before the first block.
        """
        if self._last_block_mono_ns is None:
            return False
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        return max(0, now - self._last_block_mono_ns) > self._max_gap_ns

    def has_ever_received(self) -> bool:
        return self._last_block_mono_ns is not None

    def seconds_since_last_block(self, now_ns: int | None = None) -> float | None:
        """Seconds since the last block, or ``None`` before the first."""
        if self._last_block_mono_ns is None:
            return None
        now: int = now_ns if now_ns is not None else time.perf_counter_ns()
        return max(0, now - self._last_block_mono_ns) / 1_000_000_000

    @property
    def last_block_number(self) -> int | None:
        return self._last_block_number

    @property
    def blocks_seen(self) -> int:
        return self._blocks_seen
