"""Pipeline controller: catch-up and live relay of pool observations.

Wires the normalizer, sequence gate, dispatcher, broadcast adapter and
retry queue around three injected collaborators (chain source, sequence
oracle, broadcast channel) and a dead-letter sink::

    ChainSource ─► EventNormalizer ─► backlog ─┬─► (block tick) dispatch_batch
                                               └─► (live event) dispatch
                                                        │
                        SequenceGate ◄── TargetStateCache (per block)
                                                        │
                 BroadcastAdapter ─► confirmed | RetryQueue ─► dead-letter

Run modes:
    - **Catch-up** (:meth:`PipelineController.catch_up`) — once at start.
      Reads every observation in the last ``history_depth_blocks`` blocks,
      sorts by ``(sequence, pool, arrival)`` and adds them to the backlog.
      They are dispatched on the next block tick, batched with live
      traffic.
    - **Live** — each new block (:meth:`PipelineController.on_block`)
      starts a cycle: a fresh :class:`TargetStateCache` replaces the old
      one and the whole backlog is re-evaluated. Each new event
      (:meth:`PipelineController.on_raw_log`) is deduplicated, added to
      the backlog and dispatched immediately against the current cycle.

Backlog:
    The backlog is the ingestion-side dedup set, keyed by observation
    identity ``(pool_id, sequence)``. Held observations stay in it and
    are retried on later cycles. An observation is pruned once it is
    stale on every target, or once it is older than the history window.
    Pruning an observation also releases its dead-lettered requests in
    the retry queue; until then an exhausted request is not dispatched
    again.

Threading:
    - Block subscription thread: records the block for health and hands
      it to the cycle worker, then returns. A block that arrives while a
      cycle is still running replaces any block already waiting, so the
      worker always runs the newest block and the subscription thread is
      never held up by a slow submission.
    - Block cycle thread: runs block cycles one at a time.
    - Event subscription thread: decode + backlog insert, then hands the
      observation to a bounded queue.
    - ``event_workers`` threads: consume the queue and dispatch.
    - Retry timer thread (owned by :class:`RetryQueue`).
    - Watchdog thread: block stream stall detection.
"""

import logging
import queue
import threading
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from core.broadcast import BroadcastAdapter, BroadcastConfig
from core.dispatcher import DispatcherConfig, DispatchReport, WorkDispatcher
from core.errors import OracleReadError
from core.events import BlockRef, Observation, PoolKey, WorkRequest
from core.feed_health import StreamHealthConfig, StreamHealthMonitor
from core.normalizer import POOL_OBSERVED_TOPIC, EventNormalizer
from core.ports import BroadcastChannel, ChainSource, DeadLetterSink, RawLog, SequenceOracle
from core.retry_queue import RetryQueue, RetryQueueConfig, RetryQueueStats
from core.sequence_gate import SequenceGate, SequenceGateConfig, TargetStateCache

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PipelineState(str, Enum):
    """Lifecycle of :class:`PipelineController`.

    States:
        INIT: Created, ``start()`` not yet called.
        RUNNING: Subscriptions and workers active.
        SHUTDOWN: ``shutdown()`` called. Terminal.
    """

    INIT = "INIT"
    RUNNING = "RUNNING"
    SHUTDOWN = "SHUTDOWN"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class PipelineConfig(BaseModel):
    """Configuration for :class:`PipelineController`.

    Attributes:
        data_feed_address: Data-feed contract emitting ``PoolObserved``.
        broadcast: Job contract and fee settings.
        dispatcher: Target list and fan-out pool size.
        gate: Sequence gate policy.
        retry: Retry cadence and limits.
        health: Block stream stall threshold.
        history_depth_blocks: Catch-up window and backlog age limit.
            Default 14,400 blocks (about 2 days on mainnet).
        event_queue_size: Bound of the live event queue.
        event_workers: Threads dispatching live events.
        watchdog_interval_seconds: Stall check interval.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    data_feed_address: str
    broadcast: BroadcastConfig
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    gate: SequenceGateConfig = Field(default_factory=SequenceGateConfig)
    retry: RetryQueueConfig = Field(default_factory=RetryQueueConfig)
    health: StreamHealthConfig = Field(default_factory=StreamHealthConfig)
    history_depth_blocks: int = Field(default=14_400, ge=0)
    event_queue_size: int = Field(default=10_000, gt=0)
    event_workers: int = Field(default=4, gt=0)
    watchdog_interval_seconds: float = Field(default=15.0, gt=0.0)


class PipelineStats(BaseModel):
    """Immutable snapshot of pipeline statistics."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    state: PipelineState
    cycles: int = Field(ge=0)
    last_block_number: int | None
    backlog_size: int = Field(ge=0)
    events_decoded: int = Field(ge=0)
    events_dropped: int = Field(ge=0)
    events_deferred: int = Field(ge=0)
    blocks_coalesced: int = Field(default=0, ge=0)
    dispatch_totals: DispatchReport
    retry: RetryQueueStats


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PipelineController:
    """Composes catch-up and live relay over injected collaborators.

    Args:
        config: Pipeline configuration.
        chain_source: Event and block source.
        oracle: Sequence oracle for target state.
        channel: Broadcast channel for work submissions.
        dead_letter: Sink for requests that exhausted retries.

    Example:
        >>> controller = PipelineController(
        ...     config=config,
        ...     chain_source=Web3ChainSource(...),
        ...     oracle=JobContractOracle(...),
        ...     channel=PrivateRelayChannel(...),
        ...     dead_letter=JsonlDeadLetterSink("dead_letter.jsonl"),
        ... )
        >>> controller.start()
        >>> # ... runs until ...
        >>> controller.shutdown()
    """

    def __init__(
        self,
        config: PipelineConfig,
        chain_source: ChainSource,
        oracle: SequenceOracle,
        channel: BroadcastChannel,
        dead_letter: DeadLetterSink,
    ) -> None:
        self._config: PipelineConfig = config
        self._chain_source: ChainSource = chain_source
        self._oracle: SequenceOracle = oracle

        self._normalizer: EventNormalizer = EventNormalizer()
        self._adapter: BroadcastAdapter = BroadcastAdapter(
            config=config.broadcast,
            channel=channel,
        )
        self._retry_queue: RetryQueue = RetryQueue(
            config=config.retry,
            submit=self._adapter.try_submit,
            dead_letter=dead_letter,
            is_stale=self._already_confirmed,
        )
        self._adapter.add_success_handler(self._retry_queue.confirm)
        self._adapter.add_failure_handler(self._retry_queue.enqueue)
        self._dispatcher: WorkDispatcher = WorkDispatcher(
            config=config.dispatcher,
            gate=SequenceGate(config.gate),
            adapter=self._adapter,
            retry_queue=self._retry_queue,
        )
        self._health: StreamHealthMonitor = StreamHealthMonitor(config.health)

        # Observation backlog: identity → observation, in arrival order
        self._backlog: dict[PoolKey, Observation] = {}
        self._backlog_lock: threading.Lock = threading.Lock()

        # Current cycle, replaced wholesale on every block
        self._cycle: tuple[TargetStateCache, BlockRef] | None = None
        self._cycle_lock: threading.Lock = threading.Lock()
        self._cycles: int = 0

        # Latest undelivered block for the cycle worker
        self._pending_block: BlockRef | None = None
        self._block_lock: threading.Lock = threading.Lock()
        self._block_ready: threading.Event = threading.Event()
        self._blocks_coalesced: int = 0
        self._cycle_thread: threading.Thread | None = None

        # Live event hand-off
        self._event_queue: queue.Queue[Observation | None] = queue.Queue(
            maxsize=config.event_queue_size,
        )
        self._events_deferred: int = 0
        self._workers: list[threading.Thread] = []

        # Lifecycle
        self._state: PipelineState = PipelineState.INIT
        self._state_lock: threading.Lock = threading.Lock()
        self._shutdown_event: threading.Event = threading.Event()
        self._watchdog: threading.Thread | None = None
        self._stall_reported: bool = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        with self._state_lock:
            return self._state

    @property
    def event_filter(self) -> dict[str, Any]:
        """Log filter selecting ``PoolObserved`` on the data feed."""
        return {
            "address": self._config.data_feed_address,
            "topics": [POOL_OBSERVED_TOPIC],
        }

    @property
    def retry_queue(self) -> RetryQueue:
        return self._retry_queue

    @property
    def adapter(self) -> BroadcastAdapter:
        return self._adapter

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run catch-up, then subscribe and start all worker threads.

        Raises:
            RuntimeError: If the controller is not in INIT state.
        """
        with self._state_lock:
            if self._state != PipelineState.INIT:
                raise RuntimeError(
                    f"Cannot start: pipeline is in {self._state} state"
                )
            self._state = PipelineState.RUNNING

        try:
            self.catch_up()
        except Exception:
            logger.exception("Catch-up failed; continuing in live mode only")

        for index in range(self._config.event_workers):
            worker: threading.Thread = threading.Thread(
                target=self._event_worker,
                daemon=True,
                name=f"event-worker-{index}",
            )
            worker.start()
            self._workers.append(worker)

        self._cycle_thread = threading.Thread(
            target=self._cycle_loop,
            daemon=True,
            name="block-cycle",
        )
        self._cycle_thread.start()

        self._chain_source.subscribe_blocks(self._on_block_tick)
        self._chain_source.subscribe_events(self.event_filter, self._on_live_log)
        self._retry_queue.start()

        self._watchdog = threading.Thread(
            target=self._watchdog_loop,
            daemon=True,
            name="stream-watchdog",
        )
        self._watchdog.start()
        logger.info(
            "Pipeline started (targets=%s, policy=%s, workers=%d)",
            list(self._dispatcher.targets),
            self._config.gate.policy.value,
            self._config.event_workers,
        )

    def shutdown(self) -> None:
        """Stop subscriptions, workers and the retry timer. Idempotent."""
        with self._state_lock:
            if self._state == PipelineState.SHUTDOWN:
                return
            self._state = PipelineState.SHUTDOWN

        logger.info("Shutting down pipeline")
        self._shutdown_event.set()

        try:
            self._chain_source.shutdown()
        except Exception:
            logger.debug("Exception during chain source shutdown", exc_info=True)

        self._block_ready.set()
        if self._cycle_thread is not None:
            self._cycle_thread.join(timeout=5.0)

        for _ in self._workers:
            self._event_queue.put(None)
        for worker in self._workers:
            worker.join(timeout=5.0)

        self._retry_queue.shutdown()
        self._dispatcher.shutdown()

        stats: PipelineStats = self.stats()
        logger.info(
            "Pipeline shut down (cycles=%d, backlog=%d, submitted=%d, "
            "confirmed=%d, retries_in_flight=%d, dead_lettered=%d)",
            stats.cycles,
            stats.backlog_size,
            stats.dispatch_totals.submitted,
            stats.dispatch_totals.confirmed,
            stats.retry.pending + stats.retry.scheduled,
            stats.retry.dead_lettered_total,
        )

    # ------------------------------------------------------------------
    # Catch-up
    # ------------------------------------------------------------------

    def catch_up(self) -> int:
        """Load the historical window into the backlog.

        Observations are dispatched on the next block tick, not here.

        Returns:
            Number of new observations added to the backlog.
        """
        latest: BlockRef = self._chain_source.get_latest_block()
        from_block: int = max(0, latest.number - self._config.history_depth_blocks)
        logger.info("Reading PoolObserved events since block %d", from_block)

        raw_logs = self._chain_source.query_events(self.event_filter, from_block)
        decoded: list[Observation] = self._normalizer.normalize_many(raw_logs)
        ordered: list[Observation] = sorted(
            decoded, key=lambda o: (o.sequence, o.pool_id),
        )

        added: int = sum(1 for observation in ordered if self.ingest(observation))
        logger.info(
            "Catch-up loaded %d observations (%d logs, %d pools) from blocks %d-%d",
            added,
            len(raw_logs),
            len({o.pool_id for o in ordered}),
            from_block,
            latest.number,
        )
        return added

    # ------------------------------------------------------------------
    # Live mode
    # ------------------------------------------------------------------

    def on_block(self, block: BlockRef) -> DispatchReport:
        """Start a new cycle and re-evaluate the whole backlog.

        Runs the cycle on the calling thread. Once :meth:`start` has been
        called, subscribed blocks reach this through the block cycle
        thread instead.
        """
        self._health.on_block(block.number)
        return self._run_cycle(block)

    def _run_cycle(self, block: BlockRef) -> DispatchReport:
        cache: TargetStateCache = TargetStateCache(self._oracle, cycle_id=block.number)
        with self._cycle_lock:
            self._cycle = (cache, block)
            self._cycles += 1

        with self._backlog_lock:
            backlog: list[Observation] = list(self._backlog.values())

        report: DispatchReport = self._dispatcher.dispatch_batch(backlog, cache, block)
        pruned: int = self._prune(cache, block)

        if report.submitted or pruned:
            logger.info(
                "Block %d: backlog=%d submitted=%d confirmed=%d failed=%d "
                "held=%d in_flight=%d dead_lettered=%d oracle_errors=%d pruned=%d",
                block.number,
                len(backlog),
                report.submitted,
                report.confirmed,
                report.failed,
                report.held,
                report.in_flight,
                report.dead_lettered,
                report.oracle_errors,
                pruned,
            )
        return report

    def on_raw_log(self, raw_log: RawLog) -> DispatchReport | None:
        """Ingest one live log and dispatch it immediately.

        Returns:
            The dispatch report, or ``None`` if the log was dropped or the
            observation was already known.
        """
        observation: Observation | None = self._accept(raw_log)
        if observation is None:
            return None
        return self._dispatch_live(observation)

    def ingest(self, observation: Observation) -> bool:
        """Add ``observation`` to the backlog.

        Returns:
            ``True`` if new, ``False`` if its identity was already known.
        """
        with self._backlog_lock:
            if observation.key in self._backlog:
                return False
            self._backlog[observation.key] = observation
        return True

    def backlog(self) -> list[Observation]:
        """Snapshot of the backlog in arrival order."""
        with self._backlog_lock:
            return list(self._backlog.values())

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self, now_ns: int | None = None) -> bool:
        """Log block stream stalls and recoveries once each.

        Returns:
            ``True`` if the block stream is currently stalled.
        """
        stalled: bool = self._health.is_stalled(now_ns=now_ns)
        if stalled and not self._stall_reported:
            logger.warning(
                "Block stream stalled: no block for %.0fs (last=%s)",
                self._health.seconds_since_last_block(now_ns=now_ns) or 0.0,
                self._health.last_block_number,
            )
            self._stall_reported = True
        elif not stalled and self._stall_reported:
            logger.info(
                "Block stream recovered at block %s",
                self._health.last_block_number,
            )
            self._stall_reported = False
        return stalled

    def stats(self) -> PipelineStats:
        """Return a snapshot of pipeline statistics."""
        normalizer_stats: dict[str, int] = self._normalizer.stats()
        with self._backlog_lock:
            backlog_size: int = len(self._backlog)
        with self._cycle_lock:
            cycles: int = self._cycles
        with self._block_lock:
            blocks_coalesced: int = self._blocks_coalesced
        return PipelineStats(
            state=self.state,
            cycles=cycles,
            last_block_number=self._health.last_block_number,
            backlog_size=backlog_size,
            events_decoded=normalizer_stats["decoded"],
            events_dropped=normalizer_stats["dropped"],
            events_deferred=self._events_deferred,
            blocks_coalesced=blocks_coalesced,
            dispatch_totals=self._dispatcher.stats().totals,
            retry=self._retry_queue.stats(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _accept(self, raw_log: RawLog) -> Observation | None:
        observation: Observation | None = self._normalizer.normalize(raw_log)
        if observation is None:
            return None
        if not self.ingest(observation):
            logger.debug(
                "Duplicate observation pool=%s sequence=%d ignored",
                observation.pool_id,
                observation.sequence,
            )
            return None
        logger.info(
            "Observation arrived pool=%s sequence=%d block=%d",
            observation.pool_id,
            observation.sequence,
            observation.block_number,
        )
        return observation

    def _current_cycle(self) -> tuple[TargetStateCache, BlockRef]:
        with self._cycle_lock:
            cycle: tuple[TargetStateCache, BlockRef] | None = self._cycle
        if cycle is not None:
            return cycle

        # No block tick yet: open a cycle on the latest block
        block: BlockRef = self._chain_source.get_latest_block()
        cache: TargetStateCache = TargetStateCache(self._oracle, cycle_id=block.number)
        with self._cycle_lock:
            if self._cycle is None:
                self._cycle = (cache, block)
            return self._cycle

    def _dispatch_live(self, observation: Observation) -> DispatchReport:
        cache, block = self._current_cycle()
        return self._dispatcher.dispatch(observation, cache, block)

    def _on_live_log(self, raw_log: RawLog) -> None:
        observation: Observation | None = self._accept(raw_log)
        if observation is None:
            return
        try:
            self._event_queue.put_nowait(observation)
        except queue.Full:
            # Already in the backlog; the next block tick dispatches it
            self._events_deferred += 1
            logger.warning(
                "Event queue full; pool=%s sequence=%d deferred to next block",
                observation.pool_id,
                observation.sequence,
            )

    def _event_worker(self) -> None:
        while True:
            observation: Observation | None = self._event_queue.get()
            if observation is None:
                return
            try:
                self._dispatch_live(observation)
            except Exception:
                logger.exception(
                    "Live dispatch failed for pool=%s sequence=%d",
                    observation.pool_id,
                    observation.sequence,
                )

    def _on_block_tick(self, block: BlockRef) -> None:
        self._health.on_block(block.number)
        with self._block_lock:
            if self._pending_block is not None:
                self._blocks_coalesced += 1
                logger.debug(
                    "Block %d superseded by %d before its cycle ran",
                    self._pending_block.number,
                    block.number,
                )
            self._pending_block = block
            self._block_ready.set()

    def _cycle_loop(self) -> None:
        while True:
            self._block_ready.wait()
            if self._shutdown_event.is_set():
                return
            with self._block_lock:
                block: BlockRef | None = self._pending_block
                self._pending_block = None
                self._block_ready.clear()
            if block is None:
                continue
            try:
                self._run_cycle(block)
            except Exception:
                logger.exception("Cycle failed for block %d", block.number)

    def _already_confirmed(self, request: WorkRequest) -> bool:
        try:
            last_confirmed: int = self._oracle.get_last_confirmed_sequence(
                request.target_id, request.pool_id,
            )
        except OracleReadError as e:
            logger.warning("Confirmation check skipped: %s", e)
            return False
        return request.sequence <= last_confirmed

    def _prune(self, cache: TargetStateCache, block: BlockRef) -> int:
        min_block: int = block.number - self._config.history_depth_blocks
        with self._backlog_lock:
            candidates: list[Observation] = list(self._backlog.values())

        expired: list[PoolKey] = []
        for observation in candidates:
            if self._stale_everywhere(observation, cache):
                expired.append(observation.key)
            elif 0 < observation.block_number < min_block:
                logger.warning(
                    "Evicting unconfirmed observation pool=%s sequence=%d "
                    "older than %d blocks",
                    observation.pool_id,
                    observation.sequence,
                    self._config.history_depth_blocks,
                )
                expired.append(observation.key)

        with self._backlog_lock:
            removed: list[Observation] = [
                o for o in (self._backlog.pop(key, None) for key in expired) if o is not None
            ]
        for observation in removed:
            self._retry_queue.release(observation.pool_id, observation.sequence)
        return len(expired)

    def _stale_everywhere(self, observation: Observation, cache: TargetStateCache) -> bool:
        for target_id in self._dispatcher.targets:
            try:
                last_confirmed: int = cache.last_confirmed(observation.pool_id, target_id)
            except OracleReadError:
                return False
            if observation.sequence > last_confirmed:
                return False
        return True

    def _watchdog_loop(self) -> None:
        while not self._shutdown_event.wait(
            timeout=self._config.watchdog_interval_seconds,
        ):
            try:
                self.check_health(now_ns=time.perf_counter_ns())
            except Exception:
                logger.exception("Watchdog check failed")
