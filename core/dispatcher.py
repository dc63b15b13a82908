"""Fan-out dispatcher: one observation, every configured target.

For each observation the dispatcher evaluates the sequence gate
independently per target and, for every target that permits dispatch,
builds one :class:`WorkRequest` (``attempt=0``), claims it in the retry
queue and hands it to the broadcast adapter.

Concurrency:
    Targets are processed concurrently on a thread pool. Targets share no
    mutable state besides the cycle's :class:`TargetStateCache` (which is
    safe for concurrent reads) and the retry queue (lock-guarded). A slow
    or failing submission on one target never delays another target.

Ordering:
    Within a batch, each target walks the observations sequentially in
    ascending ``(sequence, pool_id, arrival)`` order. Submissions for one
    ``(pool, target)`` therefore go out in sequence order; there is no
    ordering between different targets.

Held observations:
    A gate-denied (held) observation is simply not submitted this cycle.
    The controller re-evaluates its backlog on the next cycle, so no
    separate queue is kept for held observations here.

Error isolation:
    An :class:`OracleReadError` skips the affected ``(pool, target)`` for
    the rest of the call; other pools and targets proceed.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Sequence

from pydantic import BaseModel, ConfigDict, Field

from core.broadcast import BroadcastAdapter, BroadcastOutcome
from core.errors import OracleReadError
from core.events import BlockRef, Observation, WorkRequest
from core.retry_queue import RetryQueue
from core.sequence_gate import GateDecision, SequenceGate, TargetStateCache

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_TARGETS: tuple[int, ...] = (10, 137)
"""Target chain ids bridged by default (Optimism, Polygon)."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class DispatcherConfig(BaseModel):
    """Configuration for :class:`WorkDispatcher`.

    Attributes:
        targets: Target chain ids every observation is fanned out to.
        max_workers: Thread pool size for concurrent per-target work.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    targets: tuple[int, ...] = Field(
        default=DEFAULT_TARGETS,
        min_length=1,
        description="Target chain ids to bridge observations to.",
    )
    max_workers: int = Field(
        default=8,
        gt=0,
        description="Concurrent per-target dispatch workers.",
    )


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


class DispatchReport(BaseModel):
    """Per-call dispatch outcome counts.

    Attributes:
        submitted: Requests handed to the broadcast adapter.
        confirmed: Submitted requests that were confirmed.
        failed: Submitted requests that failed (now in the retry queue).
        held: (observation, target) pairs the gate held back.
        stale: (observation, target) pairs already confirmed on-chain.
        in_flight: Permitted pairs skipped because a request for the
            same key is still in flight or scheduled for retry.
        dead_lettered: Permitted pairs skipped because their request
            exhausted its retries while the observation is still pending.
        oracle_errors: (pool, target) pairs skipped on oracle failure.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    submitted: int = Field(default=0, ge=0)
    confirmed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    held: int = Field(default=0, ge=0)
    stale: int = Field(default=0, ge=0)
    in_flight: int = Field(default=0, ge=0)
    dead_lettered: int = Field(default=0, ge=0)
    oracle_errors: int = Field(default=0, ge=0)

    def merge(self, other: "DispatchReport") -> "DispatchReport":
        """Return the field-wise sum of two reports."""
        return DispatchReport(
            **{
                name: getattr(self, name) + getattr(other, name)
                for name in DispatchReport.model_fields
            },
        )


class DispatcherStats(BaseModel):
    """Cumulative dispatcher statistics since creation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    dispatch_calls: int = Field(ge=0)
    totals: DispatchReport


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class WorkDispatcher:
    """Gate-checked fan-out of observations to every configured target.

    Args:
        config: Targets and pool size.
        gate: Sequence gate to evaluate.
        adapter: Broadcast adapter for first submissions.
        retry_queue: In-flight registry; requests are claimed here first.

    Example:
        >>> dispatcher = WorkDispatcher(
        ...     config=DispatcherConfig(targets=(10, 137)),
        ...     gate=SequenceGate(),
        ...     adapter=adapter,
        ...     retry_queue=retry_queue,
        ... )
        >>> report = dispatcher.dispatch(observation, cache, block)
        >>> report.submitted
        2
    """

    def __init__(
        self,
        config: DispatcherConfig,
        gate: SequenceGate,
        adapter: BroadcastAdapter,
        retry_queue: RetryQueue,
    ) -> None:
        self._config: DispatcherConfig = config
        self._gate: SequenceGate = gate
        self._adapter: BroadcastAdapter = adapter
        self._retry_queue: RetryQueue = retry_queue

        self._executor: ThreadPoolExecutor = ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="dispatch",
        )

        self._dispatch_calls: int = 0
        self._totals: DispatchReport = DispatchReport()
        self._stats_lock: threading.Lock = threading.Lock()

    @property
    def targets(self) -> tuple[int, ...]:
        return self._config.targets

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def dispatch(
        self,
        observation: Observation,
        cache: TargetStateCache,
        block: BlockRef,
    ) -> DispatchReport:
        """Gate and submit one observation to every target concurrently."""
        return self.dispatch_batch([observation], cache, block)

    def dispatch_batch(
        self,
        observations: Sequence[Observation],
        cache: TargetStateCache,
        block: BlockRef,
    ) -> DispatchReport:
        """Gate and submit a batch, targets concurrently, in sequence order.

        Args:
            observations: Observations to evaluate. Sorted here by
                ``(sequence, pool_id)``; the sort is stable, so arrival
                order breaks remaining ties.
            cache: The current cycle's target state.
            block: Block context for the work requests.

        Returns:
            Outcome counts summed over all targets.
        """
        if not observations:
            return DispatchReport()

        ordered: list[Observation] = sorted(
            observations, key=lambda o: (o.sequence, o.pool_id),
        )
        futures: list[Future[DispatchReport]] = [
            self._executor.submit(self._dispatch_target, target_id, ordered, cache, block)
            for target_id in self._config.targets
        ]

        report: DispatchReport = DispatchReport()
        for future in futures:
            report = report.merge(future.result())

        with self._stats_lock:
            self._dispatch_calls += 1
            self._totals = self._totals.merge(report)
        return report

    def shutdown(self) -> None:
        """Wait for running dispatches and release the thread pool."""
        self._executor.shutdown(wait=True)

    def stats(self) -> DispatcherStats:
        with self._stats_lock:
            return DispatcherStats(
                dispatch_calls=self._dispatch_calls,
                totals=self._totals,
            )

    # ------------------------------------------------------------------
    # Per-target worker
    # ------------------------------------------------------------------

    def _dispatch_target(
        self,
        target_id: int,
        observations: Sequence[Observation],
        cache: TargetStateCache,
        block: BlockRef,
    ) -> DispatchReport:
        counts: dict[str, int] = dict.fromkeys(DispatchReport.model_fields, 0)
        failed_pools: set[str] = set()

        for observation in observations:
            if observation.pool_id in failed_pools:
                continue
            try:
                last_confirmed: int = cache.last_confirmed(observation.pool_id, target_id)
            except OracleReadError:
                failed_pools.add(observation.pool_id)
                counts["oracle_errors"] += 1
                continue

            decision: GateDecision = self._gate.evaluate(observation, last_confirmed)
            if decision is GateDecision.STALE:
                counts["stale"] += 1
                continue
            if decision is GateDecision.HOLD:
                counts["held"] += 1
                logger.debug(
                    "Holding target=%d pool=%s sequence=%d (last_confirmed=%d)",
                    target_id,
                    observation.pool_id,
                    observation.sequence,
                    last_confirmed,
                )
                continue

            request: WorkRequest = WorkRequest.for_target(observation, target_id, block)
            if self._retry_queue.is_dead_lettered(request.key):
                counts["dead_lettered"] += 1
                continue
            if not self._retry_queue.claim(request):
                counts["in_flight"] += 1
                continue

            logger.info(
                "Dispatching target=%d pool=%s sequence=%d block=%d",
                target_id,
                observation.pool_id,
                observation.sequence,
                block.number,
            )
            counts["submitted"] += 1
            outcome: BroadcastOutcome = self._adapter.submit(request)
            counts["confirmed" if outcome.confirmed else "failed"] += 1

        return DispatchReport(**counts)
