"""Data-fetch job: ask the job contract to fetch fresh observations.

Independently of the relay pipeline, the job contract exposes
``work(bytes32 poolSalt, uint8 reason)``, which makes the data feed
fetch a new observation for one pool. Its result is the
``PoolObserved`` event the relay pipeline later bridges.

On every block the job reads the whitelisted pools from the
:class:`core.ports.PoolRegistry` and submits one ``work`` call per pool
through the broadcast channel with a fixed :class:`TriggerReason`.
Calls that are not workable revert in simulation or are never included;
either way the next block tries again, so there is no retry queue.

Concurrency:
    Submissions run on a thread pool so :meth:`DataFetchJob.on_block`
    returns as soon as the calls are handed off. A pool whose previous
    call is still running is skipped for the block.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import IntEnum

from pydantic import BaseModel, ConfigDict, Field

from core.events import BlockRef, TxReceiptRef, normalize_pool_id
from core.ports import BroadcastChannel, PoolRegistry

logger: logging.Logger = logging.getLogger(__name__)

FETCH_WORK_METHOD: str = "work(bytes32,uint8)"
"""Job contract method that triggers a data fetch for one pool."""


class TriggerReason(IntEnum):
    """Why a fetch is requested (``uint8`` argument of ``work``).

    Values:
        COOLDOWN: The cooldown since the last worked timestamp has passed.
        TWAP: The pool and oracle TWAPs diverged past the threshold.
    """

    COOLDOWN = 1
    TWAP = 2


# ---------------------------------------------------------------------------
# Configuration / reports
# ---------------------------------------------------------------------------


class FetchJobConfig(BaseModel):
    """Configuration for :class:`DataFetchJob`.

    Attributes:
        job_address: Job contract receiving the ``work`` calls.
        work_method: Solidity signature of the fetch ``work`` method.
        trigger_reason: Reason passed with every call.
        max_workers: Concurrent submissions.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    job_address: str = Field(min_length=1)
    work_method: str = Field(default=FETCH_WORK_METHOD)
    trigger_reason: TriggerReason = TriggerReason.COOLDOWN
    max_workers: int = Field(default=8, gt=0)


class FetchCycleReport(BaseModel):
    """What one :meth:`DataFetchJob.on_block` call handed off."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    block_number: int = Field(ge=0)
    pools: int = Field(default=0, ge=0)
    dispatched: int = Field(default=0, ge=0)
    in_flight: int = Field(default=0, ge=0)
    registry_error: bool = False


class FetchJobStats(BaseModel):
    """Cumulative statistics since creation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cycles: int = Field(ge=0)
    dispatched_total: int = Field(ge=0)
    confirmed_total: int = Field(ge=0)
    failed_total: int = Field(ge=0)
    skipped_in_flight_total: int = Field(ge=0)
    registry_errors: int = Field(ge=0)
    in_flight: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


class DataFetchJob:
    """Submits a fetch ``work`` call for every whitelisted pool per block.

    Args:
        config: Job address, method and trigger reason.
        registry: Source of the whitelisted pool ids.
        channel: Broadcast channel for the ``work`` transactions.

    Example:
        >>> job = DataFetchJob(
        ...     FetchJobConfig(job_address=CONTRACTS[1].job),
        ...     registry=DataFeedPoolRegistry(web3, CONTRACTS[1].job),
        ...     channel=FlashbotsBundleChannel(...),
        ... )
        >>> chain_source.subscribe_blocks(job.on_block)
    """

    def __init__(
        self,
        config: FetchJobConfig,
        registry: PoolRegistry,
        channel: BroadcastChannel,
    ) -> None:
        self._config: FetchJobConfig = config
        self._registry: PoolRegistry = registry
        self._channel: BroadcastChannel = channel

        self._executor: ThreadPoolExecutor = ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="fetch-work",
        )
        self._lock: threading.Lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._futures: set[Future[bool]] = set()
        self._shutdown: bool = False

        self._cycles: int = 0
        self._dispatched_total: int = 0
        self._confirmed_total: int = 0
        self._failed_total: int = 0
        self._skipped_total: int = 0
        self._registry_errors: int = 0

    def on_block(self, block: BlockRef) -> FetchCycleReport:
        """Hand off one ``work`` call per whitelisted pool and return."""
        with self._lock:
            if self._shutdown:
                return FetchCycleReport(block_number=block.number)
            self._cycles += 1

        try:
            pools: list[str] = [
                normalize_pool_id(p) for p in self._registry.get_whitelisted_pools()
            ]
        except Exception:
            logger.exception("Reading whitelisted pools failed at block %d", block.number)
            with self._lock:
                self._registry_errors += 1
            return FetchCycleReport(block_number=block.number, registry_error=True)

        dispatched: int = 0
        skipped: int = 0
        for pool_id in pools:
            with self._lock:
                if self._shutdown:
                    break
                if pool_id in self._in_flight:
                    skipped += 1
                    continue
                self._in_flight.add(pool_id)
                future: Future[bool] = self._executor.submit(self._work_pool, pool_id, block)
                self._futures.add(future)
            future.add_done_callback(self._forget)
            dispatched += 1

        with self._lock:
            self._dispatched_total += dispatched
            self._skipped_total += skipped

        report: FetchCycleReport = FetchCycleReport(
            block_number=block.number,
            pools=len(pools),
            dispatched=dispatched,
            in_flight=skipped,
        )
        logger.debug(
            "Fetch block %d: pools=%d dispatched=%d in_flight=%d",
            block.number,
            report.pools,
            report.dispatched,
            report.in_flight,
        )
        return report

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every handed-off call has finished.

        Returns:
            ``True`` if nothing is left running.
        """
        with self._lock:
            pending: list[Future[bool]] = list(self._futures)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self) -> None:
        """Stop accepting blocks and wait for running calls. Idempotent."""
        with self._lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._executor.shutdown(wait=True)
        logger.info(
            "Fetch job shut down (cycles=%d, dispatched=%d, confirmed=%d)",
            self._cycles,
            self._dispatched_total,
            self._confirmed_total,
        )

    def stats(self) -> FetchJobStats:
        with self._lock:
            return FetchJobStats(
                cycles=self._cycles,
                dispatched_total=self._dispatched_total,
                confirmed_total=self._confirmed_total,
                failed_total=self._failed_total,
                skipped_in_flight_total=self._skipped_total,
                registry_errors=self._registry_errors,
                in_flight=len(self._in_flight),
            )

    def _work_pool(self, pool_id: str, block: BlockRef) -> bool:
        try:
            receipt: TxReceiptRef = self._channel.submit(
                self._config.job_address,
                self._config.work_method,
                (bytes.fromhex(pool_id[2:]), int(self._config.trigger_reason)),
                block,
            )
        except Exception as exc:
            with self._lock:
                self._failed_total += 1
            logger.info(
                "Fetch work not landed for pool=%s block=%d: %s",
                pool_id,
                block.number,
                exc,
            )
            return False
        finally:
            with self._lock:
                self._in_flight.discard(pool_id)

        with self._lock:
            self._confirmed_total += 1
        logger.info(
            "Fetch work confirmed pool=%s reason=%s tx=%s block=%d",
            pool_id,
            self._config.trigger_reason.name,
            receipt.tx_hash,
            receipt.block_number,
        )
        return True

    def _forget(self, future: Future[bool]) -> None:
        with self._lock:
            self._futures.discard(future)
