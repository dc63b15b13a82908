"""Broadcast adapter wrapping a pluggable :class:`BroadcastChannel`.

The adapter turns a :class:`WorkRequest` into a ``work`` call on the job
contract and reports the outcome. It does not try to tell permanently
fatal reverts from transient errors: every exception raised by the
channel (network error, relay rejection, simulation revert, timeout) is
a :class:`BroadcastFailure`.

Two entry points:
    - :meth:`BroadcastAdapter.try_submit` — submit and return the outcome.
      No side effects besides counters and logging. The retry queue uses
      this for re-attempts and does its own accounting.
    - :meth:`BroadcastAdapter.submit` — first attempt from the
      dispatcher. Same as ``try_submit`` and then notifies the registered
      success or failure handlers (normally the retry queue's ``confirm``
      and ``enqueue``).

Handler isolation:
    Handlers run inline in the submitting thread. An exception in one
    handler is logged and does not prevent the others from running.
"""

import logging
import threading
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.errors import BroadcastFailure
from core.events import TxReceiptRef, WorkRequest
from core.ports import BroadcastChannel

logger: logging.Logger = logging.getLogger(__name__)

OutcomeHandler = Callable[[WorkRequest], None]
"""Handler signature: ``(work_request) -> None``."""

WORK_METHOD: str = "work(uint32,bytes32,uint24,(uint32,int24)[])"
"""Job method used to bridge one observation to a target chain."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BroadcastConfig(BaseModel):
    """Configuration for :class:`BroadcastAdapter`.

    Attributes:
        job_address: Job contract the ``work`` call is sent to.
        work_method: ABI signature of the work method.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    job_address: str = Field(description="Job contract address")
    work_method: str = Field(default=WORK_METHOD)


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class BroadcastOutcome(BaseModel):
    """Result of one submission attempt.

    Exactly one of ``receipt`` / ``error`` is set.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    request: WorkRequest
    receipt: TxReceiptRef | None = None
    error: str | None = None

    @property
    def confirmed(self) -> bool:
        return self.receipt is not None


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class BroadcastAdapter:
    """Submits work requests through a broadcast channel.

    Thread safety:
        ``try_submit`` / ``submit`` may be called concurrently from the
        dispatcher pool and the retry queue pool. Counters are
        lock-protected; handler registration should happen before the
        pipeline starts.

    Args:
        config: Contract and fee settings.
        channel: The broadcast channel to submit through.

    Example:
        >>> adapter = BroadcastAdapter(config=config, channel=channel)
        >>> adapter.add_failure_handler(retry_queue.enqueue)
        >>> adapter.add_success_handler(retry_queue.confirm)
        >>> outcome = adapter.submit(work_request)
        >>> outcome.confirmed
        True
    """

    def __init__(self, config: BroadcastConfig, channel: BroadcastChannel) -> None:
        self._config: BroadcastConfig = config
        self._channel: BroadcastChannel = channel

        self._success_handlers: list[OutcomeHandler] = []
        self._failure_handlers: list[OutcomeHandler] = []

        self._attempts: int = 0
        self._confirmed: int = 0
        self._failed: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    @property
    def config(self) -> BroadcastConfig:
        return self._config

    def add_success_handler(self, handler: OutcomeHandler) -> None:
        """Register a handler called after a confirmed first attempt."""
        self._success_handlers.append(handler)

    def add_failure_handler(self, handler: OutcomeHandler) -> None:
        """Register a handler called after a failed first attempt."""
        self._failure_handlers.append(handler)

    def try_submit(self, request: WorkRequest) -> BroadcastOutcome:
        """Submit ``request`` once and return the outcome.

        Blocks until the channel confirms inclusion or fails. Never
        raises for channel errors.
        """
        with self._counter_lock:
            self._attempts += 1

        try:
            receipt: TxReceiptRef = self._channel.submit(
                self._config.job_address,
                self._config.work_method,
                request.work_args(),
                request.block,
            )
        except Exception as exc:
            reason: str = str(exc) if isinstance(exc, BroadcastFailure) else repr(exc)
            with self._counter_lock:
                self._failed += 1
            logger.warning(
                "Broadcast failed target=%d pool=%s sequence=%d attempt=%d: %s",
                request.target_id,
                request.pool_id,
                request.sequence,
                request.attempt,
                reason,
            )
            return BroadcastOutcome(request=request, error=reason)

        with self._counter_lock:
            self._confirmed += 1
        logger.info(
            "Broadcast confirmed target=%d pool=%s sequence=%d attempt=%d tx=%s",
            request.target_id,
            request.pool_id,
            request.sequence,
            request.attempt,
            receipt.tx_hash,
        )
        return BroadcastOutcome(request=request, receipt=receipt)

    def submit(self, request: WorkRequest) -> BroadcastOutcome:
        """Submit ``request`` and notify success or failure handlers."""
        outcome: BroadcastOutcome = self.try_submit(request)
        handlers: list[OutcomeHandler] = (
            self._success_handlers if outcome.confirmed else self._failure_handlers
        )
        for handler in handlers:
            try:
                handler(request)
            except Exception:
                logger.exception(
                    "Broadcast outcome handler failed for target=%d sequence=%d",
                    request.target_id,
                    request.sequence,
                )
        return outcome

    def stats(self) -> dict[str, int]:
        """Return attempt / confirmed / failed counters."""
        with self._counter_lock:
            return {
                "attempts": self._attempts,
                "confirmed": self._confirmed,
                "failed": self._failed,
            }
