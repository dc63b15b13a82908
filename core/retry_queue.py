"""Retry queue for failed work submissions.

Holds one :class:`RetryEntry` per in-flight :class:`WorkRequest` and is
the **single source of truth** for in-flight status: the dispatcher
claims a request here before submitting it, so the same
``(target, pool, sequence)`` is never issued twice while a prior attempt
is running or waiting for its retry.

State machine (per entry)::

    claim()                 submit ok
      │                  ┌──────────────► CONFIRMED (removed)
      ▼                  │
    PENDING ── submit ───┤
      ▲                  │ submit failed
      │                  └──────────────► SCHEDULED(next_attempt_at)
      │                                        │
      └──── tick(), now >= next_attempt_at ────┤
                                               │ already confirmed on-chain
                                               ├──────────────► CONFIRMED (removed)
                                               │ attempts_so_far == max_retries
                                               ▼
                                        DEAD_LETTERED (removed, recorded once,
                                                       key parked until released)

Retry accounting:
    - The first failure (reported by the broadcast adapter via
      :meth:`RetryQueue.enqueue`) schedules the entry with
      ``attempts_so_far`` unchanged at 0.
    - Every failed re-attempt increments ``attempts_so_far`` and the
      request's ``attempt`` together, so the two are always equal.
    - An entry that comes due with ``attempts_so_far == max_retries`` is
      dead-lettered without another submit. ``attempts_so_far`` therefore
      never exceeds ``max_retries``.
    - A dead-lettered key is parked: :meth:`RetryQueue.claim` refuses it
      until the owner calls :meth:`RetryQueue.release` for the
      observation, so an exhausted request is never restarted at
      ``attempt=0`` by the next dispatch cycle.

Confirmation check:
    When constructed with an ``is_stale`` predicate, every due entry is
    checked against on-chain state before it is re-submitted or
    dead-lettered. A request whose sequence is already confirmed on its
    target is dropped as confirmed with no submit. A predicate that
    raises is logged and treated as "not confirmed".

Retry cadence:
    Fixed interval (``retry_interval_seconds``, default 60s), not
    exponential backoff. The queue is drained by :meth:`RetryQueue.tick`,
    which a daemon timer thread calls every ``tick_interval_seconds``
    once :meth:`RetryQueue.start` has been called.

Concurrency:
    All entry state is guarded by one lock. ``tick()`` moves due entries
    to PENDING under that lock before doing any I/O, so two overlapping
    ticks can never process the same entry. The confirmation check,
    re-submission or dead-lettering of distinct entries in one tick run
    concurrently on a thread pool; ``tick()`` returns once all of them
    have completed.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from core.broadcast import BroadcastOutcome
from core.errors import RetryExhausted
from core.events import RequestKey, WorkRequest
from core.ports import DeadLetterSink

logger: logging.Logger = logging.getLogger(__name__)

SubmitFn = Callable[[WorkRequest], BroadcastOutcome]
"""Re-submission function, normally :meth:`BroadcastAdapter.try_submit`."""

StaleFn = Callable[[WorkRequest], bool]
"""Returns ``True`` when the request's sequence is already confirmed on-chain."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RetryState(str, Enum):
    """Lifecycle state of a :class:`RetryEntry`.

    States:
        PENDING: A submit attempt is running.
        SCHEDULED: Waiting for ``next_attempt_at``.
        CONFIRMED: Terminal. Included on-chain.
        DEAD_LETTERED: Terminal. Retry budget exhausted.
    """

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    DEAD_LETTERED = "DEAD_LETTERED"


class _DueOutcome(str, Enum):
    ALREADY_CONFIRMED = "ALREADY_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    RESCHEDULED = "RESCHEDULED"
    DEAD_LETTERED = "DEAD_LETTERED"
# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class RetryQueueConfig(BaseModel):
    """Configuration for :class:`RetryQueue`.

    Attributes:
        retry_interval_seconds: Fixed delay between attempts. Default 60.
        max_retries: Re-attempts allowed after the first failure before
            the request is dead-lettered. Default 3.
        tick_interval_seconds: How often the background timer drains
            due entries. Default 5.
        max_workers: Thread pool size for concurrent re-submission.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    retry_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Fixed delay between retry attempts (seconds).",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=255,
        description="Retry attempts before dead-lettering (uint8).",
    )
    tick_interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Background drain interval (seconds).",
    )
    max_workers: int = Field(
        default=8,
        gt=0,
        description="Concurrent re-submissions per tick.",
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class RetryEntry(BaseModel):
    """Immutable snapshot of one in-flight request.

    The queue replaces entries wholesale on every transition.

    Attributes:
        work_request: The request; ``attempt == attempts_so_far``.
        attempts_so_far: Failed re-attempts so far.
        next_attempt_at: Wall-clock time (seconds) the entry becomes due.
            ``None`` while PENDING.
        state: Current :class:`RetryState`.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    work_request: WorkRequest
    attempts_so_far: int = Field(default=0, ge=0, le=255)
    next_attempt_at: float | None = None
    state: RetryState = RetryState.PENDING

    @property
    def key(self) -> RequestKey:
        return self.work_request.key


class RetryTickReport(BaseModel):
    """What a single :meth:`RetryQueue.tick` did."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    resubmitted: int = Field(default=0, ge=0)
    confirmed: int = Field(default=0, ge=0)
    rescheduled: int = Field(default=0, ge=0)
    dead_lettered: int = Field(default=0, ge=0)
    already_confirmed: int = Field(
        default=0,
        ge=0,
        description="Due entries dropped because the sequence was confirmed on-chain.",
    )


class RetryQueueStats(BaseModel):
    """Immutable snapshot of retry queue statistics.

    Attributes:
        pending: Entries with a submit attempt running.
        scheduled: Entries waiting for their next attempt.
        parked: Dead-lettered keys still refused by :meth:`RetryQueue.claim`.
        enqueued_total: Failures handed to the queue.
        resubmitted_total: Re-attempts made.
        confirmed_total: Entries confirmed (first attempt, retry or
            found already confirmed on-chain).
        dead_lettered_total: Entries routed to the dead-letter sink.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pending: int = Field(ge=0)
    scheduled: int = Field(ge=0)
    parked: int = Field(default=0, ge=0)
    enqueued_total: int = Field(ge=0)
    resubmitted_total: int = Field(ge=0)
    confirmed_total: int = Field(ge=0)
    dead_lettered_total: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Retry Queue
# ---------------------------------------------------------------------------


class RetryQueue:
    """Fixed-interval, bounded-count retry queue with dead-lettering.

    Args:
        config: Retry cadence and limits.
        submit: Re-submission function (``BroadcastAdapter.try_submit``).
        dead_letter: Sink for requests that exhausted their retries.
        clock: Wall-clock source in seconds. Injectable for tests.
        is_stale: Optional on-chain confirmation check run on every due
            entry before it is re-submitted or dead-lettered.

    Example:
        >>> queue = RetryQueue(
        ...     config=RetryQueueConfig(),
        ...     submit=adapter.try_submit,
        ...     dead_letter=sink,
        ... )
        >>> adapter.add_failure_handler(queue.enqueue)
        >>> adapter.add_success_handler(queue.confirm)
        >>> queue.start()
    """

    def __init__(
        self,
        config: RetryQueueConfig,
        submit: SubmitFn,
        dead_letter: DeadLetterSink,
        clock: Callable[[], float] = time.time,
        is_stale: StaleFn | None = None,
    ) -> None:
        self._config: RetryQueueConfig = config
        self._submit: SubmitFn = submit
        self._dead_letter: DeadLetterSink = dead_letter
        self._clock: Callable[[], float] = clock
        self._is_stale: StaleFn | None = is_stale

        self._entries: dict[RequestKey, RetryEntry] = {}
        self._dead_lettered: set[RequestKey] = set()
        self._lock: threading.Lock = threading.Lock()

        self._enqueued_total: int = 0
        self._resubmitted_total: int = 0
        self._confirmed_total: int = 0
        self._dead_lettered_total: int = 0

        self._executor: ThreadPoolExecutor = ThreadPoolExecutor(
            max_workers=config.max_workers,
            thread_name_prefix="retry-submit",
        )
        self._shutdown_event: threading.Event = threading.Event()
        self._timer_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # In-flight tracking
    # ------------------------------------------------------------------

    def claim(self, request: WorkRequest) -> bool:
        """Register ``request`` as in flight before its first submit.

        Returns:
            ``True`` if the request was claimed, ``False`` if an entry for
            the same key is already in flight (pending or scheduled) or
            the key was dead-lettered and not yet released.
        """
        with self._lock:
            if request.key in self._entries or request.key in self._dead_lettered:
                return False
            self._entries[request.key] = RetryEntry(
                work_request=request,
                attempts_so_far=request.attempt,
            )
        return True

    def confirm(self, request: WorkRequest) -> None:
        """Mark the entry for ``request`` as confirmed and remove it."""
        with self._lock:
            removed: RetryEntry | None = self._entries.pop(request.key, None)
            if removed is not None:
                self._confirmed_total += 1

    def enqueue(self, request: WorkRequest, now: float | None = None) -> None:
        """Schedule a retry for a request whose first submit failed.

        ``attempts_so_far`` starts at the request's ``attempt`` (0 for a
        first attempt). An entry that is already SCHEDULED is left alone.

        Args:
            request: The failed request.
            now: Wall-clock time in seconds. Defaults to the queue clock.
        """
        current: float = now if now is not None else self._clock()
        with self._lock:
            existing: RetryEntry | None = self._entries.get(request.key)
            if existing is not None and existing.state is RetryState.SCHEDULED:
                logger.debug(
                    "Retry already scheduled for target=%d sequence=%d",
                    request.target_id,
                    request.sequence,
                )
                return
            entry: RetryEntry = RetryEntry(
                work_request=request,
                attempts_so_far=request.attempt,
                next_attempt_at=current + self._config.retry_interval_seconds,
                state=RetryState.SCHEDULED,
            )
            self._entries[request.key] = entry
            self._enqueued_total += 1

        logger.info(
            "Scheduled retry target=%d pool=%s sequence=%d attempts=%d at=%.0f",
            request.target_id,
            request.pool_id,
            request.sequence,
            entry.attempts_so_far,
            entry.next_attempt_at,
        )

    def is_in_flight(self, key: RequestKey) -> bool:
        """Whether an entry (pending or scheduled) exists for ``key``."""
        with self._lock:
            return key in self._entries

    def entry(self, key: RequestKey) -> RetryEntry | None:
        """Return the current snapshot for ``key``, if any."""
        with self._lock:
            return self._entries.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def is_dead_lettered(self, key: RequestKey) -> bool:
        """Whether ``key`` was dead-lettered and is still parked."""
        with self._lock:
            return key in self._dead_lettered

    def release(self, pool_id: str, sequence: int) -> int:
        """Forget parked dead-letter keys for one observation, on every target.

        Called once the observation has left the dispatch backlog, so a
        later claim for the same key is treated as new work.

        Returns:
            Number of keys released.
        """
        with self._lock:
            released: list[RequestKey] = [
                key for key in self._dead_lettered
                if key[1] == pool_id and key[2] == sequence
            ]
            self._dead_lettered.difference_update(released)
        return len(released)

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def tick(self, now: float | None = None) -> RetryTickReport:
        """Process every scheduled entry whose ``next_attempt_at`` has passed.

        Each due entry is first checked against on-chain state (when an
        ``is_stale`` predicate was given) and dropped as confirmed if its
        sequence already landed. Entries with no retry budget left are
        then dead-lettered without a submit. The rest are re-submitted
        concurrently; the call returns when every entry has been handled.

        Args:
            now: Wall-clock time in seconds. Defaults to the queue clock.

        Returns:
            A :class:`RetryTickReport` summarising the tick.
        """
        current: float = now if now is not None else self._clock()
        due: list[RetryEntry] = []

        with self._lock:
            for key, entry in list(self._entries.items()):
                if entry.state is not RetryState.SCHEDULED:
                    continue
                if entry.next_attempt_at is None or entry.next_attempt_at > current:
                    continue
                claimed: RetryEntry = entry.model_copy(
                    update={"state": RetryState.PENDING, "next_attempt_at": None},
                )
                self._entries[key] = claimed
                due.append(claimed)

        futures: list[Future[_DueOutcome]] = [
            self._executor.submit(self._process_due, entry, current) for entry in due
        ]
        outcomes: list[_DueOutcome] = [future.result() for future in futures]

        confirmed: int = outcomes.count(_DueOutcome.CONFIRMED)
        rescheduled: int = outcomes.count(_DueOutcome.RESCHEDULED)
        report: RetryTickReport = RetryTickReport(
            resubmitted=confirmed + rescheduled,
            confirmed=confirmed,
            rescheduled=rescheduled,
            dead_lettered=outcomes.count(_DueOutcome.DEAD_LETTERED),
            already_confirmed=outcomes.count(_DueOutcome.ALREADY_CONFIRMED),
        )
        if due:
            logger.info(
                "Retry tick: resubmitted=%d confirmed=%d rescheduled=%d "
                "dead_lettered=%d already_confirmed=%d",
                report.resubmitted,
                report.confirmed,
                report.rescheduled,
                report.dead_lettered,
                report.already_confirmed,
            )
        return report

    def _process_due(self, entry: RetryEntry, now: float) -> _DueOutcome:
        if self._already_confirmed(entry.work_request):
            with self._lock:
                self._entries.pop(entry.key, None)
                self._confirmed_total += 1
            logger.info(
                "Dropping retry for target=%d pool=%s sequence=%d: already confirmed",
                entry.work_request.target_id,
                entry.work_request.pool_id,
                entry.work_request.sequence,
            )
            return _DueOutcome.ALREADY_CONFIRMED

        if entry.attempts_so_far >= self._config.max_retries:
            with self._lock:
                self._entries.pop(entry.key, None)
                self._dead_lettered.add(entry.key)
                self._dead_lettered_total += 1
            self._record_dead_letter(entry)
            return _DueOutcome.DEAD_LETTERED

        with self._lock:
            self._resubmitted_total += 1
        if self._retry_one(entry, now):
            return _DueOutcome.CONFIRMED
        return _DueOutcome.RESCHEDULED

    def _already_confirmed(self, request: WorkRequest) -> bool:
        if self._is_stale is None:
            return False
        try:
            return self._is_stale(request)
        except Exception:
            logger.exception(
                "Confirmation check failed for target=%d sequence=%d; retrying",
                request.target_id,
                request.sequence,
            )
            return False

    def _retry_one(self, entry: RetryEntry, now: float) -> bool:
        try:
            outcome: BroadcastOutcome = self._submit(entry.work_request)
            confirmed: bool = outcome.confirmed
        except Exception:
            logger.exception(
                "Retry submit raised for target=%d sequence=%d",
                entry.work_request.target_id,
                entry.work_request.sequence,
            )
            confirmed = False

        with self._lock:
            if confirmed:
                self._entries.pop(entry.key, None)
                self._confirmed_total += 1
                return True

            attempts: int = entry.attempts_so_far + 1
            self._entries[entry.key] = RetryEntry(
                work_request=entry.work_request.with_attempt(attempts),
                attempts_so_far=attempts,
                next_attempt_at=now + self._config.retry_interval_seconds,
                state=RetryState.SCHEDULED,
            )
        return False

    def _record_dead_letter(self, entry: RetryEntry) -> None:
        request: WorkRequest = entry.work_request
        exhausted: RetryExhausted = RetryExhausted(
            f"Retries exhausted for target={request.target_id} "
            f"pool={request.pool_id} sequence={request.sequence}",
            attempts=entry.attempts_so_far,
        )
        logger.error("%s after %d retries", exhausted, exhausted.attempts)
        try:
            self._dead_letter.record(request, entry.attempts_so_far)
        except Exception:
            logger.exception(
                "Dead-letter sink failed; request lost from sink: %s",
                request.model_dump_json(),
            )

    # ------------------------------------------------------------------
    # Background timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background drain timer. Idempotent."""
        if self._timer_thread is not None:
            return
        self._timer_thread = threading.Thread(
            target=self._timer_loop,
            daemon=True,
            name="retry-timer",
        )
        self._timer_thread.start()
        logger.info(
            "Retry queue started (interval=%.0fs, max_retries=%d, tick=%.1fs)",
            self._config.retry_interval_seconds,
            self._config.max_retries,
            self._config.tick_interval_seconds,
        )

    def shutdown(self) -> None:
        """Stop the timer and wait for running re-submissions. Idempotent."""
        if self._shutdown_event.is_set():
            return
        self._shutdown_event.set()
        if self._timer_thread is not None:
            self._timer_thread.join(timeout=self._config.tick_interval_seconds * 2)
        self._executor.shutdown(wait=True)
        logger.info("Retry queue shut down with %d entries in flight", len(self))

    def _timer_loop(self) -> None:
        while not self._shutdown_event.wait(timeout=self._config.tick_interval_seconds):
            try:
                self.tick()
            except Exception:
                logger.exception("Retry tick failed")

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def stats(self) -> RetryQueueStats:
        """Return a consistent snapshot of queue statistics."""
        with self._lock:
            pending: int = sum(
                1 for e in self._entries.values() if e.state is RetryState.PENDING
            )
            return RetryQueueStats(
                pending=pending,
                scheduled=len(self._entries) - pending,
                parked=len(self._dead_lettered),
                enqueued_total=self._enqueued_total,
                resubmitted_total=self._resubmitted_total,
                confirmed_total=self._confirmed_total,
                dead_lettered_total=self._dead_lettered_total,
            )
