"""Sequence gate and per-cycle target state cache.

The gate decides, for one (observation, target) pair, whether a work
request may be issued now. It compares the observation's sequence with
the last sequence the target has already confirmed:

- ``sequence <= last_confirmed`` — **stale**, already applied on-chain.
  Discarded under either policy.
- :attr:`GatePolicy.STRICT` — dispatch only the immediate successor
  (``sequence == last_confirmed + 1``). Anything further ahead is held
  back and re-evaluated on a later cycle.
- :attr:`GatePolicy.WINDOW` — dispatch anything strictly inside
  ``(last_confirmed, last_confirmed + window)``. Tolerates gaps and
  reordering at the cost of possibly redundant submissions.

Cycle model:
    A :class:`TargetStateCache` lives for exactly one cycle (one block in
    live mode). It reads the oracle lazily, at most once per
    ``(pool, target)``, and remembers either the value or the
    :class:`OracleReadError` for the rest of the cycle. The controller
    builds a **new** cache at every cycle start instead of clearing the
    old one, so dispatch calls still running against the previous cycle
    keep a consistent view.

Thread safety:
    :class:`SequenceGate` is stateless. :class:`TargetStateCache` is safe
    for concurrent use: a per-key lock ensures one oracle call per key
    even when several targets or workers ask at once.
"""

import logging
import threading
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from core.errors import OracleReadError
from core.events import Observation, TargetState
from core.ports import SequenceOracle

logger: logging.Logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GatePolicy(str, Enum):
    """Which sequence gate rule is active.

    States:
        STRICT: Only the immediate successor of the last confirmed
            sequence is dispatched.
        WINDOW: Any sequence inside the look-ahead window is dispatched.
    """

    STRICT = "strict"
    WINDOW = "window"


class GateDecision(str, Enum):
    """Outcome of evaluating the gate for one (observation, target)."""

    DISPATCH = "dispatch"
    HOLD = "hold"
    STALE = "stale"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class SequenceGateConfig(BaseModel):
    """Configuration for :class:`SequenceGate`.

    Attributes:
        policy: Active gate policy. Default :attr:`GatePolicy.STRICT`.
        window: Look-ahead window for :attr:`GatePolicy.WINDOW`. A
            sequence ``s`` passes iff ``last < s < last + window``.
            Ignored under the strict policy. Default 10.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy: GatePolicy = Field(
        default=GatePolicy.STRICT,
        description="Active gate policy (strict successor or bounded window).",
    )
    window: int = Field(
        default=10,
        ge=2,
        description="Look-ahead window for the windowed policy.",
    )


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class SequenceGate:
    """Stateless dispatch permission check.

    Args:
        config: Gate configuration. Defaults to the strict policy.

    Example:
        >>> gate = SequenceGate()
        >>> gate.evaluate(observation_with_sequence_6, last_confirmed=5)
        <GateDecision.DISPATCH: 'dispatch'>
        >>> gate.evaluate(observation_with_sequence_8, last_confirmed=5)
        <GateDecision.HOLD: 'hold'>
    """

    def __init__(self, config: SequenceGateConfig | None = None) -> None:
        self._config: SequenceGateConfig = config or SequenceGateConfig()

    @property
    def config(self) -> SequenceGateConfig:
        return self._config

    def evaluate(self, observation: Observation, last_confirmed: int) -> GateDecision:
        """Decide whether ``observation`` may be dispatched now.

        Args:
            observation: The candidate observation.
            last_confirmed: Last sequence the target has confirmed for
                the observation's pool.

        Returns:
            :attr:`GateDecision.STALE` if already confirmed,
            :attr:`GateDecision.DISPATCH` if permitted under the active
            policy, :attr:`GateDecision.HOLD` otherwise.
        """
        sequence: int = observation.sequence
        if sequence <= last_confirmed:
            return GateDecision.STALE

        if self._config.policy is GatePolicy.STRICT:
            permitted: bool = sequence == last_confirmed + 1
        else:
            permitted = sequence < last_confirmed + self._config.window

        return GateDecision.DISPATCH if permitted else GateDecision.HOLD


# ---------------------------------------------------------------------------
# Per-cycle target state
# ---------------------------------------------------------------------------


class TargetStateCache:
    """Lazily populated, cycle-scoped view of the sequence oracle.

    Never persisted across cycles: on-chain state is the source of truth,
    so a fresh instance is built for each cycle.

    Args:
        oracle: The sequence oracle to read from.
        cycle_id: Identifier for log messages (block number in live mode).
    """

    def __init__(self, oracle: SequenceOracle, cycle_id: int = 0) -> None:
        self._oracle: SequenceOracle = oracle
        self._cycle_id: int = cycle_id

        # (pool_id, target_id) → last confirmed sequence or the read error
        self._values: dict[tuple[str, int], int | OracleReadError] = {}
        self._key_locks: dict[tuple[str, int], threading.Lock] = {}
        self._lock: threading.Lock = threading.Lock()
        self._oracle_reads: int = 0

    @property
    def cycle_id(self) -> int:
        return self._cycle_id

    @property
    def oracle_reads(self) -> int:
        """Number of oracle calls made by this cache."""
        with self._lock:
            return self._oracle_reads

    def last_confirmed(self, pool_id: str, target_id: int) -> int:
        """Return the last confirmed sequence for ``(pool_id, target_id)``.

        The first call for a key reads the oracle; later calls in the same
        cycle return the cached value, or re-raise the cached error.

        Raises:
            OracleReadError: If the oracle read failed in this cycle.
        """
        key: tuple[str, int] = (pool_id, target_id)
        with self._lock:
            key_lock: threading.Lock = self._key_locks.setdefault(
                key, threading.Lock(),
            )

        with key_lock:
            with self._lock:
                cached: int | OracleReadError | None = self._values.get(key)
            if cached is None:
                cached = self._read(pool_id=pool_id, target_id=target_id)
                with self._lock:
                    self._values[key] = cached
                    self._oracle_reads += 1

        if isinstance(cached, OracleReadError):
            raise cached
        return cached

    def state(self, pool_id: str, target_id: int) -> TargetState:
        """Return the cached value as a :class:`TargetState`."""
        return TargetState(
            pool_id=pool_id,
            target_id=target_id,
            last_confirmed_sequence=self.last_confirmed(pool_id, target_id),
        )

    def _read(self, pool_id: str, target_id: int) -> int | OracleReadError:
        try:
            value: int = int(
                self._oracle.get_last_confirmed_sequence(target_id, pool_id),
            )
        except OracleReadError as exc:
            logger.warning(
                "Oracle read failed (cycle=%d target=%d pool=%s): %s",
                self._cycle_id,
                target_id,
                pool_id,
                exc,
            )
            return exc
        except Exception as exc:
            logger.warning(
                "Oracle read raised (cycle=%d target=%d pool=%s): %r",
                self._cycle_id,
                target_id,
                pool_id,
                exc,
            )
            return OracleReadError(target_id, pool_id, repr(exc))
        logger.debug(
            "Oracle read cycle=%d target=%d pool=%s last_confirmed=%d",
            self._cycle_id,
            target_id,
            pool_id,
            value,
        )
        return value
