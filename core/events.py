"""Domain models for oracle observations and the work requests they produce.

This module defines the records that flow through the relay pipeline:
observations decoded from ``PoolObserved`` logs, the block context they
are submitted against, the per-cycle target state read from the
sequence oracle, and the work requests built for each target. All models
are Pydantic-based with ``frozen=True`` for immutability and thread
safety.

Identity:
    - An :class:`Observation` is identified by ``(pool_id, sequence)``.
    - A :class:`WorkRequest` is identified by
      ``(target_id, pool_id, sequence)``. The retry queue keys its
      in-flight entries by this tuple.

Integer ranges:
    Field bounds mirror the on-chain ABI types: sequences are ``uint32``
    (the job contract stores them as ``uint24``, which fits), observation
    timestamps are ``uint32`` and observation values (ticks) are
    ``int24``. Out-of-range values are rejected at construction.

Example:
    >>> from core.events import Observation, ObservationPoint
    >>> obs = Observation(
    ...     pool_id="0x" + "ab" * 32,
    ...     sequence=6,
    ...     points=(ObservationPoint(timestamp=1_700_000_000, value=-120),),
    ... )
    >>> obs.key[1]
    6
    >>> obs.points[0].value
    -120
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# ABI integer bounds
# ---------------------------------------------------------------------------

UINT32_MAX: int = 2**32 - 1
INT24_MIN: int = -(2**23)
INT24_MAX: int = 2**23 - 1

PoolKey = tuple[str, int]
"""Observation identity: ``(pool_id, sequence)``."""

RequestKey = tuple[int, str, int]
"""Work request identity: ``(target_id, pool_id, sequence)``."""


def normalize_pool_id(value: object) -> str:
    """Normalize a ``bytes32`` pool identifier to lowercase ``0x`` hex.

    Accepts raw ``bytes`` (as returned by ``eth_abi``), ``HexBytes`` or a
    hex string with or without the ``0x`` prefix.

    Args:
        value: The pool identifier.

    Returns:
        A 66-character lowercase hex string.

    Raises:
        ValueError: If the value is not exactly 32 bytes of hex.
    """
    if isinstance(value, (bytes, bytearray)):
        raw: str = bytes(value).hex()
    elif isinstance(value, str):
        raw = value[2:] if value[:2].lower() == "0x" else value
    else:
        raise ValueError(f"pool id must be bytes or str, got {type(value)}")

    raw = raw.lower()
    if len(raw) != 64:
        raise ValueError(f"pool id must be 32 bytes, got {len(raw) // 2}")
    int(raw, 16)
    return "0x" + raw


# ---------------------------------------------------------------------------
# Observation Models
# ---------------------------------------------------------------------------


class ObservationPoint(BaseModel):
    """One ``(timestamp, value)`` pair of an observation payload.

    Mirrors the ``(uint32,int24)`` tuple of the ``PoolObserved`` event
    and of the job's ``work`` method.

    Attributes:
        timestamp: Block timestamp the observation was taken at.
        value: Observed value (pool tick), ``int24``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    timestamp: int = Field(ge=0, le=UINT32_MAX, description="uint32 timestamp")
    value: int = Field(ge=INT24_MIN, le=INT24_MAX, description="int24 value")

    def as_tuple(self) -> tuple[int, int]:
        """Return the ABI tuple form ``(timestamp, value)``."""
        return (self.timestamp, self.value)


class Observation(BaseModel):
    """A decoded ``PoolObserved`` event.

    Immutable once decoded. Produced by the event normalizer from one raw
    log and never mutated afterwards.

    Attributes:
        pool_id: ``bytes32`` pool salt as lowercase ``0x`` hex.
        sequence: Per-pool monotonic counter (pool nonce).
        points: Ordered observation payload.
        block_number: Block the log was emitted in. ``0`` when unknown.
        log_index: Log index within the block. ``0`` when unknown.
        tx_hash: Emitting transaction hash. Empty when unknown.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pool_id: str = Field(description="bytes32 pool identifier (0x hex)")
    sequence: int = Field(ge=0, le=UINT32_MAX, description="Pool sequence")
    points: tuple[ObservationPoint, ...] = Field(
        description="Ordered (timestamp, value) payload",
    )
    block_number: int = Field(default=0, ge=0)
    log_index: int = Field(default=0, ge=0)
    tx_hash: str = Field(default="")

    @field_validator("pool_id", mode="before")
    @classmethod
    def _normalize_pool_id(cls, v: object) -> str:
        return normalize_pool_id(v)

    @property
    def key(self) -> PoolKey:
        """Identity tuple ``(pool_id, sequence)``."""
        return (self.pool_id, self.sequence)


# ---------------------------------------------------------------------------
# Chain Context
# ---------------------------------------------------------------------------


class BlockRef(BaseModel):
    """Block context a work request is built against.

    Attributes:
        number: Block number.
        hash: Block hash (``0x`` hex). Empty when unknown.
        timestamp: Block timestamp in seconds.
        base_fee_per_gas: EIP-1559 base fee in wei, ``None`` on
            pre-London chains.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    number: int = Field(ge=0)
    hash: str = Field(default="")
    timestamp: int = Field(default=0, ge=0)
    base_fee_per_gas: int | None = Field(default=None, ge=0)


class TargetState(BaseModel):
    """Last sequence confirmed on a target for one pool.

    Read from the sequence oracle on demand and only valid for the cycle
    it was read in.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    pool_id: str
    target_id: int = Field(ge=0)
    last_confirmed_sequence: int = Field(ge=0, le=UINT32_MAX)


# ---------------------------------------------------------------------------
# Work Requests
# ---------------------------------------------------------------------------


class WorkRequest(BaseModel):
    """One ``work`` submission for an (observation, target) pair.

    Created by the dispatcher with ``attempt=0``. The retry queue replaces
    it with a copy carrying the incremented ``attempt`` after each failed
    retry, so ``attempt`` always equals the owning entry's
    ``attempts_so_far``.

    Attributes:
        target_id: Target chain id the observation is bridged to.
        pool_id: ``bytes32`` pool identifier.
        sequence: Observation sequence.
        points: Observation payload.
        block: Block context the request was built against.
        attempt: Retry attempts made so far (``uint8``).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    target_id: int = Field(ge=0, le=UINT32_MAX)
    pool_id: str
    sequence: int = Field(ge=0, le=UINT32_MAX)
    points: tuple[ObservationPoint, ...]
    block: BlockRef
    attempt: int = Field(default=0, ge=0, le=255)

    @classmethod
    def for_target(
        cls,
        observation: Observation,
        target_id: int,
        block: BlockRef,
    ) -> "WorkRequest":
        """Build a fresh request (``attempt=0``) for one target."""
        return cls(
            target_id=target_id,
            pool_id=observation.pool_id,
            sequence=observation.sequence,
            points=observation.points,
            block=block,
        )

    @property
    def key(self) -> RequestKey:
        """Identity tuple ``(target_id, pool_id, sequence)``."""
        return (self.target_id, self.pool_id, self.sequence)

    def work_args(self) -> tuple[int, bytes, int, list[tuple[int, int]]]:
        """Return ABI arguments for ``work(uint32,bytes32,uint24,(uint32,int24)[])``."""
        return (
            self.target_id,
            bytes.fromhex(self.pool_id[2:]),
            self.sequence,
            [point.as_tuple() for point in self.points],
        )

    def with_attempt(self, attempt: int) -> "WorkRequest":
        """Return a copy with ``attempt`` replaced."""
        return self.model_copy(update={"attempt": attempt})


class TxReceiptRef(BaseModel):
    """Reference to the transaction that carried a confirmed request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    tx_hash: str
    block_number: int | None = None
