"""Unit tests for core.events module.

Tests ObservationPoint, Observation, BlockRef, TargetState, WorkRequest
and pool id normalization: ABI range validation, immutability, identity
keys and work argument construction.
"""

import pytest
from pydantic import ValidationError

from core.events import (
    INT24_MAX,
    INT24_MIN,
    UINT32_MAX,
    BlockRef,
    Observation,
    ObservationPoint,
    TargetState,
    WorkRequest,
    normalize_pool_id,
)

POOL: str = "0x" + "ab" * 32


def _observation(sequence: int = 6) -> Observation:
    return Observation(
        pool_id=POOL,
        sequence=sequence,
        points=(
            ObservationPoint(timestamp=1_700_000_000, value=-120),
            ObservationPoint(timestamp=1_700_000_012, value=35),
        ),
        block_number=19_000_000,
        log_index=3,
    )


# ---------------------------------------------------------------------------
# normalize_pool_id Tests
# ---------------------------------------------------------------------------


class TestNormalizePoolId:
    """Tests for bytes32 pool id normalization."""

    def test_bytes_input(self) -> None:
        """Raw 32 bytes become lowercase 0x hex."""
        assert normalize_pool_id(b"\xab" * 32) == POOL

    def test_uppercase_hex_lowered(self) -> None:
        """Hex strings are lowercased."""
        assert normalize_pool_id("0x" + "AB" * 32) == POOL

    def test_missing_prefix_added(self) -> None:
        """Hex without 0x gets the prefix."""
        assert normalize_pool_id("ab" * 32) == POOL

    def test_wrong_length_rejected(self) -> None:
        """Anything but 32 bytes is rejected."""
        with pytest.raises(ValueError):
            normalize_pool_id(b"\x01" * 20)

    def test_non_hex_rejected(self) -> None:
        """Non-hex characters are rejected."""
        with pytest.raises(ValueError):
            normalize_pool_id("0x" + "zz" * 32)

    def test_wrong_type_rejected(self) -> None:
        """Integers are not pool ids."""
        with pytest.raises(ValueError):
            normalize_pool_id(123)


# ---------------------------------------------------------------------------
# ObservationPoint Tests
# ---------------------------------------------------------------------------


class TestObservationPoint:
    """Tests for the (uint32, int24) observation tuple."""

    def test_as_tuple(self) -> None:
        point: ObservationPoint = ObservationPoint(timestamp=10, value=-5)
        assert point.as_tuple() == (10, -5)

    def test_int24_bounds_accepted(self) -> None:
        """Both int24 extremes are valid."""
        ObservationPoint(timestamp=0, value=INT24_MIN)
        ObservationPoint(timestamp=UINT32_MAX, value=INT24_MAX)

    def test_value_overflow_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ObservationPoint(timestamp=0, value=INT24_MAX + 1)

    def test_negative_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ObservationPoint(timestamp=-1, value=0)

    def test_frozen(self) -> None:
        point: ObservationPoint = ObservationPoint(timestamp=1, value=1)
        with pytest.raises(ValidationError):
            point.value = 2  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Observation Tests
# ---------------------------------------------------------------------------


class TestObservation:
    """Tests for the decoded PoolObserved record."""

    def test_key_is_pool_and_sequence(self) -> None:
        assert _observation(6).key == (POOL, 6)

    def test_pool_id_normalized_from_bytes(self) -> None:
        """bytes32 from the ABI decoder is accepted and normalized."""
        obs: Observation = Observation(
            pool_id=b"\xab" * 32,
            sequence=1,
            points=(),
        )
        assert obs.pool_id == POOL

    def test_points_preserve_order(self) -> None:
        obs: Observation = _observation()
        assert [p.timestamp for p in obs.points] == [1_700_000_000, 1_700_000_012]

    def test_negative_sequence_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Observation(pool_id=POOL, sequence=-1, points=())

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Observation(pool_id=POOL, sequence=1, points=(), nonce=1)  # type: ignore[call-arg]

    def test_frozen(self) -> None:
        obs: Observation = _observation()
        with pytest.raises(ValidationError):
            obs.sequence = 7  # type: ignore[misc]

    def test_equal_observations_hash_equal(self) -> None:
        """Frozen models are hashable by value."""
        assert hash(_observation(6)) == hash(_observation(6))


# ---------------------------------------------------------------------------
# BlockRef / TargetState Tests
# ---------------------------------------------------------------------------


class TestBlockRef:
    def test_defaults(self) -> None:
        block: BlockRef = BlockRef(number=5)
        assert block.hash == ""
        assert block.timestamp == 0
        assert block.base_fee_per_gas is None

    def test_negative_base_fee_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BlockRef(number=5, base_fee_per_gas=-1)


class TestTargetState:
    def test_fields(self) -> None:
        state: TargetState = TargetState(
            pool_id=POOL, target_id=10, last_confirmed_sequence=5,
        )
        assert state.last_confirmed_sequence == 5

    def test_negative_sequence_rejected(self) -> None:
        with pytest.raises(ValidationError):
            TargetState(pool_id=POOL, target_id=10, last_confirmed_sequence=-1)


# ---------------------------------------------------------------------------
# WorkRequest Tests
# ---------------------------------------------------------------------------


class TestWorkRequest:
    """Tests for per-target work requests."""

    def test_for_target_starts_at_attempt_zero(self) -> None:
        request: WorkRequest = WorkRequest.for_target(
            _observation(6), target_id=10, block=BlockRef(number=1),
        )
        assert request.attempt == 0
        assert request.target_id == 10
        assert request.sequence == 6
        assert request.points == _observation(6).points

    def test_key(self) -> None:
        request: WorkRequest = WorkRequest.for_target(
            _observation(6), target_id=137, block=BlockRef(number=1),
        )
        assert request.key == (137, POOL, 6)

    def test_work_args(self) -> None:
        """Arguments match work(uint32,bytes32,uint24,(uint32,int24)[])."""
        request: WorkRequest = WorkRequest.for_target(
            _observation(6), target_id=10, block=BlockRef(number=1),
        )
        assert request.work_args() == (
            10,
            b"\xab" * 32,
            6,
            [(1_700_000_000, -120), (1_700_000_012, 35)],
        )

    def test_with_attempt_returns_copy(self) -> None:
        request: WorkRequest = WorkRequest.for_target(
            _observation(6), target_id=10, block=BlockRef(number=1),
        )
        retried: WorkRequest = request.with_attempt(2)
        assert retried.attempt == 2
        assert request.attempt == 0
        assert retried.key == request.key

    def test_attempt_is_uint8(self) -> None:
        with pytest.raises(ValidationError):
            WorkRequest(
                target_id=10,
                pool_id=POOL,
                sequence=1,
                points=(),
                block=BlockRef(number=1),
                attempt=256,
            )
