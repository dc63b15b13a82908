"""Unit tests for core.sequence_gate module.

Tests SequenceGate under both policies (successor, hold, stale, window
bounds) and TargetStateCache (single oracle read per key and cycle,
error caching, concurrent reads).
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from pydantic import ValidationError

from conftest import POOL_A, POOL_B, FakeOracle, build_observation
from core.errors import OracleReadError
from core.sequence_gate import (
    GateDecision,
    GatePolicy,
    SequenceGate,
    SequenceGateConfig,
    TargetStateCache,
)


# ---------------------------------------------------------------------------
# SequenceGateConfig Tests
# ---------------------------------------------------------------------------


class TestSequenceGateConfig:
    def test_defaults(self) -> None:
        config: SequenceGateConfig = SequenceGateConfig()
        assert config.policy is GatePolicy.STRICT
        assert config.window == 10

    def test_policy_from_string(self) -> None:
        """Environment strings map onto the enum."""
        assert SequenceGateConfig(policy="window").policy is GatePolicy.WINDOW

    def test_window_below_two_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SequenceGateConfig(window=1)

    def test_unknown_policy_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SequenceGateConfig(policy="eager")


# ---------------------------------------------------------------------------
# SequenceGate: strict policy
# ---------------------------------------------------------------------------


class TestStrictPolicy:
    """Only the immediate successor is dispatched."""

    def test_successor_dispatched(self) -> None:
        gate: SequenceGate = SequenceGate()
        assert gate.evaluate(build_observation(6), last_confirmed=5) is GateDecision.DISPATCH

    def test_gap_held(self) -> None:
        gate: SequenceGate = SequenceGate()
        assert gate.evaluate(build_observation(8), last_confirmed=5) is GateDecision.HOLD

    def test_equal_is_stale(self) -> None:
        gate: SequenceGate = SequenceGate()
        assert gate.evaluate(build_observation(5), last_confirmed=5) is GateDecision.STALE

    def test_older_is_stale(self) -> None:
        gate: SequenceGate = SequenceGate()
        assert gate.evaluate(build_observation(3), last_confirmed=5) is GateDecision.STALE

    def test_first_sequence_from_zero(self) -> None:
        gate: SequenceGate = SequenceGate()
        assert gate.evaluate(build_observation(1), last_confirmed=0) is GateDecision.DISPATCH


# ---------------------------------------------------------------------------
# SequenceGate: window policy
# ---------------------------------------------------------------------------


class TestWindowPolicy:
    """Anything strictly inside (last, last + window) is dispatched."""

    @pytest.fixture()
    def gate(self) -> SequenceGate:
        return SequenceGate(SequenceGateConfig(policy=GatePolicy.WINDOW, window=10))

    def test_gap_inside_window_dispatched(self, gate: SequenceGate) -> None:
        assert gate.evaluate(build_observation(8), last_confirmed=5) is GateDecision.DISPATCH

    def test_upper_bound_exclusive(self, gate: SequenceGate) -> None:
        assert gate.evaluate(build_observation(14), last_confirmed=5) is GateDecision.DISPATCH
        assert gate.evaluate(build_observation(15), last_confirmed=5) is GateDecision.HOLD

    def test_stale_still_discarded(self, gate: SequenceGate) -> None:
        assert gate.evaluate(build_observation(5), last_confirmed=5) is GateDecision.STALE


# ---------------------------------------------------------------------------
# TargetStateCache Tests
# ---------------------------------------------------------------------------


class TestTargetStateCache:
    """Cycle-scoped oracle reads."""

    def test_reads_oracle_once_per_key(self) -> None:
        oracle: FakeOracle = FakeOracle({(10, POOL_A): 5})
        cache: TargetStateCache = TargetStateCache(oracle, cycle_id=1)
        assert cache.last_confirmed(POOL_A, 10) == 5
        assert cache.last_confirmed(POOL_A, 10) == 5
        assert oracle.calls == [(10, POOL_A)]
        assert cache.oracle_reads == 1

    def test_keys_independent(self) -> None:
        oracle: FakeOracle = FakeOracle({(10, POOL_A): 5, (137, POOL_A): 2})
        cache: TargetStateCache = TargetStateCache(oracle)
        assert cache.last_confirmed(POOL_A, 10) == 5
        assert cache.last_confirmed(POOL_A, 137) == 2
        assert cache.last_confirmed(POOL_B, 10) == 0
        assert cache.oracle_reads == 3

    def test_new_cycle_rereads(self) -> None:
        """A fresh cache sees updated on-chain state."""
        oracle: FakeOracle = FakeOracle({(10, POOL_A): 5})
        assert TargetStateCache(oracle, cycle_id=1).last_confirmed(POOL_A, 10) == 5
        oracle.set(10, POOL_A, 6)
        assert TargetStateCache(oracle, cycle_id=2).last_confirmed(POOL_A, 10) == 6

    def test_error_cached_for_cycle(self) -> None:
        oracle: FakeOracle = FakeOracle()
        oracle.failing.add((10, POOL_A))
        cache: TargetStateCache = TargetStateCache(oracle)
        for _ in range(3):
            with pytest.raises(OracleReadError) as exc_info:
                cache.last_confirmed(POOL_A, 10)
        assert exc_info.value.target_id == 10
        assert exc_info.value.pool_id == POOL_A
        assert len(oracle.calls) == 1

    def test_unexpected_exception_wrapped(self) -> None:
        class BrokenOracle:
            def get_last_confirmed_sequence(self, target_id: int, pool_id: str) -> int:
                raise ConnectionError("boom")

        cache: TargetStateCache = TargetStateCache(BrokenOracle())
        with pytest.raises(OracleReadError, match="boom"):
            cache.last_confirmed(POOL_A, 10)

    def test_state_model(self) -> None:
        cache: TargetStateCache = TargetStateCache(FakeOracle({(137, POOL_B): 9}))
        state = cache.state(POOL_B, 137)
        assert (state.pool_id, state.target_id, state.last_confirmed_sequence) == (
            POOL_B,
            137,
            9,
        )

    def test_concurrent_reads_single_oracle_call(self) -> None:
        """Many threads asking for one key trigger one oracle read."""
        release: threading.Event = threading.Event()

        class SlowOracle(FakeOracle):
            def get_last_confirmed_sequence(self, target_id: int, pool_id: str) -> int:
                release.wait(timeout=2.0)
                return super().get_last_confirmed_sequence(target_id, pool_id)

        oracle: SlowOracle = SlowOracle({(10, POOL_A): 4})
        cache: TargetStateCache = TargetStateCache(oracle)
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(cache.last_confirmed, POOL_A, 10) for _ in range(8)]
            release.set()
            results: list[int] = [f.result() for f in futures]
        assert results == [4] * 8
        assert len(oracle.calls) == 1
