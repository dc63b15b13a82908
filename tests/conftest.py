"""Shared fixtures: in-memory fakes for the core ports and log builders."""

import threading
from typing import Any, Callable

import pytest
from eth_abi import encode as abi_encode

from core.errors import BroadcastFailure, OracleReadError
from core.events import BlockRef, Observation, ObservationPoint, TxReceiptRef, WorkRequest
from core.normalizer import POOL_OBSERVED_TOPIC

POOL_A: str = "0x" + "aa" * 32
POOL_B: str = "0x" + "bb" * 32
JOB_ADDRESS: str = "0x1f5f0DA9391AB08c7F0150d45B41F6900fb4Fd0C"
DATA_FEED_ADDRESS: str = "0x1ce81290Eb4c10cC9Fa71256799665423e87b628"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeOracle:
    """Sequence oracle backed by a dict, with optional failing keys."""

    def __init__(self, values: dict[tuple[int, str], int] | None = None) -> None:
        self.values: dict[tuple[int, str], int] = dict(values or {})
        self.failing: set[tuple[int, str]] = set()
        self.calls: list[tuple[int, str]] = []
        self._lock: threading.Lock = threading.Lock()

    def set(self, target_id: int, pool_id: str, value: int) -> None:
        self.values[(target_id, pool_id)] = value

    def get_last_confirmed_sequence(self, target_id: int, pool_id: str) -> int:
        with self._lock:
            self.calls.append((target_id, pool_id))
        if (target_id, pool_id) in self.failing:
            raise OracleReadError(target_id, pool_id, "rpc unavailable")
        return self.values.get((target_id, pool_id), 0)


class FakeChannel:
    """Broadcast channel recording every call.

    Fails for targets in ``failing_targets`` (or every call when
    ``fail_all`` is set). When ``confirm_advances`` is given, a confirmed
    submission also advances that oracle, like an included ``work`` tx.
    """

    def __init__(self, confirm_advances: FakeOracle | None = None) -> None:
        self.calls: list[tuple[str, str, tuple[Any, ...], BlockRef]] = []
        self.failing_targets: set[int] = set()
        self.fail_all: bool = False
        self._oracle: FakeOracle | None = confirm_advances
        self._lock: threading.Lock = threading.Lock()

    def submit(
        self,
        target_contract: str,
        method_signature: str,
        args: Any,
        block: BlockRef,
    ) -> TxReceiptRef:
        with self._lock:
            self.calls.append((target_contract, method_signature, tuple(args), block))
            count: int = len(self.calls)
        target_id, pool_salt, sequence, _ = args
        if self.fail_all or target_id in self.failing_targets:
            raise BroadcastFailure(f"relay rejected target {target_id}")
        if self._oracle is not None:
            self._oracle.set(target_id, "0x" + bytes(pool_salt).hex(), sequence)
        return TxReceiptRef(tx_hash="0x" + f"{count:064x}", block_number=block.number)

    def submitted(self) -> list[tuple[int, str, int]]:
        """``(target_id, pool_id, sequence)`` of every call, in call order."""
        with self._lock:
            return [
                (args[0], "0x" + bytes(args[1]).hex(), args[2])
                for _, _, args, _ in self.calls
            ]


class RecordingSink:
    """Dead-letter sink keeping every record in memory."""

    def __init__(self) -> None:
        self.records: list[tuple[WorkRequest, int]] = []

    def record(self, work_request: WorkRequest, final_attempt_count: int) -> None:
        self.records.append((work_request, final_attempt_count))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_observation(
    sequence: int,
    pool_id: str = POOL_A,
    points: tuple[tuple[int, int], ...] = ((1_700_000_000, 100),),
    block_number: int = 0,
) -> Observation:
    return Observation(
        pool_id=pool_id,
        sequence=sequence,
        points=tuple(ObservationPoint(timestamp=t, value=v) for t, v in points),
        block_number=block_number,
    )


def build_log(
    sequence: int,
    pool_id: str = POOL_A,
    points: tuple[tuple[int, int], ...] = ((1_700_000_000, -120),),
    indexed: int = 2,
    block_number: int = 100,
    log_index: int = 0,
) -> dict[str, Any]:
    """Encode a ``PoolObserved`` log with ``indexed`` leading params indexed."""
    salt: bytes = bytes.fromhex(pool_id[2:])
    point_list: list[tuple[int, int]] = list(points)
    topics: list[bytes] = [bytes.fromhex(POOL_OBSERVED_TOPIC[2:])]
    if indexed == 0:
        data: bytes = abi_encode(
            ["bytes32", "uint24", "(uint32,int24)[]"], [salt, sequence, point_list],
        )
    elif indexed == 1:
        topics.append(salt)
        data = abi_encode(["uint24", "(uint32,int24)[]"], [sequence, point_list])
    else:
        topics.append(salt)
        topics.append(abi_encode(["uint24"], [sequence]))
        data = abi_encode(["(uint32,int24)[]"], [point_list])
    return {
        "address": DATA_FEED_ADDRESS,
        "topics": topics,
        "data": data,
        "blockNumber": block_number,
        "logIndex": log_index,
        "transactionHash": bytes(32),
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def oracle() -> FakeOracle:
    """Return an oracle where every (target, pool) starts at 0."""
    return FakeOracle()


@pytest.fixture()
def channel() -> FakeChannel:
    """Return a channel that confirms every submission."""
    return FakeChannel()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def block() -> BlockRef:
    return BlockRef(number=19_000_000, hash="0x" + "11" * 32, base_fee_per_gas=10**10)


@pytest.fixture()
def make_observation() -> Callable[..., Observation]:
    return build_observation


@pytest.fixture()
def make_log() -> Callable[..., dict[str, Any]]:
    return build_log
