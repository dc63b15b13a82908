"""Unit tests for core.pipeline module.

Drives PipelineController with an in-memory chain source: catch-up into
the backlog, per-block re-evaluation, live events, replay idempotence,
backlog pruning, retry exhaustion end to end, stall reporting and the
start / shutdown lifecycle.
"""

import logging
import threading
import time
from typing import Any, Iterator, Mapping

import pytest

from conftest import (
    DATA_FEED_ADDRESS,
    JOB_ADDRESS,
    POOL_A,
    POOL_B,
    FakeChannel,
    FakeOracle,
    RecordingSink,
    build_log,
)
from core.broadcast import BroadcastConfig
from core.dispatcher import DispatchReport
from core.events import BlockRef
from core.normalizer import POOL_OBSERVED_TOPIC
from core.pipeline import PipelineConfig, PipelineController, PipelineState
from core.ports import BlockCallback, LogCallback, RawLog
from core.retry_queue import RetryQueueConfig
from core.sequence_gate import GatePolicy, SequenceGateConfig

HEAD: int = 20_000


class FakeChainSource:
    """Chain source serving a fixed log history and recording subscriptions."""

    def __init__(self, logs: list[RawLog] | None = None, head: int = HEAD) -> None:
        self.logs: list[RawLog] = list(logs or [])
        self.head: int = head
        self.queries: list[tuple[Mapping[str, Any], int]] = []
        self.block_callbacks: list[BlockCallback] = []
        self.log_callbacks: list[LogCallback] = []
        self.shutdown_calls: int = 0
        self.fail_queries: bool = False

    def get_latest_block(self) -> BlockRef:
        return BlockRef(number=self.head, base_fee_per_gas=10**10)

    def query_events(self, event_filter: Mapping[str, Any], from_block: int) -> list[RawLog]:
        self.queries.append((event_filter, from_block))
        if self.fail_queries:
            raise ConnectionError("logs endpoint down")
        return [log for log in self.logs if log["blockNumber"] >= from_block]

    def subscribe_blocks(self, callback: BlockCallback) -> None:
        self.block_callbacks.append(callback)

    def subscribe_events(self, event_filter: Mapping[str, Any], callback: LogCallback) -> None:
        self.log_callbacks.append(callback)

    def shutdown(self) -> None:
        self.shutdown_calls += 1


def make_config(**overrides: Any) -> PipelineConfig:
    values: dict[str, Any] = {
        "data_feed_address": DATA_FEED_ADDRESS,
        "broadcast": BroadcastConfig(job_address=JOB_ADDRESS),
        "history_depth_blocks": 1_000,
        "event_workers": 2,
        "watchdog_interval_seconds": 60.0,
    }
    values.update(overrides)
    return PipelineConfig(**values)


@pytest.fixture()
def advancing_channel(oracle: FakeOracle) -> FakeChannel:
    """Channel whose confirmations update the oracle like included txs."""
    return FakeChannel(confirm_advances=oracle)


@pytest.fixture()
def source() -> FakeChainSource:
    return FakeChainSource(
        logs=[
            build_log(sequence=2, block_number=HEAD - 10),
            build_log(sequence=1, block_number=HEAD - 20),
            build_log(sequence=3, block_number=HEAD - 5),
        ],
    )


@pytest.fixture()
def controller(
    source: FakeChainSource,
    oracle: FakeOracle,
    advancing_channel: FakeChannel,
    sink: RecordingSink,
) -> Iterator[PipelineController]:
    c: PipelineController = PipelineController(
        config=make_config(),
        chain_source=source,
        oracle=oracle,
        channel=advancing_channel,
        dead_letter=sink,
    )
    yield c
    c.shutdown()


def block_at(number: int) -> BlockRef:
    return BlockRef(number=number, base_fee_per_gas=10**10)


# ---------------------------------------------------------------------------
# Catch-up
# ---------------------------------------------------------------------------


class TestCatchUp:
    def test_queries_history_window(
        self, controller: PipelineController, source: FakeChainSource,
    ) -> None:
        controller.catch_up()
        event_filter, from_block = source.queries[0]
        assert from_block == HEAD - 1_000
        assert event_filter == {
            "address": DATA_FEED_ADDRESS,
            "topics": [POOL_OBSERVED_TOPIC],
        }

    def test_loads_backlog_in_sequence_order(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        assert controller.catch_up() == 3
        assert [o.sequence for o in controller.backlog()] == [1, 2, 3]
        # Dispatched on the next block, not during catch-up
        assert advancing_channel.calls == []

    def test_history_depth_clamped_at_genesis(
        self, oracle: FakeOracle, channel: FakeChannel, sink: RecordingSink,
    ) -> None:
        source: FakeChainSource = FakeChainSource(head=50)
        c: PipelineController = PipelineController(
            make_config(), source, oracle, channel, sink,
        )
        c.catch_up()
        assert source.queries[0][1] == 0
        c.shutdown()

    def test_replay_adds_nothing(self, controller: PipelineController) -> None:
        controller.catch_up()
        assert controller.catch_up() == 0
        assert len(controller.backlog()) == 3


# ---------------------------------------------------------------------------
# Block cycles
# ---------------------------------------------------------------------------


class TestOnBlock:
    def test_strict_relays_one_sequence_per_block(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        controller.catch_up()
        for n in range(1, 4):
            report: DispatchReport = controller.on_block(block_at(HEAD + n))
            assert report.submitted == 2
        assert [s for t, _, s in advancing_channel.submitted() if t == 10] == [1, 2, 3]
        assert [s for t, _, s in advancing_channel.submitted() if t == 137] == [1, 2, 3]

    def test_confirmed_observations_pruned(
        self, controller: PipelineController,
    ) -> None:
        controller.catch_up()
        controller.on_block(block_at(HEAD + 1))
        assert len(controller.backlog()) == 3
        controller.on_block(block_at(HEAD + 2))
        assert [o.sequence for o in controller.backlog()] == [2, 3]

    def test_replay_never_resubmits(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        """Re-reading the same history after progress submits nothing new."""
        controller.catch_up()
        for n in range(1, 5):
            controller.on_block(block_at(HEAD + n))
        submitted: int = len(advancing_channel.calls)
        controller.catch_up()
        report: DispatchReport = controller.on_block(block_at(HEAD + 5))
        assert report.submitted == 0
        assert len(advancing_channel.calls) == submitted == 6

    def test_window_policy_sends_gap(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        advancing_channel: FakeChannel,
        sink: RecordingSink,
    ) -> None:
        source.logs = [build_log(sequence=8, block_number=HEAD - 1)]
        oracle.set(10, POOL_A, 5)
        oracle.set(137, POOL_A, 5)
        c: PipelineController = PipelineController(
            make_config(gate=SequenceGateConfig(policy=GatePolicy.WINDOW)),
            source,
            oracle,
            advancing_channel,
            sink,
        )
        c.catch_up()
        assert c.on_block(block_at(HEAD + 1)).submitted == 2
        c.shutdown()

    def test_strict_holds_gap(
        self,
        controller: PipelineController,
        source: FakeChainSource,
        oracle: FakeOracle,
    ) -> None:
        source.logs = [build_log(sequence=8, block_number=HEAD - 1)]
        oracle.set(10, POOL_A, 5)
        oracle.set(137, POOL_A, 5)
        controller.catch_up()
        report: DispatchReport = controller.on_block(block_at(HEAD + 1))
        assert report.held == 2
        assert len(controller.backlog()) == 1

    def test_oracle_error_isolated_to_target(
        self,
        controller: PipelineController,
        oracle: FakeOracle,
        advancing_channel: FakeChannel,
    ) -> None:
        oracle.failing.add((137, POOL_A))
        controller.catch_up()
        report: DispatchReport = controller.on_block(block_at(HEAD + 1))
        assert report.oracle_errors == 1
        assert advancing_channel.submitted() == [(10, POOL_A, 1)]

    def test_old_observations_evicted(
        self,
        controller: PipelineController,
        source: FakeChainSource,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        source.logs = [build_log(sequence=9, block_number=HEAD - 10)]
        controller.catch_up()
        with caplog.at_level(logging.WARNING, logger="core.pipeline"):
            controller.on_block(block_at(HEAD + 1_000))
        assert controller.backlog() == []
        assert "Evicting unconfirmed observation" in caplog.text

    def test_block_updates_health(self, controller: PipelineController) -> None:
        controller.on_block(block_at(HEAD + 1))
        assert controller.stats().last_block_number == HEAD + 1
        assert controller.stats().cycles == 1


# ---------------------------------------------------------------------------
# Live events
# ---------------------------------------------------------------------------


class TestOnRawLog:
    def test_dispatches_immediately(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        report: DispatchReport | None = controller.on_raw_log(build_log(sequence=1))
        assert report is not None and report.submitted == 2
        assert sorted(advancing_channel.submitted()) == [(10, POOL_A, 1), (137, POOL_A, 1)]

    def test_uses_current_cycle_block(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        controller.on_block(block_at(HEAD + 7))
        controller.on_raw_log(build_log(sequence=1, pool_id=POOL_B))
        assert {call[3].number for call in advancing_channel.calls} == {HEAD + 7}

    def test_duplicate_ignored(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        controller.on_raw_log(build_log(sequence=1))
        assert controller.on_raw_log(build_log(sequence=1)) is None
        assert len(advancing_channel.calls) == 2

    def test_undecodable_dropped(self, controller: PipelineController) -> None:
        raw: dict[str, Any] = build_log(sequence=1)
        raw["topics"] = [bytes(32)]
        assert controller.on_raw_log(raw) is None
        assert controller.stats().events_dropped == 1
        assert controller.backlog() == []

    def test_held_live_event_sent_on_later_block(
        self, controller: PipelineController, advancing_channel: FakeChannel,
    ) -> None:
        controller.on_block(block_at(HEAD + 1))
        controller.on_raw_log(build_log(sequence=2))
        assert advancing_channel.calls == []
        controller.on_raw_log(build_log(sequence=1))
        controller.on_block(block_at(HEAD + 2))
        assert [s for t, _, s in advancing_channel.submitted() if t == 10] == [1, 2]


# ---------------------------------------------------------------------------
# Retries end to end
# ---------------------------------------------------------------------------


class TestRetryExhaustion:
    def test_failing_target_dead_lettered_once(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        sink: RecordingSink,
    ) -> None:
        channel: FakeChannel = FakeChannel(confirm_advances=oracle)
        channel.failing_targets.add(137)
        source.logs = [build_log(sequence=1, block_number=HEAD - 1)]
        c: PipelineController = PipelineController(
            make_config(retry=RetryQueueConfig(max_retries=3)),
            source,
            oracle,
            channel,
            sink,
        )
        c.catch_up()
        c.on_block(block_at(HEAD + 1))

        base: float = time.time()
        for n in range(1, 5):
            # New cycles must not bypass the queue for the in-flight request
            c.on_block(block_at(HEAD + 1 + n))
            c.retry_queue.tick(now=base + 61.0 * n)

        target_137_calls: int = sum(1 for t, _, _ in channel.submitted() if t == 137)
        assert target_137_calls == 4
        assert len(sink.records) == 1
        assert sink.records[0][1] == 3
        assert sink.records[0][0].target_id == 137
        c.shutdown()

    def test_dead_lettered_request_not_dispatched_again(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        sink: RecordingSink,
    ) -> None:
        """Later cycles skip an exhausted request while it stays in the backlog."""
        channel: FakeChannel = FakeChannel(confirm_advances=oracle)
        channel.failing_targets.add(137)
        source.logs = [build_log(sequence=1, block_number=HEAD - 1)]
        c: PipelineController = PipelineController(
            make_config(retry=RetryQueueConfig(max_retries=1)),
            source,
            oracle,
            channel,
            sink,
        )
        c.catch_up()
        c.on_block(block_at(HEAD + 1))

        base: float = time.time()
        reports: list[DispatchReport] = []
        for n in range(1, 13):
            reports.append(c.on_block(block_at(HEAD + 1 + n)))
            c.retry_queue.tick(now=base + 61.0 * n)

        target_137_calls: int = sum(1 for t, _, _ in channel.submitted() if t == 137)
        assert target_137_calls == 2
        assert len(sink.records) == 1
        assert sink.records[0][1] == 1
        assert sum(r.dead_lettered for r in reports) == 10
        assert c.stats().retry.parked == 1
        assert [o.sequence for o in c.backlog()] == [1]
        c.shutdown()

    def test_eviction_releases_dead_lettered_request(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        sink: RecordingSink,
    ) -> None:
        channel: FakeChannel = FakeChannel(confirm_advances=oracle)
        channel.failing_targets.add(137)
        source.logs = [build_log(sequence=1, block_number=HEAD - 1)]
        c: PipelineController = PipelineController(
            make_config(retry=RetryQueueConfig(max_retries=0)),
            source,
            oracle,
            channel,
            sink,
        )
        c.catch_up()
        c.on_block(block_at(HEAD + 1))
        c.retry_queue.tick(now=time.time() + 61.0)
        assert c.stats().retry.parked == 1

        c.on_block(block_at(HEAD + 1_000))
        assert c.backlog() == []
        assert c.stats().retry.parked == 0
        c.shutdown()

    def test_retry_dropped_once_confirmed_on_chain(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        sink: RecordingSink,
    ) -> None:
        """A sequence that landed through another path is not re-sent."""
        channel: FakeChannel = FakeChannel(confirm_advances=oracle)
        channel.failing_targets.add(137)
        source.logs = [build_log(sequence=1, block_number=HEAD - 1)]
        c: PipelineController = PipelineController(
            make_config(retry=RetryQueueConfig(max_retries=3)),
            source,
            oracle,
            channel,
            sink,
        )
        c.catch_up()
        c.on_block(block_at(HEAD + 1))
        oracle.set(137, POOL_A, 1)

        base: float = time.time()
        already_confirmed: int = 0
        for n in range(1, 5):
            already_confirmed += c.retry_queue.tick(now=base + 61.0 * n).already_confirmed

        assert already_confirmed == 1
        assert sum(1 for t, _, _ in channel.submitted() if t == 137) == 1
        assert sink.records == []
        assert not c.retry_queue.is_in_flight((137, POOL_A, 1))
        assert c.stats().retry.resubmitted_total == 0
        c.shutdown()


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestCheckHealth:
    def test_stall_logged_once_then_recovery(
        self, controller: PipelineController, caplog: pytest.LogCaptureFixture,
    ) -> None:
        controller.on_block(block_at(HEAD + 1))
        later: int = time.perf_counter_ns() + 10_000 * 1_000_000_000
        with caplog.at_level(logging.INFO, logger="core.pipeline"):
            assert controller.check_health(now_ns=later) is True
            assert controller.check_health(now_ns=later) is True
            controller.on_block(block_at(HEAD + 2))
            assert controller.check_health() is False
        messages: list[str] = [r.getMessage() for r in caplog.records]
        assert sum("Block stream stalled" in m for m in messages) == 1
        assert sum("Block stream recovered" in m for m in messages) == 1

    def test_unknown_before_first_block(self, controller: PipelineController) -> None:
        assert controller.check_health() is False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_subscribes_and_runs_catch_up(
        self, controller: PipelineController, source: FakeChainSource,
    ) -> None:
        controller.start()
        assert controller.state is PipelineState.RUNNING
        assert len(source.queries) == 1
        assert len(source.block_callbacks) == 1
        assert len(source.log_callbacks) == 1

    def test_start_twice_rejected(self, controller: PipelineController) -> None:
        controller.start()
        with pytest.raises(RuntimeError, match="Cannot start"):
            controller.start()

    def test_catch_up_failure_does_not_block_start(
        self, controller: PipelineController, source: FakeChainSource,
    ) -> None:
        source.fail_queries = True
        controller.start()
        assert controller.state is PipelineState.RUNNING
        assert len(source.block_callbacks) == 1

    def test_live_callback_dispatched_by_worker(
        self,
        controller: PipelineController,
        source: FakeChainSource,
        advancing_channel: FakeChannel,
    ) -> None:
        source.logs = []
        controller.start()
        done: threading.Event = threading.Event()
        original_submit = advancing_channel.submit

        def tracking_submit(*args: Any) -> Any:
            receipt = original_submit(*args)
            if len(advancing_channel.calls) >= 2:
                done.set()
            return receipt

        advancing_channel.submit = tracking_submit  # type: ignore[method-assign]
        source.log_callbacks[0](build_log(sequence=1))
        assert done.wait(timeout=5.0)

    def test_shutdown_idempotent(
        self, controller: PipelineController, source: FakeChainSource,
    ) -> None:
        controller.start()
        controller.shutdown()
        controller.shutdown()
        assert controller.state is PipelineState.SHUTDOWN
        assert source.shutdown_calls == 1

    def test_stats_snapshot(self, controller: PipelineController) -> None:
        controller.catch_up()
        controller.on_block(block_at(HEAD + 1))
        stats = controller.stats()
        assert stats.state is PipelineState.INIT
        assert stats.backlog_size == 3
        assert stats.events_decoded == 3
        assert stats.dispatch_totals.submitted == 2
        assert stats.retry.confirmed_total == 2


# ---------------------------------------------------------------------------
# Block cycle thread
# ---------------------------------------------------------------------------


class GatedChannel(FakeChannel):
    """Channel whose submissions block until ``release`` is set."""

    def __init__(self, confirm_advances: FakeOracle | None = None) -> None:
        super().__init__(confirm_advances=confirm_advances)
        self.entered: threading.Event = threading.Event()
        self.release: threading.Event = threading.Event()

    def submit(self, *args: Any) -> Any:
        self.entered.set()
        self.release.wait(timeout=10.0)
        return super().submit(*args)


def wait_for(predicate: Any, timeout: float = 5.0) -> bool:
    deadline: float = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestBlockCycleThread:
    @pytest.fixture()
    def gated(self, oracle: FakeOracle) -> GatedChannel:
        return GatedChannel(confirm_advances=oracle)

    @pytest.fixture()
    def running(
        self,
        source: FakeChainSource,
        oracle: FakeOracle,
        gated: GatedChannel,
        sink: RecordingSink,
    ) -> Iterator[PipelineController]:
        c: PipelineController = PipelineController(
            make_config(), source, oracle, gated, sink,
        )
        c.start()
        yield c
        gated.release.set()
        c.shutdown()

    def test_block_callback_returns_while_cycle_runs(
        self,
        running: PipelineController,
        source: FakeChainSource,
        gated: GatedChannel,
    ) -> None:
        source.block_callbacks[0](block_at(HEAD + 1))
        assert gated.entered.wait(timeout=5.0)

        # Subscription thread is free while the submission is blocked
        source.block_callbacks[0](block_at(HEAD + 2))
        assert running.stats().last_block_number == HEAD + 2
        assert running.check_health() is False

    def test_blocks_coalesced_while_busy(
        self,
        running: PipelineController,
        source: FakeChainSource,
        gated: GatedChannel,
    ) -> None:
        source.block_callbacks[0](block_at(HEAD + 1))
        assert gated.entered.wait(timeout=5.0)

        source.block_callbacks[0](block_at(HEAD + 2))
        source.block_callbacks[0](block_at(HEAD + 3))
        gated.release.set()

        assert wait_for(lambda: running.stats().cycles == 2)
        stats = running.stats()
        assert stats.blocks_coalesced == 1
        assert stats.last_block_number == HEAD + 3
        assert {call[3].number for call in gated.calls} <= {HEAD + 1, HEAD + 3}
