"""Unit tests for core.normalizer module.

Tests decoding of PoolObserved logs in all three indexed layouts,
rejection of malformed logs and the EventNormalizer drop path.
"""

import logging
from typing import Any

import pytest
from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import Web3

from conftest import POOL_A, build_log
from core.errors import DecodeError
from core.events import Observation
from core.normalizer import (
    POOL_OBSERVED_SIGNATURE,
    POOL_OBSERVED_TOPIC,
    EventNormalizer,
    decode_pool_observed,
)


class TestTopic:
    def test_topic_is_keccak_of_signature(self) -> None:
        expected: str = "0x" + bytes(Web3.keccak(text=POOL_OBSERVED_SIGNATURE)).hex()
        assert POOL_OBSERVED_TOPIC == expected
        assert len(POOL_OBSERVED_TOPIC) == 66


# ---------------------------------------------------------------------------
# decode_pool_observed Tests
# ---------------------------------------------------------------------------


class TestDecodePoolObserved:
    """Tests for the pure decoder."""

    @pytest.mark.parametrize("indexed", [0, 1, 2])
    def test_all_layouts_decode_identically(self, indexed: int) -> None:
        """Observation is the same whichever leading params are indexed."""
        raw: dict[str, Any] = build_log(
            sequence=42,
            points=((1_700_000_000, -120), (1_700_000_012, 8_388_607)),
            indexed=indexed,
            block_number=123,
            log_index=7,
        )
        obs: Observation = decode_pool_observed(raw)
        assert obs.pool_id == POOL_A
        assert obs.sequence == 42
        assert [p.as_tuple() for p in obs.points] == [
            (1_700_000_000, -120),
            (1_700_000_012, 8_388_607),
        ]
        assert obs.block_number == 123
        assert obs.log_index == 7
        assert obs.tx_hash == "0x" + "00" * 32

    def test_hex_string_fields_accepted(self) -> None:
        """Logs with hex-string topics/data decode like HexBytes logs."""
        raw: dict[str, Any] = build_log(sequence=3)
        raw["topics"] = ["0x" + bytes(t).hex() for t in raw["topics"]]
        raw["data"] = "0x" + raw["data"].hex()
        assert decode_pool_observed(raw).sequence == 3

    def test_hexbytes_fields_accepted(self) -> None:
        raw: dict[str, Any] = build_log(sequence=4)
        raw["topics"] = [HexBytes(t) for t in raw["topics"]]
        raw["data"] = HexBytes(raw["data"])
        assert decode_pool_observed(raw).sequence == 4

    def test_empty_points(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1, points=())
        assert decode_pool_observed(raw).points == ()

    def test_missing_block_metadata_defaults(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1)
        del raw["blockNumber"], raw["logIndex"], raw["transactionHash"]
        obs: Observation = decode_pool_observed(raw)
        assert (obs.block_number, obs.log_index, obs.tx_hash) == (0, 0, "")

    def test_wrong_topic0_rejected(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1)
        raw["topics"][0] = bytes(Web3.keccak(text="Transfer(address,address,uint256)"))
        with pytest.raises(DecodeError, match="topic0"):
            decode_pool_observed(raw)

    def test_no_topics_rejected(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1)
        raw["topics"] = []
        with pytest.raises(DecodeError):
            decode_pool_observed(raw)

    def test_too_many_topics_rejected(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1)
        raw["topics"].append(bytes(32))
        with pytest.raises(DecodeError, match="topic count"):
            decode_pool_observed(raw)

    def test_truncated_data_rejected(self) -> None:
        raw: dict[str, Any] = build_log(sequence=1, indexed=0)
        raw["data"] = raw["data"][:40]
        with pytest.raises(DecodeError, match="ABI decode"):
            decode_pool_observed(raw)

    def test_missing_topics_key_rejected(self) -> None:
        with pytest.raises(DecodeError, match="Malformed"):
            decode_pool_observed({"data": b""})

    def test_out_of_range_value_rejected(self) -> None:
        """A value outside int24 decodes at ABI level but fails validation."""
        raw: dict[str, Any] = build_log(sequence=1, indexed=2)
        raw["data"] = abi_encode(["(uint32,int256)[]"], [[(1, 2**30)]])
        with pytest.raises(DecodeError):
            decode_pool_observed(raw)


# ---------------------------------------------------------------------------
# EventNormalizer Tests
# ---------------------------------------------------------------------------


class TestEventNormalizer:
    """Tests for the ingestion-side wrapper."""

    def test_normalize_success_counts(self) -> None:
        normalizer: EventNormalizer = EventNormalizer()
        obs: Observation | None = normalizer.normalize(build_log(sequence=5))
        assert obs is not None and obs.sequence == 5
        assert normalizer.stats() == {"decoded": 1, "dropped": 0}

    def test_normalize_drops_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        """Undecodable logs return None and are logged, never raised."""
        normalizer: EventNormalizer = EventNormalizer()
        raw: dict[str, Any] = build_log(sequence=5)
        raw["topics"] = raw["topics"][:1] + [bytes(32)] * 3
        with caplog.at_level(logging.WARNING, logger="core.normalizer"):
            assert normalizer.normalize(raw) is None
        assert normalizer.stats() == {"decoded": 0, "dropped": 1}
        assert "Dropping undecodable log" in caplog.text

    def test_normalize_many_skips_bad_logs(self) -> None:
        normalizer: EventNormalizer = EventNormalizer()
        bad: dict[str, Any] = build_log(sequence=2)
        bad["data"] = b"\x00"
        bad["topics"] = bad["topics"][:1]
        observations: list[Observation] = normalizer.normalize_many(
            [build_log(sequence=1), bad, build_log(sequence=3)],
        )
        assert [o.sequence for o in observations] == [1, 3]
        assert normalizer.stats()["dropped"] == 1

    def test_drop_logging_rate_limited(self, caplog: pytest.LogCaptureFixture) -> None:
        """Only the first failures are logged individually."""
        normalizer: EventNormalizer = EventNormalizer()
        with caplog.at_level(logging.WARNING, logger="core.normalizer"):
            for _ in range(50):
                normalizer.normalize({"topics": []})
        individual: int = sum(
            1 for r in caplog.records if "Dropping undecodable log" in r.getMessage()
        )
        assert individual == 10
        assert normalizer.stats()["dropped"] == 50
