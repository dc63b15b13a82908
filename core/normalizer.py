"""Event normalizer: raw ``PoolObserved`` logs to :class:`Observation`.

The data-feed contract emits::

    event PoolObserved(bytes32 _poolSalt, uint24 _poolNonce,
                       (uint32,int24)[] _observationsData)

Deployed versions differ in which leading parameters are ``indexed``, so
the decoder accepts all three layouts and tells them apart by topic
count:

    ======  ==========================  ===============================
    topics  indexed                     ABI-encoded ``data``
    ======  ==========================  ===============================
    1       (none)                      bytes32, uint24, (uint32,int24)[]
    2       ``_poolSalt``               uint24, (uint32,int24)[]
    3       ``_poolSalt``, ``_poolNonce``  (uint32,int24)[]
    ======  ==========================  ===============================

Anything else (wrong ``topic0``, wrong topic count, undecodable data,
out-of-range values) raises :class:`DecodeError`.

Error isolation:
    :func:`decode_pool_observed` is pure and raises. :class:`EventNormalizer`
    wraps it for the ingestion path: decode failures are counted and
    logged with rate limiting, then dropped. They never propagate.
"""

import logging
import threading
from typing import Any, Iterable

from eth_abi import decode as abi_decode
from pydantic import ValidationError
from web3 import Web3

from core.errors import DecodeError
from core.events import Observation, ObservationPoint
from core.ports import RawLog

logger: logging.Logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Event signature
# ---------------------------------------------------------------------------

POOL_OBSERVED_SIGNATURE: str = "PoolObserved(bytes32,uint24,(uint32,int24)[])"

POOL_OBSERVED_TOPIC: str = "0x" + bytes(
    Web3.keccak(text=POOL_OBSERVED_SIGNATURE),
).hex()
"""``topic0`` of the ``PoolObserved`` event (lowercase ``0x`` hex)."""

_POINTS_TYPE: str = "(uint32,int24)[]"

# ---------------------------------------------------------------------------
# Rate-limited logging thresholds
# ---------------------------------------------------------------------------

_LOG_FIRST_N: int = 10
"""Log every one of the first N decode failures."""

_LOG_EVERY_N: int = 1000
"""After the first N failures, log every Nth occurrence."""


def _to_bytes(value: Any) -> bytes:
    """Coerce ``HexBytes`` / ``bytes`` / hex ``str`` to ``bytes``."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value.removeprefix("0x"))
    raise DecodeError(f"Expected bytes or hex string, got {type(value).__name__}")


def _to_hex(value: Any) -> str:
    return "0x" + _to_bytes(value).hex()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_pool_observed(raw_log: RawLog) -> Observation:
    """Decode one raw log into an :class:`Observation`.

    Args:
        raw_log: Log mapping with at least ``topics`` and ``data``.
            ``blockNumber``, ``logIndex`` and ``transactionHash`` are
            carried over when present.

    Returns:
        The decoded, validated observation.

    Raises:
        DecodeError: If the log does not match the ``PoolObserved``
            topic/ABI shape.
    """
    try:
        topics: list[bytes] = [_to_bytes(t) for t in raw_log["topics"]]
        data: bytes = _to_bytes(raw_log.get("data", b""))
    except (KeyError, TypeError, ValueError) as exc:
        raise DecodeError(f"Malformed log: {exc}") from exc

    if not topics or "0x" + topics[0].hex() != POOL_OBSERVED_TOPIC:
        raise DecodeError("Unexpected topic0 for PoolObserved")

    try:
        if len(topics) == 3:
            pool_salt: bytes = topics[1]
            (nonce,) = abi_decode(["uint24"], topics[2])
            (points,) = abi_decode([_POINTS_TYPE], data)
        elif len(topics) == 2:
            pool_salt = topics[1]
            nonce, points = abi_decode(["uint24", _POINTS_TYPE], data)
        elif len(topics) == 1:
            pool_salt, nonce, points = abi_decode(
                ["bytes32", "uint24", _POINTS_TYPE], data,
            )
        else:
            raise DecodeError(f"Unexpected topic count {len(topics)}")
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(f"ABI decode failed: {exc}") from exc

    try:
        tx_hash: Any = raw_log.get("transactionHash")
        return Observation(
            pool_id=pool_salt,
            sequence=nonce,
            points=tuple(
                ObservationPoint(timestamp=ts, value=value) for ts, value in points
            ),
            block_number=int(raw_log.get("blockNumber") or 0),
            log_index=int(raw_log.get("logIndex") or 0),
            tx_hash=_to_hex(tx_hash) if tx_hash else "",
        )
    except (ValidationError, ValueError) as exc:
        raise DecodeError(f"Invalid observation values: {exc}") from exc


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------


class EventNormalizer:
    """Ingestion-side wrapper around :func:`decode_pool_observed`.

    Drops logs that fail to decode (with a rate-limited warning) and
    keeps counters for both outcomes. Safe to call from several worker
    threads.

    Example:
        >>> normalizer = EventNormalizer()
        >>> observation = normalizer.normalize(raw_log)
        >>> if observation is not None:
        ...     controller.ingest(observation)
    """

    def __init__(self) -> None:
        self._decoded: int = 0
        self._dropped: int = 0
        self._counter_lock: threading.Lock = threading.Lock()

    def normalize(self, raw_log: RawLog) -> Observation | None:
        """Decode ``raw_log``, returning ``None`` if it was dropped."""
        try:
            observation: Observation = decode_pool_observed(raw_log)
        except DecodeError as exc:
            with self._counter_lock:
                self._dropped += 1
                count: int = self._dropped
            self._log_drop(raw_log=raw_log, exc=exc, count=count)
            return None

        with self._counter_lock:
            self._decoded += 1
        logger.debug(
            "Decoded PoolObserved pool=%s sequence=%d points=%d",
            observation.pool_id,
            observation.sequence,
            len(observation.points),
        )
        return observation

    def normalize_many(self, raw_logs: Iterable[RawLog]) -> list[Observation]:
        """Decode a batch, silently skipping dropped logs."""
        observations: list[Observation] = []
        for raw_log in raw_logs:
            observation: Observation | None = self.normalize(raw_log)
            if observation is not None:
                observations.append(observation)
        return observations

    def stats(self) -> dict[str, int]:
        """Return ``decoded`` / ``dropped`` counters."""
        with self._counter_lock:
            return {"decoded": self._decoded, "dropped": self._dropped}

    @staticmethod
    def _log_drop(raw_log: RawLog, exc: DecodeError, count: int) -> None:
        if count <= _LOG_FIRST_N:
            logger.warning(
                "Dropping undecodable log (block=%s index=%s): %s (%d/%d)",
                raw_log.get("blockNumber"),
                raw_log.get("logIndex"),
                exc,
                count,
                _LOG_FIRST_N,
            )
        elif count % _LOG_EVERY_N == 0:
            logger.warning("Decode failures ongoing: %d total", count)
