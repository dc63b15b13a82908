"""Error taxonomy for the observation relay pipeline.

None of these errors is process-fatal. Each kind has a fixed routing:

- :class:`DecodeError` — malformed or unexpected log. Dropped with a
  warning at the normalizer; never propagated past ingestion.
- :class:`OracleReadError` — the sequence oracle could not be read.
  Aborts the current cycle for that ``(pool, target)`` pair only; the
  read is retried on the next cycle.
- :class:`BroadcastFailure` — any failed submission (network error,
  relay rejection, simulation revert, timeout). Routed to the retry
  queue.
- :class:`RetryExhausted` — terminal. The request is handed to the
  dead-letter sink exactly once.
"""


class RelayError(Exception):
    """Base class for all relay pipeline errors."""


class DecodeError(RelayError):
    """Raised when a raw log does not match the expected event shape."""


class OracleReadError(RelayError):
    """Raised when the last confirmed sequence cannot be read.

    Attributes:
        target_id: Target chain id the read was for.
        pool_id: Pool identifier the read was for.
    """

    def __init__(self, target_id: int, pool_id: str, reason: str) -> None:
        super().__init__(
            f"Oracle read failed for target={target_id} pool={pool_id}: {reason}"
        )
        self.target_id: int = target_id
        self.pool_id: str = pool_id


class BroadcastFailure(RelayError):
    """Raised by a broadcast channel when a submission does not land."""


class RetryExhausted(RelayError):
    """Raised (or recorded) when a request runs out of retry budget.

    Attributes:
        attempts: Number of retry attempts made before giving up.
    """

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts: int = attempts
