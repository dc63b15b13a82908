"""Core domain layer for the observation relay keeper.

This package provides the observation and work request models, the event
normalizer, the sequence gate, the fan-out dispatcher, the broadcast
adapter, the retry queue, the pipeline controller that wires them
together, and the data-fetch job that triggers new observations. It
performs no network I/O itself: every external system is
reached through the protocols in :mod:`core.ports`.
"""

from core.broadcast import BroadcastAdapter, BroadcastConfig, BroadcastOutcome
from core.dispatcher import DispatcherConfig, DispatchReport, WorkDispatcher
from core.errors import (
    BroadcastFailure,
    DecodeError,
    OracleReadError,
    RelayError,
    RetryExhausted,
)
from core.events import BlockRef, Observation, ObservationPoint, WorkRequest
from core.feed_health import StreamHealthConfig, StreamHealthMonitor
from core.fetch_job import DataFetchJob, FetchCycleReport, FetchJobConfig, TriggerReason
from core.normalizer import EventNormalizer, decode_pool_observed
from core.pipeline import PipelineConfig, PipelineController, PipelineStats
from core.retry_queue import RetryQueue, RetryQueueConfig, RetryState
from core.sequence_gate import (
    GateDecision,
    GatePolicy,
    SequenceGate,
    SequenceGateConfig,
    TargetStateCache,
)

__all__: list[str] = [
    "BlockRef",
    "BroadcastAdapter",
    "BroadcastConfig",
    "BroadcastFailure",
    "BroadcastOutcome",
    "DataFetchJob",
    "DecodeError",
    "DispatchReport",
    "DispatcherConfig",
    "EventNormalizer",
    "FetchCycleReport",
    "FetchJobConfig",
    "GateDecision",
    "GatePolicy",
    "Observation",
    "ObservationPoint",
    "OracleReadError",
    "PipelineConfig",
    "PipelineController",
    "PipelineStats",
    "RelayError",
    "RetryExhausted",
    "RetryQueue",
    "RetryQueueConfig",
    "RetryState",
    "SequenceGate",
    "SequenceGateConfig",
    "StreamHealthConfig",
    "StreamHealthMonitor",
    "TargetStateCache",
    "TriggerReason",
    "WorkDispatcher",
    "WorkRequest",
    "decode_pool_observed",
]
