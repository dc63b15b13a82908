"""Infrastructure layer for the observation relay keeper.

This package provides the web3-backed implementations of the core
ports: the polling chain source, the job contract sequence oracle, the
data-feed pool registry, the private relay, Flashbots bundle and direct
RPC broadcast channels, the dead-letter sinks and the environment-backed
settings.
"""

from infra.broadcast_channels import (
    ChannelConfig,
    DirectRpcChannel,
    FlashbotsBundleChannel,
    PrivateRelayChannel,
)
from infra.chain_source import ChainSourceConfig, ChainSourceState, Web3ChainSource
from infra.dead_letter import JsonlDeadLetterSink, LoggingDeadLetterSink
from infra.pool_registry import DataFeedPoolRegistry
from infra.sequence_oracle import JobContractOracle
from infra.settings import CONTRACTS, KeeperSettings

__all__: list[str] = [
    "CONTRACTS",
    "ChainSourceConfig",
    "ChainSourceState",
    "ChannelConfig",
    "DataFeedPoolRegistry",
    "DirectRpcChannel",
    "FlashbotsBundleChannel",
    "JobContractOracle",
    "JsonlDeadLetterSink",
    "KeeperSettings",
    "LoggingDeadLetterSink",
    "PrivateRelayChannel",
    "Web3ChainSource",
]
