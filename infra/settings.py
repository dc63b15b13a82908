"""Environment-backed keeper settings.

Reads the process environment (populated from ``.env`` by
``python-dotenv`` in the bootstrap script) into one validated
:class:`KeeperSettings`, and derives the per-component configs from it.

Environment variables:

    ===============================  ========================================
    ``RPC_HTTP_URI``                 Main JSON-RPC endpoint (required)
    ``RPC_HTTP_URI_FOR_LOGS``        ``eth_getLogs`` endpoint (optional)
    ``TX_SIGNER_PRIVATE_KEY``        Signer key (required)
    ``CHAIN_ID``                     Source chain id (default 1)
    ``TARGET_CHAIN_IDS``             Comma-separated targets (default 10,137)
    ``BUILDER_URLS``                 Comma-separated builder RPCs
    ``GAS_LIMIT``                    Default 700000
    ``PRIORITY_FEE_WEI``             Default 2000000000
    ``RETRY_INTERVAL_SECONDS``       Default 60
    ``MAX_RETRIES``                  Default 3
    ``PAST_BLOCKS``                  Catch-up depth (default 14400)
    ``GATE_POLICY``                  ``strict`` or ``window`` (default strict)
    ``GATE_WINDOW``                  Window size (default 10)
    ``DEAD_LETTER_PATH``             JSONL file; unset logs only
    ``BUNDLE_SIGNER_PRIVATE_KEY``    Flashbots relay auth key (bundle mode)
    ``FLASHBOTS_RELAY_URL``          Relay override (default per chain)
    ``BUNDLE_BURST_BLOCKS``          Target blocks per bundle (default 3)
    ``FETCH_TRIGGER_REASON``         1 cooldown, 2 TWAP (default 1)
    ===============================  ========================================
"""

import os
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.broadcast import BroadcastConfig
from core.dispatcher import DEFAULT_TARGETS, DispatcherConfig
from core.fetch_job import FetchJobConfig, TriggerReason
from core.pipeline import PipelineConfig
from core.retry_queue import RetryQueueConfig
from core.sequence_gate import GatePolicy, SequenceGateConfig
from infra.broadcast_channels import DEFAULT_BUILDERS, FLASHBOTS_RELAYS, ChannelConfig
from infra.chain_source import ChainSourceConfig


class ContractAddresses(BaseModel):
    """Deployed job and data-feed contracts on one source chain."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    job: str
    data_feed: str


CONTRACTS: dict[int, ContractAddresses] = {
    1: ContractAddresses(
        job="0x1f5f0DA9391AB08c7F0150d45B41F6900fb4Fd0C",
        data_feed="0x1ce81290Eb4c10cC9Fa71256799665423e87b628",
    ),
    11155111: ContractAddresses(
        job="0x6c461C0296eBE3715820F1Cbde856219e06ac3B8",
        data_feed="0x553365bdda2Fd60608Fb05CB7ad32620e3A126DD",
    ),
}
"""Known deployments by source chain id (mainnet, Sepolia)."""


def _split_csv(value: object) -> object:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return value


class KeeperSettings(BaseModel):
    """All runtime settings of the keeper.

    Attributes:
        rpc_url: Main JSON-RPC endpoint.
        logs_rpc_url: Optional separate ``eth_getLogs`` endpoint.
        private_key: Transaction signer key.
        chain_id: Source chain id; selects the contract deployment.
        target_chain_ids: Target chains every observation is bridged to.
        builder_urls: Builder RPC endpoints for private submission.
        gas_limit: Fixed gas limit for ``work``.
        priority_fee_wei: Fixed priority fee.
        retry_interval_seconds: Fixed delay between retries.
        max_retries: Retries before dead-lettering.
        past_blocks: Catch-up depth in blocks.
        gate_policy: Sequence gate policy.
        gate_window: Window size for the windowed policy.
        dead_letter_path: JSONL dead-letter file, ``None`` to log only.
        bundle_signer_key: Key authenticating Flashbots relay requests.
        bundle_relay_url: Relay override; default is the chain's relay.
        bundle_burst_blocks: Consecutive blocks each bundle targets.
        fetch_trigger_reason: Reason sent with data-fetch ``work`` calls.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    rpc_url: str = Field(min_length=1)
    logs_rpc_url: str | None = None
    private_key: str = Field(min_length=1, repr=False)
    chain_id: int = Field(default=1, gt=0)
    target_chain_ids: tuple[int, ...] = Field(default=DEFAULT_TARGETS, min_length=1)
    builder_urls: tuple[str, ...] = Field(default=DEFAULT_BUILDERS)
    gas_limit: int = Field(default=700_000, gt=0)
    priority_fee_wei: int = Field(default=2_000_000_000, ge=0)
    retry_interval_seconds: float = Field(default=60.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0, le=255)
    past_blocks: int = Field(default=14_400, ge=0)
    gate_policy: GatePolicy = GatePolicy.STRICT
    gate_window: int = Field(default=10, ge=2)
    dead_letter_path: str | None = None
    bundle_signer_key: str | None = Field(default=None, repr=False)
    bundle_relay_url: str | None = None
    bundle_burst_blocks: int = Field(default=3, gt=0)
    fetch_trigger_reason: TriggerReason = TriggerReason.COOLDOWN

    @field_validator("target_chain_ids", "builder_urls", mode="before")
    @classmethod
    def _split_comma_list(cls, v: object) -> object:
        """Accept ``"10,137"`` style strings from the environment."""
        return _split_csv(v)

    @field_validator("fetch_trigger_reason", mode="before")
    @classmethod
    def _reason_from_str(cls, v: object) -> object:
        if isinstance(v, str) and v.strip().isdigit():
            return int(v)
        return v

    @field_validator("chain_id")
    @classmethod
    def _known_chain(cls, v: int) -> int:
        if v not in CONTRACTS:
            raise ValueError(
                f"No known deployment for chain id {v} "
                f"(supported: {sorted(CONTRACTS)})"
            )
        return v

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "KeeperSettings":
        """Build settings from environment variables.

        Unset or empty variables fall back to the field defaults.

        Raises:
            pydantic.ValidationError: On missing or invalid values.
        """
        env: Mapping[str, str] = os.environ if environ is None else environ
        names: dict[str, str] = {
            "rpc_url": "RPC_HTTP_URI",
            "logs_rpc_url": "RPC_HTTP_URI_FOR_LOGS",
            "private_key": "TX_SIGNER_PRIVATE_KEY",
            "chain_id": "CHAIN_ID",
            "target_chain_ids": "TARGET_CHAIN_IDS",
            "builder_urls": "BUILDER_URLS",
            "gas_limit": "GAS_LIMIT",
            "priority_fee_wei": "PRIORITY_FEE_WEI",
            "retry_interval_seconds": "RETRY_INTERVAL_SECONDS",
            "max_retries": "MAX_RETRIES",
            "past_blocks": "PAST_BLOCKS",
            "gate_policy": "GATE_POLICY",
            "gate_window": "GATE_WINDOW",
            "dead_letter_path": "DEAD_LETTER_PATH",
            "bundle_signer_key": "BUNDLE_SIGNER_PRIVATE_KEY",
            "bundle_relay_url": "FLASHBOTS_RELAY_URL",
            "bundle_burst_blocks": "BUNDLE_BURST_BLOCKS",
            "fetch_trigger_reason": "FETCH_TRIGGER_REASON",
        }
        values: dict[str, str] = {
            field: env[var] for field, var in names.items() if env.get(var)
        }
        values.setdefault("rpc_url", "")
        values.setdefault("private_key", "")
        return cls.model_validate(values)

    @property
    def contracts(self) -> ContractAddresses:
        return CONTRACTS[self.chain_id]

    def chain_source_config(self) -> ChainSourceConfig:
        return ChainSourceConfig(rpc_url=self.rpc_url, logs_rpc_url=self.logs_rpc_url)

    def channel_config(self) -> ChannelConfig:
        return ChannelConfig(
            chain_id=self.chain_id,
            gas_limit=self.gas_limit,
            priority_fee_wei=self.priority_fee_wei,
            builder_urls=self.builder_urls,
            bundle_relay_url=self.bundle_relay_url or FLASHBOTS_RELAYS[self.chain_id],
            bundle_burst_blocks=self.bundle_burst_blocks,
        )

    def fetch_job_config(self) -> FetchJobConfig:
        return FetchJobConfig(
            job_address=self.contracts.job,
            trigger_reason=self.fetch_trigger_reason,
        )

    def pipeline_config(self, data_feed_address: str) -> PipelineConfig:
        """Derive the pipeline config for the resolved data feed."""
        return PipelineConfig(
            data_feed_address=data_feed_address,
            broadcast=BroadcastConfig(job_address=self.contracts.job),
            dispatcher=DispatcherConfig(targets=self.target_chain_ids),
            gate=SequenceGateConfig(policy=self.gate_policy, window=self.gate_window),
            retry=RetryQueueConfig(
                retry_interval_seconds=self.retry_interval_seconds,
                max_retries=self.max_retries,
            ),
            history_depth_blocks=self.past_blocks,
        )
