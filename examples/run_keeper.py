"""Run the observation relay keeper.

Wires the full pipeline against a live chain:

    Web3ChainSource ─► PipelineController ─► PrivateRelayChannel (builders)
                             │
                     JobContractOracle (lastPoolNonceBridged)

On start the keeper reads ``PoolObserved`` events from the last
``PAST_BLOCKS`` blocks, then relays every new observation to each target
chain as soon as the job contract is ready for it.

Prerequisites:
    1. Create a ``.env`` file with at least:
       - ``RPC_HTTP_URI``
       - ``TX_SIGNER_PRIVATE_KEY``
       Optional settings are listed in :mod:`infra.settings`.
    2. Install dependencies: ``pip install -e .``

Usage:
    python -m examples.run_keeper
    python -m examples.run_keeper --policy window --window 10
    python -m examples.run_keeper --direct --no-simulate
    python -m examples.run_keeper --bundle

Press Ctrl+C to stop.
"""

import argparse
import logging
import signal
import threading

from dotenv import load_dotenv
from pydantic import ValidationError

from core.pipeline import PipelineConfig, PipelineController, PipelineStats
from core.ports import BroadcastChannel, DeadLetterSink
from infra.broadcast_channels import (
    ChannelConfig,
    DirectRpcChannel,
    FlashbotsBundleChannel,
    PrivateRelayChannel,
)
from infra.chain_source import Web3ChainSource
from infra.dead_letter import JsonlDeadLetterSink, LoggingDeadLetterSink
from infra.sequence_oracle import JobContractOracle
from infra.settings import KeeperSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)

_STATS_INTERVAL_SECONDS: float = 60.0


def main() -> None:
    """Start the keeper and run until interrupted."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Relay PoolObserved observations to target chains",
    )
    parser.add_argument(
        "--policy",
        choices=["strict", "window"],
        default=None,
        help="Sequence gate policy (default: GATE_POLICY or strict)",
    )
    parser.add_argument(
        "--window",
        type=int,
        default=None,
        help="Window size for --policy window (default: GATE_WINDOW or 10)",
    )
    parser.add_argument(
        "--past-blocks",
        type=int,
        default=None,
        help="Catch-up depth in blocks (default: PAST_BLOCKS or 14400)",
    )
    route = parser.add_mutually_exclusive_group()
    route.add_argument(
        "--direct",
        action="store_true",
        help="Send through the public RPC instead of private builders",
    )
    route.add_argument(
        "--bundle",
        action="store_true",
        help="Send as Flashbots bundles (needs BUNDLE_SIGNER_PRIVATE_KEY)",
    )
    parser.add_argument(
        "--no-simulate",
        action="store_true",
        help="Skip the pre-flight eth_call",
    )
    args: argparse.Namespace = parser.parse_args()

    try:
        settings: KeeperSettings = KeeperSettings.from_env()
    except ValidationError as exc:
        logger.error(
            "Invalid configuration. Set RPC_HTTP_URI and TX_SIGNER_PRIVATE_KEY "
            "environment variables.\n%s",
            exc,
        )
        return

    overrides: dict[str, object] = {}
    if args.policy is not None:
        overrides["gate_policy"] = args.policy
    if args.window is not None:
        overrides["gate_window"] = args.window
    if args.past_blocks is not None:
        overrides["past_blocks"] = args.past_blocks
    if overrides:
        settings = KeeperSettings.model_validate(
            {**settings.model_dump(), **overrides},
        )

    # Setup components
    chain_source: Web3ChainSource = Web3ChainSource(settings.chain_source_config())
    data_feed: str = chain_source.resolve_data_feed(settings.contracts.job)
    config: PipelineConfig = settings.pipeline_config(data_feed_address=data_feed)

    oracle: JobContractOracle = JobContractOracle(
        web3=chain_source.web3,
        job_address=settings.contracts.job,
    )
    channel_config: ChannelConfig = settings.channel_config().model_copy(
        update={"simulate": not args.no_simulate},
    )
    channel: BroadcastChannel
    if args.bundle:
        if not settings.bundle_signer_key:
            logger.error("--bundle needs BUNDLE_SIGNER_PRIVATE_KEY")
            return
        channel = FlashbotsBundleChannel(
            web3=chain_source.web3,
            private_key=settings.private_key,
            bundle_signer_key=settings.bundle_signer_key,
            config=channel_config,
        )
    elif args.direct:
        channel = DirectRpcChannel(
            web3=chain_source.web3,
            private_key=settings.private_key,
            config=channel_config,
        )
    else:
        channel = PrivateRelayChannel(
            web3=chain_source.web3,
            private_key=settings.private_key,
            config=channel_config,
        )
    dead_letter: DeadLetterSink = (
        JsonlDeadLetterSink(settings.dead_letter_path)
        if settings.dead_letter_path
        else LoggingDeadLetterSink()
    )

    controller: PipelineController = PipelineController(
        config=config,
        chain_source=chain_source,
        oracle=oracle,
        channel=channel,
        dead_letter=dead_letter,
    )

    stop: threading.Event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    logger.info(
        "Starting keeper (chain=%d, job=%s, data_feed=%s, targets=%s)",
        settings.chain_id,
        settings.contracts.job,
        data_feed,
        list(settings.target_chain_ids),
    )
    controller.start()

    try:
        while not stop.wait(timeout=_STATS_INTERVAL_SECONDS):
            stats: PipelineStats = controller.stats()
            logger.info(
                "Stats: block=%s cycles=%d backlog=%d submitted=%d confirmed=%d "
                "retrying=%d dead_lettered=%d decode_drops=%d coalesced=%d",
                stats.last_block_number,
                stats.cycles,
                stats.backlog_size,
                stats.dispatch_totals.submitted,
                stats.dispatch_totals.confirmed,
                stats.retry.pending + stats.retry.scheduled,
                stats.retry.dead_lettered_total,
                stats.events_dropped,
                stats.blocks_coalesced,
            )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        controller.shutdown()


if __name__ == "__main__":
    main()
