"""Run the data-fetch job.

On every new block, asks the job contract to fetch a fresh observation
for each pool the data feed whitelists:

    Web3ChainSource (blocks) ─► DataFetchJob ─► FlashbotsBundleChannel
                                     │
                     DataFeedPoolRegistry (whitelistedPools)

The resulting ``PoolObserved`` events are what ``run_keeper`` relays.

Prerequisites:
    1. Create a ``.env`` file with at least:
       - ``RPC_HTTP_URI``
       - ``TX_SIGNER_PRIVATE_KEY``
       - ``BUNDLE_SIGNER_PRIVATE_KEY`` (unless ``--builders``)
       Optional settings are listed in :mod:`infra.settings`.
    2. Install dependencies: ``pip install -e .``

Usage:
    python -m examples.run_fetch_job
    python -m examples.run_fetch_job --reason 2
    python -m examples.run_fetch_job --builders

Press Ctrl+C to stop.
"""

import argparse
import logging
import signal
import threading

from dotenv import load_dotenv
from pydantic import ValidationError

from core.fetch_job import DataFetchJob, FetchJobConfig, FetchJobStats, TriggerReason
from core.ports import BroadcastChannel
from infra.broadcast_channels import ChannelConfig, FlashbotsBundleChannel, PrivateRelayChannel
from infra.chain_source import Web3ChainSource
from infra.pool_registry import DataFeedPoolRegistry
from infra.settings import KeeperSettings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger: logging.Logger = logging.getLogger(__name__)

_STATS_INTERVAL_SECONDS: float = 60.0


def main() -> None:
    """Start the fetch job and run until interrupted."""
    load_dotenv()

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Trigger data-feed fetches for every whitelisted pool",
    )
    parser.add_argument(
        "--reason",
        type=int,
        choices=[int(r) for r in TriggerReason],
        default=None,
        help="Trigger reason: 1 cooldown, 2 TWAP (default: FETCH_TRIGGER_REASON or 1)",
    )
    parser.add_argument(
        "--builders",
        action="store_true",
        help="Send to the private builders instead of a Flashbots relay",
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
        logger.error("Invalid configuration.\n%s", exc)
        return
    if not args.builders and not settings.bundle_signer_key:
        logger.error("Set BUNDLE_SIGNER_PRIVATE_KEY or pass --builders")
        return

    job_config: FetchJobConfig = settings.fetch_job_config()
    if args.reason is not None:
        job_config = job_config.model_copy(update={"trigger_reason": TriggerReason(args.reason)})

    chain_source: Web3ChainSource = Web3ChainSource(settings.chain_source_config())
    channel_config: ChannelConfig = settings.channel_config().model_copy(
        update={"simulate": not args.no_simulate},
    )
    channel: BroadcastChannel
    if args.builders:
        channel = PrivateRelayChannel(
            web3=chain_source.web3,
            private_key=settings.private_key,
            config=channel_config,
        )
    else:
        channel = FlashbotsBundleChannel(
            web3=chain_source.web3,
            private_key=settings.private_key,
            bundle_signer_key=settings.bundle_signer_key,
            config=channel_config,
        )

    job: DataFetchJob = DataFetchJob(
        config=job_config,
        registry=DataFeedPoolRegistry(chain_source.web3, settings.contracts.job),
        channel=channel,
    )

    stop: threading.Event = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    logger.info(
        "Starting fetch job (chain=%d, job=%s, reason=%s)",
        settings.chain_id,
        job_config.job_address,
        job_config.trigger_reason.name,
    )
    chain_source.subscribe_blocks(job.on_block)

    try:
        while not stop.wait(timeout=_STATS_INTERVAL_SECONDS):
            stats: FetchJobStats = job.stats()
            logger.info(
                "Stats: cycles=%d dispatched=%d confirmed=%d failed=%d in_flight=%d",
                stats.cycles,
                stats.dispatched_total,
                stats.confirmed_total,
                stats.failed_total,
                stats.in_flight,
            )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        chain_source.shutdown()
        job.shutdown()


if __name__ == "__main__":
    main()
