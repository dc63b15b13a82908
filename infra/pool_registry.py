"""Whitelisted pools read from the data-feed contract.

The job contract names its data feed; the registry resolves it on every
read, so a data feed swapped behind the job is followed without a
restart.
"""

import logging
from typing import Any

from web3 import Web3

from core.events import normalize_pool_id
from infra.chain_source import JOB_DATA_FEED_ABI

logger: logging.Logger = logging.getLogger(__name__)

DATA_FEED_POOLS_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "whitelistedPools",
        "outputs": [{"internalType": "bytes32[]", "name": "", "type": "bytes32[]"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class DataFeedPoolRegistry:
    """Reads ``whitelistedPools()`` from the job's current data feed.

    Args:
        web3: Connected client.
        job_address: Job contract whose ``dataFeed()`` is read.
    """

    def __init__(self, web3: Web3, job_address: str) -> None:
        self._web3: Web3 = web3
        self._job = web3.eth.contract(
            address=Web3.to_checksum_address(job_address),
            abi=JOB_DATA_FEED_ABI,
        )
        self._data_feed_address: str | None = None
        self._data_feed: Any = None

    @property
    def data_feed_address(self) -> str | None:
        """Data feed used by the last read."""
        return self._data_feed_address

    def get_whitelisted_pools(self) -> list[str]:
        address: str = Web3.to_checksum_address(self._job.functions.dataFeed().call())
        if address != self._data_feed_address:
            if self._data_feed_address is not None:
                logger.warning(
                    "Job data feed changed from %s to %s", self._data_feed_address, address,
                )
            self._data_feed = self._web3.eth.contract(address=address, abi=DATA_FEED_POOLS_ABI)
            self._data_feed_address = address

        salts: list[bytes] = self._data_feed.functions.whitelistedPools().call()
        pools: list[str] = [normalize_pool_id(salt) for salt in salts]
        logger.debug("Data feed %s whitelists %d pools", address, len(pools))
        return pools
