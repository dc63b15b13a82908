"""Sequence oracle backed by the job contract.

The job contract records, per target chain and pool, the last pool nonce
it has bridged. That value is the last confirmed sequence the gate
compares against.
"""

import logging
from typing import Any

from web3 import Web3

from core.errors import OracleReadError

logger: logging.Logger = logging.getLogger(__name__)

JOB_NONCE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "uint32", "name": "_chainId", "type": "uint32"},
            {"internalType": "bytes32", "name": "_poolSalt", "type": "bytes32"},
        ],
        "name": "lastPoolNonceBridged",
        "outputs": [{"internalType": "uint24", "name": "", "type": "uint24"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class JobContractOracle:
    """Reads ``lastPoolNonceBridged(chainId, poolSalt)`` via ``eth_call``.

    Args:
        web3: Connected client.
        job_address: Job contract address.
        block_identifier: Block tag the read is made at.
    """

    def __init__(
        self,
        web3: Web3,
        job_address: str,
        block_identifier: str | int = "latest",
    ) -> None:
        self._job = web3.eth.contract(
            address=Web3.to_checksum_address(job_address),
            abi=JOB_NONCE_ABI,
        )
        self._block_identifier: str | int = block_identifier

    def get_last_confirmed_sequence(self, target_id: int, pool_id: str) -> int:
        try:
            nonce: int = self._job.functions.lastPoolNonceBridged(
                target_id,
                bytes.fromhex(pool_id.removeprefix("0x")),
            ).call(block_identifier=self._block_identifier)
        except Exception as exc:
            raise OracleReadError(target_id, pool_id, repr(exc)) from exc
        logger.debug("lastPoolNonceBridged(%d, %s) = %d", target_id, pool_id, nonce)
        return int(nonce)
