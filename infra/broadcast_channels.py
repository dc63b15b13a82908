"""Broadcast channels: signed EIP-1559 ``work`` transactions.

Every channel implements :class:`core.ports.BroadcastChannel`. One
``submit`` call does the following:

1. ABI-encode the call from the method signature and arguments.
2. Optionally simulate it with ``eth_call`` against the latest state. A
   revert fails fast without paying gas.
3. Build an EIP-1559 transaction with a fixed gas limit and priority fee
   and ``maxFeePerGas = 2 * baseFee + priorityFee``.
4. Sign it locally with ``eth_account``.
5. Send it. :class:`PrivateRelayChannel` sends to every configured block
   builder. :class:`FlashbotsBundleChannel` sends a signed single-transaction
   bundle to a Flashbots relay for each of the next few blocks.
   :class:`DirectRpcChannel` sends through the public RPC.
6. Wait for the receipt up to ``receipt_timeout_seconds``.

Every failure raises :class:`BroadcastFailure`. The adapter routes it to
the retry queue.

Nonces:
    Requests for different targets are submitted concurrently from one
    signer. :class:`_NonceAllocator` hands out consecutive nonces under a
    lock and resyncs from the chain after any failure, so a transaction
    that was never included cannot leave a permanent gap.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Sequence

from eth_abi import encode as abi_encode
import requests
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from pydantic import BaseModel, ConfigDict, Field
from web3 import Web3

from core.errors import BroadcastFailure
from core.events import BlockRef, TxReceiptRef

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_BUILDERS: tuple[str, ...] = (
    "https://rpc.titanbuilder.xyz/",
    "https://rpc.beaverbuild.org/",
)

FLASHBOTS_RELAYS: dict[int, str] = {
    1: "https://relay.flashbots.net",
    11155111: "https://relay-sepolia.flashbots.net",
}
"""Flashbots relay endpoint by chain id (mainnet, Sepolia)."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ChannelConfig(BaseModel):
    """Configuration shared by the broadcast channels.

    Attributes:
        chain_id: Chain id the transaction is signed for.
        gas_limit: Fixed gas limit. Default 700,000.
        priority_fee_wei: Fixed priority fee. Default 2 gwei.
        simulate: Run an ``eth_call`` before signing.
        receipt_timeout_seconds: How long to wait for inclusion.
        receipt_poll_seconds: Receipt polling interval.
        builder_urls: Builder RPC endpoints (private relay only).
        request_timeout_seconds: HTTP timeout for builder and relay requests.
        bundle_relay_url: Flashbots relay endpoint (bundle channel only).
        bundle_burst_blocks: Consecutive target blocks each bundle is
            sent for (bundle channel only).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    chain_id: int = Field(default=1, gt=0)
    gas_limit: int = Field(default=700_000, gt=0)
    priority_fee_wei: int = Field(default=2_000_000_000, ge=0)
    simulate: bool = Field(default=True)
    receipt_timeout_seconds: float = Field(default=120.0, gt=0.0)
    receipt_poll_seconds: float = Field(default=2.0, gt=0.0)
    builder_urls: tuple[str, ...] = Field(default=DEFAULT_BUILDERS)
    request_timeout_seconds: float = Field(default=10.0, gt=0.0)
    bundle_relay_url: str = Field(default=FLASHBOTS_RELAYS[1], min_length=1)
    bundle_burst_blocks: int = Field(default=3, gt=0)


# ---------------------------------------------------------------------------
# ABI helpers
# ---------------------------------------------------------------------------


def split_signature(signature: str) -> tuple[str, list[str]]:
    """Split ``name(type,...)`` into the name and top-level argument types.

    Tuple types keep their nesting::

        >>> split_signature("work(uint32,bytes32,uint24,(uint32,int24)[])")
        ('work', ['uint32', 'bytes32', 'uint24', '(uint32,int24)[]'])
    """
    name, _, rest = signature.partition("(")
    if not name or not rest.endswith(")"):
        raise ValueError(f"Malformed method signature: {signature}")
    body: str = rest[:-1]

    types: list[str] = []
    depth: int = 0
    current: list[str] = []
    for char in body:
        if char == "," and depth == 0:
            types.append("".join(current))
            current = []
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        current.append(char)
    if current:
        types.append("".join(current))
    return name, types


def encode_call(signature: str, args: Sequence[Any]) -> bytes:
    """Return selector + ABI-encoded ``args`` for ``signature``."""
    _, types = split_signature(signature)
    selector: bytes = bytes(Web3.keccak(text=signature))[:4]
    return selector + abi_encode(types, list(args))


# ---------------------------------------------------------------------------
# Nonces
# ---------------------------------------------------------------------------


class _NonceAllocator:
    """Lock-guarded nonce counter for one signer."""

    def __init__(self, web3: Web3, address: str) -> None:
        self._web3: Web3 = web3
        self._address: str = address
        self._next: int | None = None
        self._lock: threading.Lock = threading.Lock()

    def allocate(self) -> int:
        with self._lock:
            on_chain: int = self._web3.eth.get_transaction_count(self._address, "latest")
            nonce: int = on_chain if self._next is None else max(on_chain, self._next)
            self._next = nonce + 1
            return nonce

    def resync(self) -> None:
        with self._lock:
            self._next = None


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class _SignedTxChannel(ABC):
    """Shared build / sign / wait logic. Subclasses implement ``_send``."""

    def __init__(self, web3: Web3, private_key: str, config: ChannelConfig) -> None:
        self._web3: Web3 = web3
        self._config: ChannelConfig = config
        self._account: LocalAccount = Account.from_key(private_key)
        self._nonces: _NonceAllocator = _NonceAllocator(web3, self._account.address)

    @property
    def address(self) -> str:
        """Signer address."""
        return self._account.address

    def submit(
        self,
        target_contract: str,
        method_signature: str,
        args: Sequence[Any],
        block: BlockRef,
    ) -> TxReceiptRef:
        to: str = Web3.to_checksum_address(target_contract)
        data: bytes = encode_call(method_signature, args)

        if self._config.simulate:
            self._simulate(to=to, data=data, block=block)

        try:
            tx: dict[str, Any] = self._build(to=to, data=data, block=block)
            signed = self._account.sign_transaction(tx)
            raw: bytes = bytes(signed.raw_transaction)
            tx_hash: str = "0x" + bytes(signed.hash).hex()
            self._send(raw, block)
            return self._wait(tx_hash)
        except BroadcastFailure:
            self._nonces.resync()
            raise
        except Exception as exc:
            self._nonces.resync()
            raise BroadcastFailure(f"Submission failed: {exc!r}") from exc

    def _simulate(self, to: str, data: bytes, block: BlockRef) -> None:
        try:
            self._web3.eth.call(
                {"from": self._account.address, "to": to, "data": data},
                block_identifier="latest",
            )
        except Exception as exc:
            raise BroadcastFailure(
                f"Simulation reverted (request block {block.number}): {exc}"
            ) from exc

    def _build(self, to: str, data: bytes, block: BlockRef) -> dict[str, Any]:
        base_fee: int | None = block.base_fee_per_gas
        if base_fee is None:
            base_fee = int(self._web3.eth.get_block("latest")["baseFeePerGas"])
        priority: int = self._config.priority_fee_wei
        return {
            "type": 2,
            "chainId": self._config.chain_id,
            "nonce": self._nonces.allocate(),
            "to": to,
            "data": data,
            "value": 0,
            "gas": self._config.gas_limit,
            "maxPriorityFeePerGas": priority,
            "maxFeePerGas": 2 * base_fee + priority,
        }

    @abstractmethod
    def _send(self, raw: bytes, block: BlockRef) -> None:
        """Hand the signed transaction to the network."""

    def _wait(self, tx_hash: str) -> TxReceiptRef:
        try:
            receipt: Any = self._web3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._config.receipt_timeout_seconds,
                poll_latency=self._config.receipt_poll_seconds,
            )
        except Exception as exc:
            raise BroadcastFailure(f"No receipt for {tx_hash}: {exc!r}") from exc

        if int(receipt["status"]) != 1:
            raise BroadcastFailure(f"Transaction {tx_hash} reverted")
        return TxReceiptRef(tx_hash=tx_hash, block_number=int(receipt["blockNumber"]))


class PrivateRelayChannel(_SignedTxChannel):
    """Sends each signed transaction to every configured block builder.

    The submission counts as sent if at least one builder accepts it.

    Args:
        web3: Client for the main RPC (nonce, simulation, receipts).
        private_key: Signer private key.
        config: Channel configuration.
        builders: Pre-built builder clients. Injectable for tests;
            default is one HTTP client per ``config.builder_urls``.
    """

    def __init__(
        self,
        web3: Web3,
        private_key: str,
        config: ChannelConfig,
        builders: Sequence[Web3] | None = None,
    ) -> None:
        super().__init__(web3=web3, private_key=private_key, config=config)
        if builders is None:
            builders = [
                Web3(
                    Web3.HTTPProvider(
                        url,
                        request_kwargs={"timeout": config.request_timeout_seconds},
                    ),
                )
                for url in config.builder_urls
            ]
        if not builders:
            raise ValueError("PrivateRelayChannel needs at least one builder")
        self._builders: list[Web3] = list(builders)

    def _send(self, raw: bytes, block: BlockRef) -> None:
        accepted: int = 0
        errors: list[str] = []
        for index, builder in enumerate(self._builders):
            try:
                builder.eth.send_raw_transaction(raw)
                accepted += 1
            except Exception as exc:
                errors.append(f"builder[{index}]: {exc!r}")
                logger.warning("Builder %d rejected transaction: %r", index, exc)

        if accepted == 0:
            raise BroadcastFailure("All builders rejected: " + "; ".join(errors))
        logger.debug("Transaction accepted by %d/%d builders", accepted, len(self._builders))


class DirectRpcChannel(_SignedTxChannel):
    """Sends each signed transaction through the main RPC endpoint."""

    def _send(self, raw: bytes, block: BlockRef) -> None:
        self._web3.eth.send_raw_transaction(raw)


class FlashbotsBundleChannel(_SignedTxChannel):
    """Sends each signed transaction as a bundle to a Flashbots relay.

    The bundle holds just the one transaction and is sent with
    ``eth_sendBundle`` for each of the ``bundle_burst_blocks`` blocks
    following the request block. The relay authenticates the sender by
    the ``X-Flashbots-Signature`` header: the bundle signer's address and
    its EIP-191 signature over the hex keccak of the request body. The
    bundle signer only identifies the searcher; it holds no funds.

    A bundle that is not included in any target block leaves no trace
    on-chain, so the receipt wait times out and the request is retried
    like any other failed submission.

    Args:
        web3: Client for the main RPC (nonce, simulation, receipts).
        private_key: Transaction signer private key.
        bundle_signer_key: Key signing relay requests.
        config: Channel configuration.
        session: HTTP session. Injectable for tests.
    """

    def __init__(
        self,
        web3: Web3,
        private_key: str,
        bundle_signer_key: str,
        config: ChannelConfig,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__(web3=web3, private_key=private_key, config=config)
        self._bundle_signer: LocalAccount = Account.from_key(bundle_signer_key)
        self._session: requests.Session = session if session is not None else requests.Session()

    @property
    def bundle_signer_address(self) -> str:
        return self._bundle_signer.address

    def target_blocks(self, block: BlockRef) -> list[int]:
        """Block numbers a bundle built on ``block`` is sent for."""
        first: int = block.number + 1
        return list(range(first, first + self._config.bundle_burst_blocks))

    def _send(self, raw: bytes, block: BlockRef) -> None:
        accepted: int = 0
        errors: list[str] = []
        for target_block in self.target_blocks(block):
            try:
                self._send_bundle(raw, target_block)
                accepted += 1
            except Exception as exc:
                errors.append(f"block {target_block}: {exc!r}")
                logger.warning("Relay rejected bundle for block %d: %r", target_block, exc)

        if accepted == 0:
            raise BroadcastFailure("Relay rejected every bundle: " + "; ".join(errors))
        logger.debug(
            "Bundle accepted for %d/%d blocks after %d",
            accepted,
            self._config.bundle_burst_blocks,
            block.number,
        )

    def _send_bundle(self, raw: bytes, target_block: int) -> Any:
        body: str = json.dumps(
            {
                "jsonrpc": "2.0",
                "id": 1,
                "method": "eth_sendBundle",
                "params": [{"txs": [Web3.to_hex(raw)], "blockNumber": hex(target_block)}],
            },
            separators=(",", ":"),
        )
        response: requests.Response = self._session.post(
            self._config.bundle_relay_url,
            data=body,
            headers={
                "Content-Type": "application/json",
                "X-Flashbots-Signature": self._signature_header(body),
            },
            timeout=self._config.request_timeout_seconds,
        )
        response.raise_for_status()

        payload: dict[str, Any] = response.json()
        if payload.get("error"):
            raise BroadcastFailure(f"eth_sendBundle error: {payload['error']}")
        return payload.get("result")

    def _signature_header(self, body: str) -> str:
        message = encode_defunct(text=Web3.to_hex(Web3.keccak(text=body)))
        signature: bytes = bytes(self._bundle_signer.sign_message(message).signature)
        return f"{self._bundle_signer.address}:{Web3.to_hex(signature)}"
