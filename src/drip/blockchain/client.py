"""Chain client wrapper for DRIP faucet operations.

Every RPC call carries its own timeout and failures are mapped onto a small
exception hierarchy so the submitter can decide between retrying, resolving
an ambiguous submission, or giving up:

- TransientChainError: safe to retry (fee too low, sequence conflict, node
  unreachable before the request was sent)
- ChainTimeoutError: the request may or may not have reached the node
- ChainRejectedError: the node refused the transaction for good
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound

logger = logging.getLogger(__name__)

# Substrings of JSON-RPC error messages returned by geth, erigon, anvil and friends.
FEE_TOO_LOW_MARKERS = (
    "underpriced",
    "fee too low",
    "gas price too low",
    "max fee per gas less than block base fee",
    "fee cap less than block base fee",
)
SEQUENCE_CONFLICT_MARKERS = (
    "nonce too low",
    "nonce too high",
    "nonce has already been used",
    "invalid nonce",
)
ALREADY_KNOWN_MARKERS = (
    "already known",
    "known transaction",
    "already imported",
)


class ChainError(Exception):
    """Base class for chain client failures."""


class TransientChainError(ChainError):
    """A failure that is safe to retry."""


class FeeTooLowError(TransientChainError):
    """The node rejected the transaction fee as too low."""


class SequenceConflictError(TransientChainError):
    """The transaction nonce does not match the account's sequence on chain."""


class ChainUnavailableError(TransientChainError):
    """The RPC endpoint could not be reached; nothing was sent."""


class ChainTimeoutError(ChainError):
    """The call timed out or the connection dropped mid-request.

    For a submission this is ambiguous: the transaction may have been
    accepted by the node.
    """


class ChainRejectedError(ChainError):
    """The node rejected the transaction and retrying will not help."""


def _rpc_message(exc: BaseException) -> str:
    """Extract the JSON-RPC error message from a web3 exception."""
    for arg in exc.args:
        if isinstance(arg, dict) and "message" in arg:
            return str(arg["message"])
    rpc_response = getattr(exc, "rpc_response", None)
    if isinstance(rpc_response, dict):
        error = rpc_response.get("error") or {}
        if isinstance(error, dict) and "message" in error:
            return str(error["message"])
    return str(exc)


def is_already_known(exc: BaseException) -> bool:
    """Check whether a submission error means the node already has the transaction."""
    message = _rpc_message(exc).lower()
    return any(marker in message for marker in ALREADY_KNOWN_MARKERS)


def classify_rpc_error(exc: BaseException) -> ChainError:
    """Map a raw web3/aiohttp exception onto the chain error hierarchy.

    Parameters
    ----------
    exc : BaseException
        The exception raised by the underlying client.

    Returns
    -------
    ChainError
        The classified error, chained to the original.
    """
    if isinstance(exc, ChainError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        error: ChainError = ChainTimeoutError(f"RPC call timed out: {exc}")
    elif isinstance(exc, aiohttp.ClientConnectorError):
        error = ChainUnavailableError(f"RPC endpoint unreachable: {exc}")
    elif isinstance(exc, (aiohttp.ClientError, ConnectionError)):
        error = ChainTimeoutError(f"RPC connection failed: {exc}")
    else:
        message = _rpc_message(exc)
        lowered = message.lower()
        if any(marker in lowered for marker in FEE_TOO_LOW_MARKERS):
            error = FeeTooLowError(message)
        elif any(marker in lowered for marker in SEQUENCE_CONFLICT_MARKERS):
            error = SequenceConflictError(message)
        else:
            error = ChainRejectedError(message)

    error.__cause__ = exc
    return error


class TransactionState(str, Enum):
    """Chain-side state of a transaction hash."""

    INCLUDED = "included"
    REVERTED = "reverted"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass
class TransactionStatus:
    """Result of a transaction status query."""

    state: TransactionState
    block_number: int | None = None

    @property
    def is_final(self) -> bool:
        """Whether the transaction has been included in a block."""
        return self.state in (TransactionState.INCLUDED, TransactionState.REVERTED)


class ChainClient:
    """Async JSON-RPC client for the faucet's chain operations.

    Parameters
    ----------
    rpc_endpoint : str
        The JSON-RPC endpoint URL.
    rpc_timeout : float
        Per-call timeout in seconds, independent of any client-facing timeout.
    """

    def __init__(self, rpc_endpoint: str, rpc_timeout: float = 10.0):
        self._rpc_endpoint = rpc_endpoint
        self._rpc_timeout = rpc_timeout
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_endpoint))
        self._chain_id: int | None = None

    @property
    def rpc_endpoint(self) -> str:
        """The configured RPC endpoint."""
        return self._rpc_endpoint

    async def _call(self, coro):
        """Await an RPC coroutine with the per-call timeout and classify failures."""
        try:
            return await asyncio.wait_for(coro, timeout=self._rpc_timeout)
        except TransactionNotFound:
            raise
        except Exception as e:
            raise classify_rpc_error(e) from e

    async def is_connected(self) -> bool:
        """Check if the RPC endpoint answers.

        Returns
        -------
        bool
            True if connected, False otherwise.
        """
        try:
            return bool(await asyncio.wait_for(self._w3.is_connected(), self._rpc_timeout))
        except Exception as e:
            logger.warning("RPC connectivity check failed", extra={"error": str(e)})
            return False

    async def get_chain_id(self) -> int:
        """Get the chain ID from the connected network (cached after first call)."""
        if self._chain_id is None:
            self._chain_id = int(await self._call(self._w3.eth.chain_id))
        return self._chain_id

    async def get_sequence(self, address: str, block: str = "latest") -> int:
        """Get the account's next sequence number (nonce).

        Parameters
        ----------
        address : str
            The account address.
        block : str
            ``"latest"`` for the confirmed count, ``"pending"`` to include
            transactions still in the node's mempool.

        Returns
        -------
        int
            The transaction count at the given block tag.
        """
        checksum_address = AsyncWeb3.to_checksum_address(address)
        return int(await self._call(self._w3.eth.get_transaction_count(checksum_address, block)))

    async def get_balance(self, address: str) -> int:
        """Get the native balance of an address in wei."""
        checksum_address = AsyncWeb3.to_checksum_address(address)
        return int(await self._call(self._w3.eth.get_balance(checksum_address)))

    async def get_balance_ether(self, address: str) -> Decimal:
        """Get the native balance of an address in ether units."""
        wei = await self.get_balance(address)
        return Decimal(str(AsyncWeb3.from_wei(wei, "ether")))

    async def estimate_fee(self) -> int:
        """Get the current gas price in wei."""
        return int(await self._call(self._w3.eth.gas_price))

    async def submit(self, raw_transaction: bytes, tx_hash: str) -> str:
        """Broadcast a signed transaction.

        Parameters
        ----------
        raw_transaction : bytes
            The signed, RLP-encoded transaction.
        tx_hash : str
            The locally computed hash of the signed payload, returned when the
            node reports the transaction as already known.

        Returns
        -------
        str
            The transaction hash.

        Raises
        ------
        ChainError
            Classified submission failure.
        """
        try:
            result = await asyncio.wait_for(
                self._w3.eth.send_raw_transaction(raw_transaction),
                timeout=self._rpc_timeout,
            )
        except Exception as e:
            if is_already_known(e):
                logger.info("Transaction already known to node", extra={"tx_hash": tx_hash})
                return tx_hash
            raise classify_rpc_error(e) from e
        return _to_hex(result)

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        """Look up a transaction by hash.

        Returns
        -------
        TransactionStatus
            INCLUDED or REVERTED once a receipt exists, PENDING if the node
            knows the transaction but has no receipt, UNKNOWN otherwise.
        """
        try:
            receipt = await self._call(self._w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            receipt = None

        if receipt is not None:
            state = (
                TransactionState.INCLUDED if receipt["status"] == 1 else TransactionState.REVERTED
            )
            return TransactionStatus(state=state, block_number=receipt.get("blockNumber"))

        try:
            await self._call(self._w3.eth.get_transaction(tx_hash))
        except TransactionNotFound:
            return TransactionStatus(state=TransactionState.UNKNOWN)
        return TransactionStatus(state=TransactionState.PENDING)


def _to_hex(value) -> str:
    """Normalise a hash returned by web3 to a 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    else:
        text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else f"0x{text}"
