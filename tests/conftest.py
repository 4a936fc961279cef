"""Pytest configuration and fixtures for DRIP tests."""

import asyncio
import os
from decimal import Decimal

import pytest
import rlp
from pydantic import SecretStr

from drip.blockchain.client import (
    ChainTimeoutError,
    ChainUnavailableError,
    SequenceConflictError,
    TransactionState,
    TransactionStatus,
)
from drip.core.wallet import EnvironmentWallet
from drip.faucet.admission import AdmissionController
from drip.faucet.dispatch import DispatchQueue
from drip.faucet.ledger import LedgerStateCache
from drip.faucet.service import FaucetService
from drip.faucet.submitter import TransactionSubmitter

# Test private key (DO NOT USE IN PRODUCTION - this is a well-known test key)
TEST_PRIVATE_KEY = "0x0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
TEST_ADDRESS = "0xFCAd0B19bB29D4674531d6f115237E16AfCE377c"
TEST_RECIPIENT = "0x742d35cc6634c0532925a3b844bc9e7595f8fe00"

ONE_ETHER = 10**18


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Clear DRIP-related environment variables before each test."""
    env_prefixes = ("DRIP_", "SLACK_", "REDIS_")
    for key in list(os.environ.keys()):
        if key.startswith(env_prefixes):
            monkeypatch.delenv(key, raising=False)


def recipient(n: int) -> str:
    """Deterministic, valid lowercase recipient address."""
    return f"0x{n:040x}"


def nonce_of(raw_transaction: bytes) -> int:
    """Nonce field of a signed legacy transaction."""
    return int.from_bytes(rlp.decode(raw_transaction)[0], "big")


class FakeChainClient:
    """In-memory chain with a mempool, used in place of ChainClient.

    Submitted transactions enter the mempool and are mined in nonce order the
    next time a status is queried (when ``auto_mine`` is on).
    """

    rpc_endpoint = "http://fake-chain:8545"

    def __init__(self, sequence: int = 0, balance: int = 100 * ONE_ETHER, chain_id: int = 1337):
        self.latest = sequence
        self.balance = balance
        self.chain_id = chain_id
        self.gas_price = 1_000_000_000
        self.connected = True
        self.auto_mine = True
        self.block_number = 100

        self.mempool: dict[str, int] = {}  # tx_hash -> nonce
        self.mined: dict[str, tuple[int, int]] = {}  # tx_hash -> (nonce, block)
        self.submissions: list[tuple[int, str]] = []  # (nonce, tx_hash) that reached the node

        self.submit_errors: list[Exception] = []  # raised before the node sees the tx
        self.timeouts_after_accept = 0  # accept the tx, then report a timeout
        self.reverted: set[str] = set()
        self.stall: asyncio.Event | None = None

    def _check_connected(self) -> None:
        if not self.connected:
            raise ChainUnavailableError("connection refused")

    def _pending_count(self) -> int:
        if not self.mempool:
            return self.latest
        return max(self.latest, max(self.mempool.values()) + 1)

    def mine(self) -> None:
        """Include every mempool transaction that is next in line."""
        progressed = True
        while progressed:
            progressed = False
            for tx_hash, nonce in list(self.mempool.items()):
                if nonce == self.latest:
                    del self.mempool[tx_hash]
                    self.block_number += 1
                    self.mined[tx_hash] = (nonce, self.block_number)
                    self.latest += 1
                    progressed = True

    async def is_connected(self) -> bool:
        return self.connected

    async def get_chain_id(self) -> int:
        self._check_connected()
        return self.chain_id

    async def get_sequence(self, address: str, block: str = "latest") -> int:
        self._check_connected()
        return self._pending_count() if block == "pending" else self.latest

    async def get_balance(self, address: str) -> int:
        self._check_connected()
        return self.balance

    async def estimate_fee(self) -> int:
        self._check_connected()
        return self.gas_price

    async def submit(self, raw_transaction: bytes, tx_hash: str) -> str:
        if self.stall is not None:
            await self.stall.wait()
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self._check_connected()

        if tx_hash in self.mempool or tx_hash in self.mined:
            return tx_hash

        nonce = nonce_of(raw_transaction)
        if nonce < self.latest or nonce in self.mempool.values():
            raise SequenceConflictError("nonce too low")

        self.mempool[tx_hash] = nonce
        self.submissions.append((nonce, tx_hash))

        if self.timeouts_after_accept:
            self.timeouts_after_accept -= 1
            raise ChainTimeoutError("RPC call timed out")
        return tx_hash

    async def get_transaction_status(self, tx_hash: str) -> TransactionStatus:
        self._check_connected()
        if self.auto_mine:
            self.mine()
        if tx_hash in self.mined:
            state = (
                TransactionState.REVERTED if tx_hash in self.reverted else TransactionState.INCLUDED
            )
            return TransactionStatus(state=state, block_number=self.mined[tx_hash][1])
        if tx_hash in self.mempool:
            return TransactionStatus(state=TransactionState.PENDING)
        return TransactionStatus(state=TransactionState.UNKNOWN)


async def no_sleep(_seconds: float) -> None:
    """Sleep replacement that only yields to the event loop."""
    await asyncio.sleep(0)


@pytest.fixture
def wallet():
    """A real wallet backed by the well-known test key."""
    return EnvironmentWallet(private_key=SecretStr(TEST_PRIVATE_KEY))


@pytest.fixture
def chain():
    """Fake chain with the funding account at sequence 0."""
    return FakeChainClient()


def build_service(
    chain: FakeChainClient,
    wallet: EnvironmentWallet,
    cooldown_seconds: int = 0,
    max_in_flight: int = 100,
    max_attempts: int = 3,
    client_timeout: float | None = 5.0,
    shutdown_grace: float = 5.0,
    amount: Decimal = Decimal("0.5"),
    min_balance: Decimal = Decimal("1"),
    status_requery_limit: int = 3,
) -> FaucetService:
    """Wire a faucet service against the fake chain with instant backoff."""
    queue = DispatchQueue()
    ledger = LedgerStateCache(chain, wallet.address, max_age=60.0)
    admission = AdmissionController(
        cooldown_seconds=cooldown_seconds,
        max_in_flight=max_in_flight,
        in_flight=lambda: queue.in_flight,
    )
    submitter = TransactionSubmitter(
        chain,
        wallet,
        ledger,
        max_attempts=max_attempts,
        poll_interval=1.0,
        confirmation_timeout=3.0,
        status_requery_limit=status_requery_limit,
        sleep=no_sleep,
    )
    return FaucetService(
        client=chain,
        funding_address=wallet.address,
        admission=admission,
        queue=queue,
        ledger=ledger,
        submitter=submitter,
        amount=amount,
        min_balance=min_balance,
        client_timeout=client_timeout,
        shutdown_grace=shutdown_grace,
        reconcile_interval=3600.0,
    )
