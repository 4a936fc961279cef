"""Ledger State Cache for DRIP faucet.

Owns the funding account's sequence-number bookkeeping. Every mutation goes
through one asyncio lock, so reservations, confirmations and releases never
interleave. Reservations are served from local state; the chain is only
consulted on reconciliation.

Numbers handed out are always either a previously released slot or the next
number above everything the chain or this process has issued, so two live
reservations can never share a sequence number.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from drip.blockchain.client import ChainClient
from drip.observability.metrics import NEXT_SEQUENCE

logger = logging.getLogger(__name__)


@dataclass
class FundingAccountState:
    """Cached view of the funding account.

    Attributes
    ----------
    confirmed_sequence : int | None
        Transaction count at the latest block, as last seen or confirmed.
        None until the first reconciliation.
    high_water : int
        Lowest sequence number that has never been handed out.
    reserved : set[int]
        Sequence numbers currently held by a transaction record.
    released : set[int]
        Numbers below ``high_water`` that were freed and may be reused.
    reconciled_at : float | None
        Monotonic time of the last successful reconciliation.
    stale : bool
        Forces a reconciliation before the next reservation.
    """

    confirmed_sequence: int | None = None
    high_water: int = 0
    reserved: set[int] = field(default_factory=set)
    released: set[int] = field(default_factory=set)
    reconciled_at: float | None = None
    stale: bool = True

    @property
    def next_sequence(self) -> int:
        """The number the next reservation would receive."""
        return min(self.released) if self.released else self.high_water


class LedgerStateCache:
    """Serialized owner of the funding account's sequence state.

    Parameters
    ----------
    client : ChainClient
        Chain client used for reconciliation.
    address : str
        Funding account address.
    max_age : float
        Seconds after which cached state is reconciled before reserving.
    clock : Callable[[], float]
        Monotonic clock, replaceable in tests.
    """

    def __init__(
        self,
        client: ChainClient,
        address: str,
        max_age: float = 60.0,
        clock=time.monotonic,
    ):
        self._client = client
        self._address = address
        self._max_age = max_age
        self._clock = clock
        self._state = FundingAccountState()
        self._lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._address

    @property
    def state(self) -> FundingAccountState:
        """Current cached state. Treat as read-only."""
        return self._state

    @property
    def next_sequence(self) -> int:
        return self._state.next_sequence

    @property
    def confirmed_sequence(self) -> int | None:
        return self._state.confirmed_sequence

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._state.reserved)

    @property
    def is_stale(self) -> bool:
        """Whether the next reservation will reconcile first."""
        state = self._state
        if state.stale or state.reconciled_at is None:
            return True
        return self._clock() - state.reconciled_at > self._max_age

    def mark_stale(self) -> None:
        """Force a reconciliation before the next reservation."""
        self._state.stale = True

    async def reserve_next_sequence(self) -> int:
        """Reserve a sequence number for a new transaction.

        Returns
        -------
        int
            A number no other live reservation holds.

        Raises
        ------
        ChainError
            If a required reconciliation could not reach the chain.
        """
        async with self._lock:
            if self.is_stale:
                await self._reconcile()

            state = self._state
            if state.released:
                sequence = min(state.released)
                state.released.remove(sequence)
            else:
                sequence = state.high_water
                state.high_water += 1
            state.reserved.add(sequence)
            self._publish()

        logger.debug("Sequence reserved", extra={"sequence": sequence})
        return sequence

    async def confirm(self, sequence: int) -> None:
        """Record that the chain consumed a reserved sequence number."""
        async with self._lock:
            state = self._state
            if sequence not in state.reserved:
                logger.warning("Confirming unreserved sequence", extra={"sequence": sequence})
            state.reserved.discard(sequence)
            state.released.discard(sequence)
            state.confirmed_sequence = max(state.confirmed_sequence or 0, sequence + 1)
            state.high_water = max(state.high_water, sequence + 1)
            self._publish()

        logger.debug("Sequence confirmed", extra={"sequence": sequence})

    async def release(self, sequence: int) -> None:
        """Free a reserved number that the chain never consumed.

        The slot is reused by the next reservation instead of leaving a gap.
        """
        async with self._lock:
            state = self._state
            if sequence not in state.reserved:
                logger.warning("Releasing unreserved sequence", extra={"sequence": sequence})
                return
            state.reserved.remove(sequence)
            state.released.add(sequence)
            floor = state.confirmed_sequence or 0
            # Shrink back down while the top slots are free
            while state.high_water - 1 in state.released and state.high_water - 1 >= floor:
                state.high_water -= 1
                state.released.remove(state.high_water)
            self._publish()

        logger.debug("Sequence released", extra={"sequence": sequence})

    async def forfeit(self, sequence: int) -> None:
        """Drop a reservation whose number was consumed by someone else.

        Used on sequence conflicts. The number is not reused and the cache is
        reconciled before the next reservation.
        """
        async with self._lock:
            self._state.reserved.discard(sequence)
            self._state.stale = True

        logger.info("Sequence forfeited", extra={"sequence": sequence})

    async def reconcile(self) -> FundingAccountState:
        """Re-read the account's transaction counts from the chain.

        Returns
        -------
        FundingAccountState
            The refreshed state.

        Raises
        ------
        ChainError
            If the chain could not be queried. Cached state is left untouched.
        """
        async with self._lock:
            await self._reconcile()
            return self._state

    async def _reconcile(self) -> None:
        latest = await self._client.get_sequence(self._address, "latest")
        pending = max(await self._client.get_sequence(self._address, "pending"), latest)

        state = self._state
        state.confirmed_sequence = max(state.confirmed_sequence or 0, latest)
        if not state.reserved:
            state.high_water = pending
            state.released.clear()
        else:
            state.high_water = max(state.high_water, pending)
            # Anything at or above the pending count that nobody holds is free
            state.released = {
                seq for seq in range(pending, state.high_water) if seq not in state.reserved
            }
        state.reconciled_at = self._clock()
        state.stale = False
        self._publish()

        logger.debug(
            "Ledger reconciled",
            extra={
                "latest": latest,
                "pending": pending,
                "next_sequence": state.next_sequence,
                "reserved": sorted(state.reserved),
            },
        )

    def _publish(self) -> None:
        NEXT_SEQUENCE.set(self._state.next_sequence)
