"""Faucet Service for DRIP.

The single entry point for chat, HTTP and CLI adapters. Coordinates:
- Admission controller
- Dispatch queue and its submitter worker
- Ledger state cache (startup and periodic reconciliation)
"""

import asyncio
import logging
import time
from collections import OrderedDict
from decimal import Decimal

from web3 import Web3

from drip.blockchain.client import ChainClient, ChainError
from drip.config import DripConfig
from drip.core.wallet import WalletProvider
from drip.observability.logging import clear_request_id, set_request_id
from drip.observability.metrics import FUNDING_BALANCE, IN_FLIGHT, REQUEST_DURATION, REQUESTS

from .admission import AdmissionController
from .dispatch import DispatchQueue, JobHandle, QueueClosedError
from .ledger import LedgerStateCache
from .models import (
    AdmissionDecision,
    DisbursementOutcome,
    DisbursementRequest,
    HealthReport,
    OutcomeStatus,
    TerminalOutcome,
    TransactionRecord,
)
from .submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


class FaucetService:
    """Main faucet service orchestrating all components.

    Parameters
    ----------
    client : ChainClient
        Chain client adapter.
    funding_address : str
        Address of the funding account.
    admission : AdmissionController
        Accept/reject policy.
    queue : DispatchQueue
        Queue feeding the submitter.
    ledger : LedgerStateCache
        Sequence state of the funding account.
    submitter : TransactionSubmitter
        The queue's single consumer.
    amount : Decimal
        Amount sent per request, in ether.
    min_balance : Decimal
        Funding balance floor for health, in ether.
    client_timeout : float | None
        Seconds a caller waits for a terminal outcome before getting PENDING.
        None waits until the job finishes.
    shutdown_grace : float
        Seconds the worker may keep draining after stop() is called.
    reconcile_interval : float
        Seconds between periodic ledger reconciliations.
    job_archive_size : int
        Number of jobs whose status stays queryable.
    """

    def __init__(
        self,
        client: ChainClient,
        funding_address: str,
        admission: AdmissionController,
        queue: DispatchQueue,
        ledger: LedgerStateCache,
        submitter: TransactionSubmitter,
        amount: Decimal,
        min_balance: Decimal,
        client_timeout: float | None = 30.0,
        shutdown_grace: float = 30.0,
        reconcile_interval: float = 30.0,
        job_archive_size: int = 1000,
    ):
        self._client = client
        self._funding_address = funding_address
        self._admission = admission
        self._queue = queue
        self._ledger = ledger
        self._submitter = submitter
        self._amount = amount
        self._amount_wei = Web3.to_wei(amount, "ether")
        self._min_balance_wei = Web3.to_wei(min_balance, "ether")
        self._client_timeout = client_timeout
        self._shutdown_grace = shutdown_grace
        self._reconcile_interval = reconcile_interval
        self._job_archive_size = job_archive_size

        self._jobs: OrderedDict[str, JobHandle] = OrderedDict()
        self._trackers: set[asyncio.Task] = set()
        self._worker: asyncio.Task | None = None
        self._reconcile_task: asyncio.Task | None = None
        self._running = False

    @classmethod
    def from_config(
        cls,
        config: DripConfig,
        client: ChainClient,
        wallet: WalletProvider,
        **overrides,
    ) -> "FaucetService":
        """Wire a faucet service and its pipeline from configuration.

        Parameters
        ----------
        config : DripConfig
            Service configuration.
        client : ChainClient
            Chain client adapter.
        wallet : WalletProvider
            Funding account credential.
        **overrides
            Facade keyword arguments that replace the configured values.

        Returns
        -------
        FaucetService
            A service that still needs ``start()``.
        """
        queue = DispatchQueue()
        ledger = LedgerStateCache(client, wallet.address, max_age=config.ledger_max_age_seconds)
        admission = AdmissionController(
            cooldown_seconds=config.cooldown_seconds,
            max_in_flight=config.max_in_flight,
            in_flight=lambda: queue.in_flight,
            daily_limit=config.daily_limit,
            redis_url=config.redis_url,
        )
        submitter = TransactionSubmitter(
            client,
            wallet,
            ledger,
            chain_id=config.chain_id,
            gas_limit=config.gas_limit,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
            fee_bump_percent=config.fee_bump_percent,
            poll_interval=config.poll_interval_seconds,
            confirmation_timeout=config.confirmation_timeout_seconds,
            status_requery_limit=config.status_requery_limit,
        )

        options = {
            "client_timeout": config.client_timeout_seconds,
            "shutdown_grace": config.shutdown_grace_seconds,
            "reconcile_interval": config.reconcile_interval_seconds,
            "job_archive_size": config.job_archive_size,
        }
        options.update(overrides)

        return cls(
            client=client,
            funding_address=wallet.address,
            admission=admission,
            queue=queue,
            ledger=ledger,
            submitter=submitter,
            amount=config.transfer_amount,
            min_balance=config.min_funding_balance,
            **options,
        )

    @property
    def is_running(self) -> bool:
        """Check if the faucet service is running."""
        return self._running

    @property
    def amount(self) -> Decimal:
        return self._amount

    @property
    def funding_address(self) -> str:
        return self._funding_address

    @property
    def in_flight(self) -> int:
        return self._queue.in_flight

    async def start(self) -> None:
        """Start the faucet service.

        Reconciles the ledger with the chain, then starts the submitter worker
        and the periodic reconcile loop. An unreachable chain is logged and
        left to the reconcile loop; the service keeps running so health
        checks can report it.
        """
        if self._running:
            logger.warning("Faucet service already running")
            return

        try:
            state = await self._ledger.reconcile()
            logger.info(
                "Ledger reconciled at startup",
                extra={"address": self._funding_address, "next_sequence": state.next_sequence},
            )
        except ChainError as e:
            logger.error(
                "Startup reconcile failed, chain unreachable",
                extra={"error": str(e)},
            )

        self._running = True
        self._worker = asyncio.create_task(self._submitter.run(self._queue))
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.info("Faucet service started")

    async def stop(self) -> None:
        """Stop the faucet service.

        New requests are refused immediately. The worker gets
        ``shutdown_grace`` seconds to finish queued jobs; anything left after
        that is abandoned. Unconfirmed reservations are recovered from the
        chain on the next start.
        """
        if not self._running:
            return

        self._running = False
        self._queue.close()

        if self._reconcile_task:
            self._reconcile_task.cancel()
            try:
                await self._reconcile_task
            except asyncio.CancelledError:
                pass
            self._reconcile_task = None

        if self._worker:
            try:
                await asyncio.wait_for(asyncio.shield(self._worker), self._shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Shutdown grace period elapsed, cancelling worker",
                    extra={"in_flight": self._queue.in_flight},
                )
                self._worker.cancel()
                try:
                    await self._worker
                except asyncio.CancelledError:
                    pass
            self._worker = None

        self._queue.abandon_pending("Faucet is shutting down")
        if self._trackers:
            await asyncio.gather(*self._trackers, return_exceptions=True)
        IN_FLIGHT.set(self._queue.in_flight)
        logger.info("Faucet service stopped")

    async def _reconcile_loop(self) -> None:
        """Periodically re-read the funding account's sequence from the chain."""
        while self._running:
            await asyncio.sleep(self._reconcile_interval)
            try:
                await self._ledger.reconcile()
            except ChainError as e:
                logger.warning("Periodic reconcile failed", extra={"error": str(e)})
            except Exception as e:
                logger.error(
                    "Error in reconcile loop",
                    extra={"error": str(e)},
                    exc_info=True,
                )

    async def request_disbursement(self, requester: str, destination: str) -> DisbursementOutcome:
        """Handle a disbursement request end to end.

        Parameters
        ----------
        requester : str
            Requester identity used for rate limiting.
        destination : str
            Recipient address.

        Returns
        -------
        DisbursementOutcome
            Terminal outcome, a rejection, or PENDING with a job id if the
            client timeout elapsed first. A PENDING job keeps running.
        """
        request = DisbursementRequest(
            requester=requester,
            destination=destination.strip(),
            amount=self._amount_wei,
        )
        set_request_id(request.request_id)
        started = time.monotonic()
        try:
            outcome = await self._request(request)
        finally:
            clear_request_id()

        REQUEST_DURATION.labels(status=outcome.status.value).observe(time.monotonic() - started)
        return outcome

    async def _request(self, request: DisbursementRequest) -> DisbursementOutcome:
        decision = await self._admission.decide(request)
        REQUESTS.labels(verdict=decision.verdict.value).inc()

        if not decision.accepted:
            logger.info(
                "Request rejected",
                extra={
                    "requester": request.requester,
                    "verdict": decision.verdict.value,
                    "reason": decision.reason,
                },
            )
            return DisbursementOutcome(
                status=OutcomeStatus.REJECTED,
                message=decision.reason or "Request rejected",
                decision=decision,
                retry_after=decision.retry_after,
            )

        # No await between the admission decision and enqueue
        try:
            handle = self._queue.enqueue(request)
        except QueueClosedError:
            await self._admission.refund(request)
            return DisbursementOutcome(
                status=OutcomeStatus.REJECTED,
                message="The faucet is shutting down, please try again later",
                decision=decision,
            )

        IN_FLIGHT.set(self._queue.in_flight)
        self._remember(handle)
        tracker = asyncio.create_task(self._track(handle))
        self._trackers.add(tracker)
        tracker.add_done_callback(self._trackers.discard)

        record = await handle.wait(self._client_timeout)
        if record is None:
            logger.info(
                "Request still processing after client timeout",
                extra={"job_id": handle.job_id, "timeout": self._client_timeout},
            )
            return DisbursementOutcome(
                status=OutcomeStatus.PENDING,
                message="Your request is being processed",
                decision=decision,
                job_id=handle.job_id,
            )
        return self._outcome_from_record(record, decision)

    def _remember(self, handle: JobHandle) -> None:
        """Keep a handle queryable, evicting the oldest finished jobs."""
        self._jobs[handle.job_id] = handle
        while len(self._jobs) > self._job_archive_size:
            oldest_id, oldest = next(iter(self._jobs.items()))
            if not oldest.done():
                break
            del self._jobs[oldest_id]

    async def _track(self, handle: JobHandle) -> None:
        """Settle bookkeeping once a job reaches its terminal outcome."""
        record = await handle.wait()
        IN_FLIGHT.set(self._queue.in_flight)
        refundable = record.outcome == TerminalOutcome.FAILED or (
            record.outcome == TerminalOutcome.ABANDONED and not record.attempts
        )
        if refundable:
            await self._admission.refund(handle.job.request)

    def _outcome_from_record(
        self,
        record: TransactionRecord,
        decision: AdmissionDecision | None = None,
    ) -> DisbursementOutcome:
        job = record.job
        if record.outcome == TerminalOutcome.CONFIRMED:
            status = OutcomeStatus.CONFIRMED
            message = f"Sent {self._amount} to {job.request.destination}"
        elif record.outcome == TerminalOutcome.ABANDONED:
            status = OutcomeStatus.ABANDONED
            message = f"Disbursement abandoned: {record.error}"
        else:
            status = OutcomeStatus.FAILED
            message = f"Disbursement failed: {record.error}"

        return DisbursementOutcome(
            status=status,
            message=message,
            decision=decision,
            job_id=job.job_id,
            tx_hash=record.tx_hash,
        )

    def get_job_status(self, job_id: str) -> DisbursementOutcome | None:
        """Look up a job by id.

        Returns
        -------
        DisbursementOutcome | None
            PENDING while the job runs, its terminal outcome afterwards, or
            None if the id is unknown or has been evicted.
        """
        handle = self._jobs.get(job_id)
        if handle is None:
            return None
        if not handle.done():
            return DisbursementOutcome(
                status=OutcomeStatus.PENDING,
                message=f"Job is {handle.job.state.value}",
                job_id=job_id,
            )
        return self._outcome_from_record(handle.result())

    async def health_status(self) -> HealthReport:
        """Query the chain for reachability and the funding balance.

        Every call goes to the chain; nothing is cached.
        """
        balance = None
        reachable = await self._client.is_connected()
        if reachable:
            try:
                balance = await self._client.get_balance(self._funding_address)
            except ChainError as e:
                logger.warning("Balance query failed", extra={"error": str(e)})
                reachable = False

        if balance is not None:
            FUNDING_BALANCE.set(float(Web3.from_wei(balance, "ether")))

        return HealthReport(
            chain_reachable=reachable,
            balance_above_threshold=balance is not None and balance >= self._min_balance_wei,
            balance=balance,
            next_sequence=self._ledger.next_sequence,
        )

    async def get_user_status(self, requester: str) -> dict:
        """Get rate limit status for a requester.

        Parameters
        ----------
        requester : str
            Requester identity.

        Returns
        -------
        dict
            Remaining requests, cooldown and the per-request amount.
        """
        now = time.time()
        remaining = self._admission.get_remaining(requester, now)
        cooldown = self._admission.get_cooldown(requester, now)

        return {
            "remaining_requests": remaining,
            "cooldown_seconds": cooldown.total_seconds() if cooldown else 0,
            "amount": str(self._amount),
        }
