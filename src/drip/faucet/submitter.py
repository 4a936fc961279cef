"""Transaction Submitter for DRIP faucet.

Turns a queued job into a signed native transfer and drives it to a terminal
outcome:

- Fee too low: bump the fee, keep the sequence number, resubmit
- Sequence conflict: forfeit the number, reserve a fresh one, resubmit
- Node unreachable: resubmit the identical signed payload
- Timeout: ambiguous, resolved by querying the signed hash, never resubmitted
- Rejected: terminal failure

Retries are bounded by ``max_attempts`` with capped exponential backoff.
Every terminal outcome confirms or releases the job's sequence number exactly
once and is followed by a ledger reconciliation.
"""

import asyncio
import logging
import math
import time
from contextlib import closing

from web3 import Web3

from drip.blockchain.client import (
    ChainClient,
    ChainError,
    ChainRejectedError,
    ChainTimeoutError,
    ChainUnavailableError,
    FeeTooLowError,
    SequenceConflictError,
    TransactionState,
    TransactionStatus,
)
from drip.core.wallet import WalletProvider
from drip.observability.metrics import (
    DISBURSEMENTS,
    IN_FLIGHT,
    SUBMISSION_ATTEMPTS,
    TRANSACTION_DURATION,
)

from .dispatch import DispatchQueue
from .ledger import LedgerStateCache
from .models import JobState, QueuedJob, SubmissionAttempt, TerminalOutcome, TransactionRecord

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Exponential backoff delay for a 1-based attempt number, capped at ``maximum``."""
    return min(base * (2 ** (attempt - 1)), maximum)


class TransactionSubmitter:
    """Signs, submits and tracks disbursement transactions.

    Parameters
    ----------
    client : ChainClient
        Chain client adapter.
    wallet : WalletProvider
        Funding account credential.
    ledger : LedgerStateCache
        Sequence number owner for the funding account.
    chain_id : int | None
        Chain ID to sign for. Discovered from the node if None.
    gas_limit : int
        Gas limit of a native transfer.
    max_attempts : int
        Maximum submission attempts per job.
    backoff_base : float
        Delay before the first retry in seconds.
    backoff_max : float
        Upper bound on a single retry delay.
    fee_bump_percent : int
        Fee increase applied after each fee-too-low rejection.
    poll_interval : float
        Seconds between status queries.
    confirmation_timeout : float
        How long to wait for inclusion before treating the outcome as ambiguous.
    status_requery_limit : int
        Status queries spent resolving an ambiguous outcome.
    sleep : Callable
        Awaitable sleep, replaceable in tests.
    """

    def __init__(
        self,
        client: ChainClient,
        wallet: WalletProvider,
        ledger: LedgerStateCache,
        chain_id: int | None = None,
        gas_limit: int = 21000,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        fee_bump_percent: int = 15,
        poll_interval: float = 7.0,
        confirmation_timeout: float = 300.0,
        status_requery_limit: int = 3,
        sleep=asyncio.sleep,
    ):
        self._client = client
        self._wallet = wallet
        self._ledger = ledger
        self._chain_id = chain_id
        self._gas_limit = gas_limit
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._fee_bump_percent = fee_bump_percent
        self._poll_interval = poll_interval
        self._confirmation_polls = max(1, math.ceil(confirmation_timeout / poll_interval))
        self._status_requery_limit = max(1, status_requery_limit)
        self._sleep = sleep
        self._active_record: TransactionRecord | None = None

    async def run(self, queue: DispatchQueue) -> None:
        """Consume the dispatch queue until it is closed and empty.

        This is the queue's single consumer; jobs are processed one at a time
        in admission order.
        """
        logger.info("Submitter worker started")
        while True:
            await queue.wait_for_work()
            if queue.closed and not queue.queued:
                break

            # Release the consumer slot even when cancelled mid-job
            with closing(queue.drain()) as jobs:
                for job in jobs:
                    IN_FLIGHT.set(queue.in_flight)
                    try:
                        record = await self._process_safely(job)
                    except asyncio.CancelledError:
                        queue.complete(job, self._abandon_active(job))
                        raise
                    finally:
                        self._active_record = None
                    queue.complete(job, record)
            IN_FLIGHT.set(queue.in_flight)

        logger.info("Submitter worker stopped")

    def _abandon_active(self, job: QueuedJob) -> TransactionRecord:
        """Close out the job interrupted by shutdown, keeping its submission history.

        Attempts that reached the node stay on the record so the requester's
        window is not refunded for a transfer that may still land.
        """
        record = self._active_record
        if record is None or record.job is not job:
            record = TransactionRecord(job=job)
        record.outcome = TerminalOutcome.ABANDONED
        record.error = "Shutdown during submission"
        job.state = JobState.ABANDONED
        logger.warning(
            "Job abandoned during shutdown",
            extra={
                "job_id": job.job_id,
                "sequence": job.sequence,
                "attempts": len(record.attempts),
            },
        )
        return record

    async def _process_safely(self, job: QueuedJob) -> TransactionRecord:
        try:
            return await self.process(job)
        except Exception as e:
            logger.error(
                "Unexpected error processing job",
                extra={"job_id": job.job_id, "error": str(e)},
                exc_info=True,
            )
            if job.sequence is not None and job.sequence in self._ledger.reserved:
                await self._ledger.release(job.sequence)
            self._ledger.mark_stale()
            job.state = JobState.FAILED
            DISBURSEMENTS.labels(outcome=TerminalOutcome.FAILED.value).inc()
            return TransactionRecord(job=job, outcome=TerminalOutcome.FAILED, error=str(e))

    async def process(self, job: QueuedJob) -> TransactionRecord:
        """Drive one job to a terminal outcome.

        Parameters
        ----------
        job : QueuedJob
            The job to disburse. Its ``sequence`` and ``state`` are updated.

        Returns
        -------
        TransactionRecord
            The terminal record with every submission attempt.
        """
        record = TransactionRecord(job=job)
        self._active_record = record
        started = time.monotonic()
        record = await self._submit(record)
        TRANSACTION_DURATION.labels(outcome=record.outcome.value).observe(
            time.monotonic() - started
        )
        return record

    async def _submit(self, record: TransactionRecord) -> TransactionRecord:
        job = record.job
        attempt = 0
        fee_bumps = 0
        signed = None

        while True:
            if job.sequence is None or signed is None:
                try:
                    if job.sequence is None:
                        job.sequence = await self._ledger.reserve_next_sequence()
                    signed = await self._sign(record, fee_bumps)
                except ChainError as e:
                    attempt += 1
                    record.error = str(e)
                    logger.warning(
                        "Could not prepare transaction",
                        extra={"job_id": job.job_id, "attempt": attempt, "error": str(e)},
                    )
                    if not await self._retry_or_give_up(record, attempt):
                        return await self._finish(record, TerminalOutcome.FAILED, str(e))
                    continue

            raw_transaction, tx_hash, fee = signed
            attempt += 1
            submission = SubmissionAttempt(sequence=job.sequence, tx_hash=tx_hash, fee=fee)
            record.attempts.append(submission)
            record.signed_payload = raw_transaction
            job.state = JobState.SUBMITTING

            try:
                record.tx_hash = await self._client.submit(raw_transaction, tx_hash)
            except FeeTooLowError as e:
                self._note_failure(record, submission, e, "fee_too_low")
                fee_bumps += 1
                signed = None
                self._ledger.mark_stale()
            except SequenceConflictError as e:
                self._note_failure(record, submission, e, "sequence_conflict")
                await self._ledger.forfeit(job.sequence)
                job.sequence = None
                signed = None
            except ChainUnavailableError as e:
                self._note_failure(record, submission, e, "unavailable")
            except ChainTimeoutError as e:
                self._note_failure(record, submission, e, "timeout")
                job.state = JobState.AMBIGUOUS
                return await self._resolve_ambiguous(record, tx_hash)
            except ChainRejectedError as e:
                self._note_failure(record, submission, e, "rejected")
                return await self._finish(record, TerminalOutcome.FAILED, str(e))
            else:
                SUBMISSION_ATTEMPTS.labels(result="accepted").inc()
                job.state = JobState.SUBMITTED
                logger.info(
                    "Transaction submitted",
                    extra={
                        "job_id": job.job_id,
                        "sequence": job.sequence,
                        "tx_hash": record.tx_hash,
                        "attempt": attempt,
                    },
                )
                return await self._await_inclusion(record)

            if not await self._retry_or_give_up(record, attempt):
                return await self._finish(
                    record,
                    TerminalOutcome.FAILED,
                    f"Gave up after {attempt} attempts: {record.error}",
                )

    async def _sign(self, record: TransactionRecord, fee_bumps: int) -> tuple[bytes, str, int]:
        """Sign a transfer for the job's reserved sequence number.

        Returns
        -------
        tuple[bytes, str, int]
            Raw signed payload, its hash and the fee it pays.
        """
        job = record.job
        fee = await self._client.estimate_fee()
        if fee_bumps and record.attempts:
            previous = record.attempts[-1].fee
            fee = max(fee, math.ceil(previous * (100 + self._fee_bump_percent) / 100))

        if self._chain_id is None:
            self._chain_id = await self._client.get_chain_id()

        account = self._wallet.get_account()
        signed = account.sign_transaction(
            {
                "to": Web3.to_checksum_address(job.request.destination),
                "value": job.request.amount,
                "gas": self._gas_limit,
                "gasPrice": fee,
                "nonce": job.sequence,
                "chainId": self._chain_id,
            }
        )
        return bytes(signed.raw_transaction), Web3.to_hex(signed.hash), fee

    def _note_failure(
        self,
        record: TransactionRecord,
        submission: SubmissionAttempt,
        error: ChainError,
        result: str,
    ) -> None:
        submission.error = str(error)
        record.error = str(error)
        SUBMISSION_ATTEMPTS.labels(result=result).inc()
        logger.warning(
            "Submission failed",
            extra={
                "job_id": record.job.job_id,
                "sequence": submission.sequence,
                "tx_hash": submission.tx_hash,
                "result": result,
                "error": str(error),
            },
        )

    async def _retry_or_give_up(self, record: TransactionRecord, attempt: int) -> bool:
        """Back off before the next attempt. Returns False once attempts are exhausted."""
        if attempt >= self._max_attempts:
            return False
        record.job.state = JobState.RETRYING
        delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
        logger.info(
            "Retrying submission",
            extra={"job_id": record.job.job_id, "attempt": attempt, "delay": delay},
        )
        await self._sleep(delay)
        return True

    async def _query_status(self, tx_hash: str) -> TransactionStatus | None:
        try:
            return await self._client.get_transaction_status(tx_hash)
        except ChainError as e:
            logger.warning(
                "Transaction status query failed",
                extra={"tx_hash": tx_hash, "error": str(e)},
            )
            return None

    async def _await_inclusion(self, record: TransactionRecord) -> TransactionRecord:
        """Poll for a receipt until the confirmation timeout runs out."""
        for poll in range(self._confirmation_polls):
            status = await self._query_status(record.tx_hash)
            if status is not None and status.is_final:
                return await self._finish_included(record, status)
            if poll < self._confirmation_polls - 1:
                await self._sleep(self._poll_interval)

        logger.warning(
            "Confirmation timeout, resolving outcome",
            extra={"job_id": record.job.job_id, "tx_hash": record.tx_hash},
        )
        record.job.state = JobState.AMBIGUOUS
        return await self._resolve_ambiguous(record, record.tx_hash, waited=True)

    async def _resolve_ambiguous(
        self,
        record: TransactionRecord,
        tx_hash: str,
        waited: bool = False,
    ) -> TransactionRecord:
        """Settle a submission whose fate is unknown by querying its hash.

        The transfer is never resubmitted from here. A pending transaction is
        waited on once; if the outcome is still unknown after the re-query
        budget the job is abandoned.
        """
        for requery in range(self._status_requery_limit):
            status = await self._query_status(tx_hash)
            if status is not None:
                if status.is_final:
                    record.tx_hash = tx_hash
                    return await self._finish_included(record, status)
                if status.state == TransactionState.PENDING and not waited:
                    record.tx_hash = tx_hash
                    record.job.state = JobState.SUBMITTED
                    return await self._await_inclusion(record)
            if requery < self._status_requery_limit - 1:
                await self._sleep(self._poll_interval)

        return await self._finish(
            record,
            TerminalOutcome.ABANDONED,
            f"Transaction {tx_hash} outcome could not be determined",
        )

    async def _finish_included(
        self, record: TransactionRecord, status: TransactionStatus
    ) -> TransactionRecord:
        record.block_number = status.block_number
        if status.state == TransactionState.INCLUDED:
            return await self._finish(record, TerminalOutcome.CONFIRMED, consumed=True)
        return await self._finish(
            record, TerminalOutcome.FAILED, "Transaction reverted", consumed=True
        )

    async def _finish(
        self,
        record: TransactionRecord,
        outcome: TerminalOutcome,
        error: str | None = None,
        consumed: bool = False,
    ) -> TransactionRecord:
        """Record the terminal outcome and settle the sequence number once."""
        job = record.job
        if job.sequence is not None:
            if consumed:
                await self._ledger.confirm(job.sequence)
            else:
                await self._ledger.release(job.sequence)
        if outcome == TerminalOutcome.ABANDONED:
            self._ledger.mark_stale()

        record.outcome = outcome
        record.error = error
        job.state = JobState(outcome.value)
        DISBURSEMENTS.labels(outcome=outcome.value).inc()

        log = logger.info if outcome == TerminalOutcome.CONFIRMED else logger.warning
        log(
            "Disbursement finished",
            extra={
                "job_id": job.job_id,
                "outcome": outcome.value,
                "sequence": job.sequence,
                "tx_hash": record.tx_hash,
                "block_number": record.block_number,
                "attempts": len(record.attempts),
                "error": error,
            },
        )

        try:
            await self._ledger.reconcile()
        except ChainError as e:
            logger.warning("Post-outcome reconcile failed", extra={"error": str(e)})
            self._ledger.mark_stale()
        return record
