"""Tests for the transaction submitter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import ONE_ETHER, TEST_RECIPIENT, no_sleep

from drip.blockchain.client import (
    ChainRejectedError,
    ChainTimeoutError,
    ChainUnavailableError,
    FeeTooLowError,
    TransactionState,
    TransactionStatus,
)
from drip.faucet.dispatch import DispatchQueue
from drip.faucet.ledger import LedgerStateCache
from drip.faucet.models import DisbursementRequest, JobState, QueuedJob, TerminalOutcome
from drip.faucet.submitter import TransactionSubmitter, backoff_delay


@pytest.fixture
def ledger(chain, wallet):
    return LedgerStateCache(chain, wallet.address)


@pytest.fixture
def submitter(chain, wallet, ledger):
    return TransactionSubmitter(
        chain,
        wallet,
        ledger,
        max_attempts=3,
        poll_interval=1.0,
        confirmation_timeout=3.0,
        sleep=no_sleep,
    )


def make_job(n: int = 1) -> QueuedJob:
    request = DisbursementRequest(requester=f"U{n}", destination=TEST_RECIPIENT, amount=ONE_ETHER)
    return QueuedJob(job_id=f"job-{n}", request=request)


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles_per_attempt(self):
        """Delays grow exponentially from the base."""
        assert [backoff_delay(n, 1.0, 60.0) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_maximum(self):
        """No delay exceeds the configured maximum."""
        assert backoff_delay(10, 1.0, 30.0) == 30.0


class TestHappyPath:
    """Tests for a straightforward disbursement."""

    @pytest.mark.asyncio
    async def test_confirmed_on_first_attempt(self, submitter, chain, ledger):
        """A clean submission is confirmed and its sequence consumed."""
        job = make_job()
        record = await submitter.process(job)

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert job.state == JobState.CONFIRMED
        assert record.sequence == 0
        assert len(record.attempts) == 1
        assert record.tx_hash == record.attempts[0].tx_hash
        assert record.block_number == 101
        assert record.signed_payload is not None
        assert chain.latest == 1
        assert ledger.reserved == frozenset()
        assert ledger.next_sequence == 1

    @pytest.mark.asyncio
    async def test_consecutive_jobs_use_consecutive_sequences(self, submitter, chain):
        """Each job takes the next sequence number."""
        records = [await submitter.process(make_job(n)) for n in range(3)]

        assert [r.sequence for r in records] == [0, 1, 2]
        assert [nonce for nonce, _ in chain.submissions] == [0, 1, 2]


class TestRetries:
    """Tests for the retry policy per failure class."""

    @pytest.mark.asyncio
    async def test_fee_too_low_bumps_fee_and_keeps_sequence(self, submitter, chain):
        """A fee rejection re-signs with a higher fee for the same number."""
        chain.submit_errors = [FeeTooLowError("replacement transaction underpriced")]

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert len(record.attempts) == 2
        first, second = record.attempts
        assert first.sequence == second.sequence == 0
        assert first.error == "replacement transaction underpriced"
        assert second.fee >= first.fee * 115 // 100
        assert first.tx_hash != second.tx_hash

    @pytest.mark.asyncio
    async def test_sequence_conflict_takes_fresh_number(self, submitter, chain, ledger):
        """A conflicting number is forfeited and a fresh one reserved."""
        await ledger.reconcile()
        chain.latest = 4  # another sender used the account

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert [a.sequence for a in record.attempts] == [0, 4]
        assert record.sequence == 4
        assert chain.submissions == [(4, record.tx_hash)]

    @pytest.mark.asyncio
    async def test_unavailable_resubmits_same_payload(self, submitter, chain):
        """An unreachable node gets the identical signed payload again."""
        chain.submit_errors = [ChainUnavailableError("connection refused")]

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert len(record.attempts) == 2
        assert record.attempts[0].tx_hash == record.attempts[1].tx_hash
        assert len(chain.submissions) == 1

    @pytest.mark.asyncio
    async def test_rejected_fails_without_retry(self, submitter, chain, ledger):
        """A permanent rejection fails the job and frees its number."""
        chain.submit_errors = [ChainRejectedError("insufficient funds for gas * price + value")]

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.FAILED
        assert "insufficient funds" in record.error
        assert len(record.attempts) == 1
        assert ledger.reserved == frozenset()
        assert ledger.next_sequence == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_release_sequence(self, submitter, chain, ledger):
        """Giving up frees the number for the next job."""
        chain.submit_errors = [ChainUnavailableError("connection refused")] * 3

        failed = await submitter.process(make_job(1))
        assert failed.outcome == TerminalOutcome.FAILED
        assert failed.error.startswith("Gave up after 3 attempts")
        assert len(failed.attempts) == 3

        succeeded = await submitter.process(make_job(2))
        assert succeeded.outcome == TerminalOutcome.CONFIRMED
        assert succeeded.sequence == failed.sequence == 0

    @pytest.mark.asyncio
    async def test_backoff_between_attempts(self, chain, wallet, ledger):
        """Retries wait with exponential backoff."""
        sleep = AsyncMock()
        submitter = TransactionSubmitter(
            chain, wallet, ledger, max_attempts=3, backoff_base=2.0, sleep=sleep
        )
        chain.submit_errors = [ChainUnavailableError("down")] * 2

        await submitter.process(make_job())

        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays[:2] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_unreachable_during_preparation_counts_as_attempt(self, submitter, chain):
        """Failing to reserve or price the transaction uses up attempts."""
        chain.connected = False

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.FAILED
        assert record.attempts == []
        assert record.sequence is None


class TestAmbiguousOutcomes:
    """Tests for timeouts and confirmation tracking."""

    @pytest.mark.asyncio
    async def test_timeout_after_acceptance_resolves_confirmed(self, submitter, chain):
        """A timed-out submission that reached the node is confirmed, never resent."""
        chain.timeouts_after_accept = 1

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert len(record.attempts) == 1
        assert len(chain.submissions) == 1
        assert record.tx_hash == record.attempts[0].tx_hash

    @pytest.mark.asyncio
    async def test_timeout_with_unknown_hash_is_abandoned(self, submitter, chain, ledger):
        """A hash the chain never saw ends as abandoned without resubmission."""
        chain.submit_errors = [ChainTimeoutError("RPC call timed out")]

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.ABANDONED
        assert chain.submissions == []
        assert len(record.attempts) == 1
        assert ledger.reserved == frozenset()
        assert ledger.next_sequence == 0

    @pytest.mark.asyncio
    async def test_never_included_is_abandoned(self, submitter, chain, ledger):
        """A transaction stuck in the mempool past the timeout is abandoned."""
        chain.auto_mine = False

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.ABANDONED
        assert len(chain.submissions) == 1
        # The pending transaction still owns its number
        assert ledger.next_sequence == 1

    @pytest.mark.asyncio
    async def test_reverted_fails_and_consumes_sequence(self, submitter, chain, ledger):
        """A reverted transfer is a failure, but its number is used up."""
        chain.get_transaction_status = AsyncMock(
            return_value=TransactionStatus(state=TransactionState.REVERTED, block_number=7)
        )

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.FAILED
        assert record.error == "Transaction reverted"
        assert record.block_number == 7
        assert ledger.confirmed_sequence == 1

    @pytest.mark.asyncio
    async def test_status_query_errors_are_tolerated(self, submitter, chain):
        """A failed status poll is retried on the next poll."""
        real_status = chain.get_transaction_status
        calls = 0

        async def flaky(tx_hash):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ChainUnavailableError("connection refused")
            return await real_status(tx_hash)

        chain.get_transaction_status = flaky

        record = await submitter.process(make_job())

        assert record.outcome == TerminalOutcome.CONFIRMED
        assert calls == 2


class TestWorker:
    """Tests for the queue consumer loop."""

    @pytest.mark.asyncio
    async def test_run_processes_queue_in_order(self, submitter, chain):
        """The worker drains jobs in admission order and exits once closed."""
        queue = DispatchQueue()
        handles = [
            queue.enqueue(
                DisbursementRequest(requester=f"U{n}", destination=TEST_RECIPIENT, amount=1)
            )
            for n in range(3)
        ]
        queue.close()

        await submitter.run(queue)

        records = [h.result() for h in handles]
        assert [r.outcome for r in records] == [TerminalOutcome.CONFIRMED] * 3
        assert [r.sequence for r in records] == [0, 1, 2]
        assert queue.in_flight == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, chain, ledger):
        """A bug while processing fails that job and keeps the worker alive."""
        wallet = MagicMock()
        wallet.get_account.side_effect = RuntimeError("keystore exploded")
        submitter = TransactionSubmitter(chain, wallet, ledger, sleep=no_sleep)

        queue = DispatchQueue()
        first = queue.enqueue(
            DisbursementRequest(requester="U1", destination=TEST_RECIPIENT, amount=1)
        )
        queue.close()
        await submitter.run(queue)

        record = first.result()
        assert record.outcome == TerminalOutcome.FAILED
        assert record.error == "keystore exploded"
        assert ledger.reserved == frozenset()
        assert ledger.is_stale

    @pytest.mark.asyncio
    async def test_cancel_mid_submission_keeps_attempts(self, submitter, chain):
        """Cancelling the worker abandons the active job with its attempts intact."""
        entered = asyncio.Event()
        real_submit = chain.submit

        async def tracking_submit(raw_transaction, tx_hash):
            entered.set()
            return await real_submit(raw_transaction, tx_hash)

        chain.submit = tracking_submit
        chain.stall = asyncio.Event()
        queue = DispatchQueue()
        handle = queue.enqueue(
            DisbursementRequest(requester="U1", destination=TEST_RECIPIENT, amount=1)
        )

        worker = asyncio.create_task(submitter.run(queue))
        await asyncio.wait_for(entered.wait(), timeout=1.0)
        worker.cancel()
        with pytest.raises(asyncio.CancelledError):
            await worker

        record = handle.result()
        assert record.outcome == TerminalOutcome.ABANDONED
        assert record.error == "Shutdown during submission"
        assert len(record.attempts) == 1
        assert record.attempts[0].sequence == 0
        assert handle.job.state == JobState.ABANDONED
        assert queue.in_flight == 0
