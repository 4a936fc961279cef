"""Tests for the dispatch queue."""

import asyncio

import pytest
from conftest import recipient

from drip.faucet.dispatch import DispatchQueue, QueueClosedError
from drip.faucet.models import DisbursementRequest, JobState, TerminalOutcome, TransactionRecord


def make_request(n: int) -> DisbursementRequest:
    return DisbursementRequest(requester=f"U{n}", destination=recipient(n), amount=1)


class TestEnqueue:
    """Tests for enqueue and in-flight accounting."""

    @pytest.mark.asyncio
    async def test_enqueue_returns_handle(self):
        """Enqueue returns a pending handle for a queued job."""
        queue = DispatchQueue()
        handle = queue.enqueue(make_request(1))

        assert handle.job.state == JobState.QUEUED
        assert handle.job.sequence is None
        assert not handle.done()
        assert queue.in_flight == 1

    @pytest.mark.asyncio
    async def test_job_ids_are_unique(self):
        """Every job gets its own id."""
        queue = DispatchQueue()
        ids = {queue.enqueue(make_request(n)).job_id for n in range(10)}
        assert len(ids) == 10

    @pytest.mark.asyncio
    async def test_closed_queue_rejects(self):
        """A closed queue refuses new jobs."""
        queue = DispatchQueue()
        queue.close()

        with pytest.raises(QueueClosedError):
            queue.enqueue(make_request(1))


class TestDrain:
    """Tests for drain ordering and the single-consumer rule."""

    @pytest.mark.asyncio
    async def test_drain_is_fifo(self):
        """Jobs come out in admission order."""
        queue = DispatchQueue()
        handles = [queue.enqueue(make_request(n)) for n in range(5)]

        drained = [job.job_id for job in queue.drain()]
        assert drained == [h.job_id for h in handles]

    @pytest.mark.asyncio
    async def test_drain_is_restartable(self):
        """A later drain continues with jobs enqueued after the previous one ended."""
        queue = DispatchQueue()
        queue.enqueue(make_request(1))
        assert len(list(queue.drain())) == 1

        later = queue.enqueue(make_request(2))
        assert [job.job_id for job in queue.drain()] == [later.job_id]

    @pytest.mark.asyncio
    async def test_second_consumer_rejected(self):
        """Only one drain may be active at a time."""
        queue = DispatchQueue()
        queue.enqueue(make_request(1))
        queue.enqueue(make_request(2))

        first = queue.drain()
        next(first)
        with pytest.raises(RuntimeError):
            queue.drain()
        first.close()

        # Closing the first consumer frees the slot
        assert len(list(queue.drain())) == 1

    @pytest.mark.asyncio
    async def test_active_job_counts_in_flight(self):
        """A job being processed still counts until the consumer moves on."""
        queue = DispatchQueue()
        queue.enqueue(make_request(1))
        queue.enqueue(make_request(2))

        consumer = queue.drain()
        job = next(consumer)
        assert job.state == JobState.SUBMITTING
        assert queue.active_job is job
        assert queue.queued == 1
        assert queue.in_flight == 2

        next(consumer)
        assert queue.in_flight == 1
        consumer.close()
        assert queue.in_flight == 0


class TestHandles:
    """Tests for job handles and completion."""

    @pytest.mark.asyncio
    async def test_complete_resolves_handle(self):
        """Completing a job delivers the record to its handle."""
        queue = DispatchQueue()
        handle = queue.enqueue(make_request(1))
        job = next(queue.drain())

        record = TransactionRecord(job=job, outcome=TerminalOutcome.CONFIRMED)
        queue.complete(job, record)

        assert handle.done()
        assert await handle.wait(0.1) is record

    @pytest.mark.asyncio
    async def test_wait_timeout_does_not_cancel_job(self):
        """A caller timing out leaves the job resolvable."""
        queue = DispatchQueue()
        handle = queue.enqueue(make_request(1))

        assert await handle.wait(0.01) is None
        assert not handle.done()

        job = next(queue.drain())
        queue.complete(job, TransactionRecord(job=job, outcome=TerminalOutcome.FAILED))
        record = await handle.wait(0.1)
        assert record.outcome == TerminalOutcome.FAILED

    @pytest.mark.asyncio
    async def test_handle_resolves_once(self):
        """A second resolution is ignored."""
        queue = DispatchQueue()
        handle = queue.enqueue(make_request(1))
        job = handle.job

        first = TransactionRecord(job=job, outcome=TerminalOutcome.CONFIRMED)
        handle.resolve(first)
        handle.resolve(TransactionRecord(job=job, outcome=TerminalOutcome.FAILED))

        assert handle.result() is first

    @pytest.mark.asyncio
    async def test_abandon_pending(self):
        """Unstarted jobs are resolved as abandoned."""
        queue = DispatchQueue()
        handles = [queue.enqueue(make_request(n)) for n in range(3)]
        queue.close()

        assert queue.abandon_pending("shutting down") == 3
        for handle in handles:
            record = handle.result()
            assert record.outcome == TerminalOutcome.ABANDONED
            assert record.error == "shutting down"
        assert queue.in_flight == 0


class TestWaitForWork:
    """Tests for wait_for_work."""

    @pytest.mark.asyncio
    async def test_wakes_on_enqueue(self):
        """A waiting consumer wakes when a job arrives."""
        queue = DispatchQueue()
        waiter = asyncio.create_task(queue.wait_for_work())
        await asyncio.sleep(0)
        assert not waiter.done()

        queue.enqueue(make_request(1))
        await asyncio.wait_for(waiter, 1.0)

    @pytest.mark.asyncio
    async def test_wakes_on_close(self):
        """A waiting consumer wakes when the queue is closed."""
        queue = DispatchQueue()
        waiter = asyncio.create_task(queue.wait_for_work())
        await asyncio.sleep(0)

        queue.close()
        await asyncio.wait_for(waiter, 1.0)
