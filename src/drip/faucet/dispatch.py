"""Dispatch Queue for DRIP faucet.

Admitted requests are serialized into one FIFO stream with exactly one
consumer at a time. Sequence numbers are assigned by that consumer, so
admission order is also nonce order and two admitted requests can never race
for the same on-chain sequence number.
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Iterator

from .models import DisbursementRequest, JobState, QueuedJob, TerminalOutcome, TransactionRecord

logger = logging.getLogger(__name__)


class QueueClosedError(RuntimeError):
    """Raised when enqueueing into a queue that is shutting down."""


class JobHandle:
    """Caller-side handle on a queued job.

    The handle resolves exactly once, with the job's terminal
    ``TransactionRecord``. Waiting with a timeout never cancels the job.
    """

    def __init__(self, job: QueuedJob):
        self._job = job
        self._future: asyncio.Future[TransactionRecord] = (
            asyncio.get_running_loop().create_future()
        )

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def job(self) -> QueuedJob:
        return self._job

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> TransactionRecord:
        """Return the terminal record. Raises InvalidStateError if not finished."""
        return self._future.result()

    def resolve(self, record: TransactionRecord) -> None:
        """Deliver the terminal record. Later calls are ignored with a warning."""
        if self._future.done():
            logger.warning("Job already resolved", extra={"job_id": self.job_id})
            return
        self._future.set_result(record)

    async def wait(self, timeout: float | None = None) -> TransactionRecord | None:
        """Wait for the terminal record.

        Parameters
        ----------
        timeout : float | None
            Seconds to wait. None waits until the job finishes.

        Returns
        -------
        TransactionRecord | None
            The record, or None if the timeout elapsed first.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class DispatchQueue:
    """Ordered queue of admitted jobs with a single active consumer."""

    def __init__(self):
        self._pending: deque[QueuedJob] = deque()
        self._handles: dict[str, JobHandle] = {}
        self._active: QueuedJob | None = None
        self._draining = False
        self._closed = False
        self._work_available = asyncio.Event()
        self._ids = itertools.count(1)

    @property
    def in_flight(self) -> int:
        """Admitted jobs that have not reached a terminal outcome."""
        return len(self._pending) + (1 if self._active is not None else 0)

    @property
    def queued(self) -> int:
        """Jobs waiting for the consumer."""
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_job(self) -> QueuedJob | None:
        return self._active

    def enqueue(self, request: DisbursementRequest) -> JobHandle:
        """Append an admitted request.

        Returns
        -------
        JobHandle
            Handle the caller can wait on.

        Raises
        ------
        QueueClosedError
            If the queue has been closed for shutdown.
        """
        if self._closed:
            raise QueueClosedError("Dispatch queue is closed")

        job = QueuedJob(job_id=f"job-{next(self._ids)}-{request.request_id[:8]}", request=request)
        handle = JobHandle(job)
        self._handles[job.job_id] = handle
        self._pending.append(job)
        self._work_available.set()

        logger.info(
            "Job queued",
            extra={
                "job_id": job.job_id,
                "requester": request.requester,
                "destination": request.destination,
                "queued": len(self._pending),
            },
        )
        return handle

    def drain(self) -> Iterator[QueuedJob]:
        """Yield queued jobs in first-accepted-first-served order.

        The iterator is lazy and ends when the queue is empty; calling
        ``drain()`` again later continues with jobs enqueued since. A job
        counts as in flight until the consumer advances past it.

        Raises
        ------
        RuntimeError
            If another drain is already active.
        """
        if self._draining:
            raise RuntimeError("Dispatch queue already has an active consumer")
        self._draining = True
        return self._drain()

    def _drain(self) -> Iterator[QueuedJob]:
        try:
            while self._pending:
                job = self._pending.popleft()
                job.state = JobState.SUBMITTING
                self._active = job
                try:
                    yield job
                finally:
                    self._active = None
            self._work_available.clear()
        finally:
            self._draining = False

    def complete(self, job: QueuedJob, record: TransactionRecord) -> None:
        """Deliver a job's terminal record to whoever holds its handle."""
        handle = self._handles.pop(job.job_id, None)
        if handle is None:
            logger.warning("Completed job has no handle", extra={"job_id": job.job_id})
            return
        handle.resolve(record)

    async def wait_for_work(self) -> None:
        """Suspend until at least one job is queued or the queue is closed."""
        while not self._pending and not self._closed:
            self._work_available.clear()
            await self._work_available.wait()

    def close(self) -> None:
        """Stop accepting new jobs."""
        self._closed = True
        self._work_available.set()

    def abandon_pending(self, reason: str) -> int:
        """Resolve every job that never started as ABANDONED.

        Returns
        -------
        int
            Number of abandoned jobs.
        """
        count = 0
        while self._pending:
            job = self._pending.popleft()
            job.state = JobState.ABANDONED
            self.complete(
                job, TransactionRecord(job=job, outcome=TerminalOutcome.ABANDONED, error=reason)
            )
            count += 1

        if count:
            logger.warning("Abandoned queued jobs", extra={"count": count, "reason": reason})
        return count
