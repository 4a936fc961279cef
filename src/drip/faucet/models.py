"""Data types shared by the admission, dispatch and submission stages."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


class AdmissionVerdict(str, Enum):
    """Outcome of an admission decision."""

    ACCEPTED = "accepted"
    REJECTED_RATE_LIMITED = "rejected_rate_limited"
    REJECTED_INVALID_ADDRESS = "rejected_invalid_address"
    REJECTED_BACKPRESSURE = "rejected_backpressure"

    @property
    def is_rate_limited(self) -> bool:
        """Backpressure is reported to requesters the same way as rate limiting."""
        return self in (
            AdmissionVerdict.REJECTED_RATE_LIMITED,
            AdmissionVerdict.REJECTED_BACKPRESSURE,
        )


class JobState(str, Enum):
    """Lifecycle of a queued disbursement."""

    QUEUED = "queued"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    RETRYING = "retrying"
    AMBIGUOUS = "ambiguous"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.CONFIRMED, JobState.FAILED, JobState.ABANDONED)


class TerminalOutcome(str, Enum):
    """Final outcome of a transaction record."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"


class OutcomeStatus(str, Enum):
    """Status reported back to the requester."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass(frozen=True)
class DisbursementRequest:
    """A request to send the configured amount to one address.

    Attributes
    ----------
    requester : str
        Opaque requester identity (e.g. chat user ID).
    destination : str
        Recipient address as supplied by the requester.
    amount : int
        Transfer amount in wei. Always the configured constant.
    submitted_at : float
        Epoch seconds when the request was created.
    request_id : str
        Correlation ID for logs.
    """

    requester: str
    destination: str
    amount: int
    submitted_at: float = field(default_factory=time.time)
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class AdmissionDecision:
    """Result of running a request through the admission policy."""

    request: DisbursementRequest
    verdict: AdmissionVerdict
    reason: str | None = None
    retry_after: int | None = None  # Seconds until the requester may try again

    @property
    def accepted(self) -> bool:
        return self.verdict == AdmissionVerdict.ACCEPTED


@dataclass
class QueuedJob:
    """An admitted request owned by the dispatch queue.

    The sequence number is assigned by the submitter, never at admission.
    """

    job_id: str
    request: DisbursementRequest
    sequence: int | None = None
    state: JobState = JobState.QUEUED


@dataclass
class SubmissionAttempt:
    """One signed submission of a job."""

    sequence: int
    tx_hash: str
    fee: int
    submitted_at: float = field(default_factory=time.time)
    error: str | None = None


@dataclass
class TransactionRecord:
    """Submission history and final outcome of a job."""

    job: QueuedJob
    signed_payload: bytes | None = None
    attempts: list[SubmissionAttempt] = field(default_factory=list)
    tx_hash: str | None = None
    block_number: int | None = None
    outcome: TerminalOutcome | None = None
    error: str | None = None

    @property
    def sequence(self) -> int | None:
        return self.job.sequence

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None


@dataclass
class DisbursementOutcome:
    """What the facade reports back to a requester."""

    status: OutcomeStatus
    message: str
    decision: AdmissionDecision | None = None
    job_id: str | None = None
    tx_hash: str | None = None
    retry_after: int | None = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.CONFIRMED

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dict."""
        result: dict = {"status": self.status.value, "message": self.message}
        if self.decision is not None:
            result["verdict"] = self.decision.verdict.value
        if self.job_id:
            result["job_id"] = self.job_id
        if self.tx_hash:
            result["tx_hash"] = self.tx_hash
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


@dataclass
class HealthReport:
    """Chain-backed health of the faucet."""

    chain_reachable: bool
    balance_above_threshold: bool
    balance: int | None = None  # wei
    next_sequence: int | None = None

    @property
    def healthy(self) -> bool:
        return self.chain_reachable and self.balance_above_threshold
