"""Faucet components for DRIP."""

from .admission import AdmissionController, validate_address
from .checks import ChainReachableCheck, FundingBalanceCheck, StartupFailureCheck
from .dispatch import DispatchQueue, JobHandle, QueueClosedError
from .ledger import FundingAccountState, LedgerStateCache
from .models import (
    AdmissionDecision,
    AdmissionVerdict,
    DisbursementOutcome,
    DisbursementRequest,
    HealthReport,
    JobState,
    OutcomeStatus,
    QueuedJob,
    SubmissionAttempt,
    TerminalOutcome,
    TransactionRecord,
)
from .service import FaucetService
from .submitter import TransactionSubmitter, backoff_delay

__all__ = [
    "AdmissionController",
    "AdmissionDecision",
    "AdmissionVerdict",
    "ChainReachableCheck",
    "DisbursementOutcome",
    "DisbursementRequest",
    "DispatchQueue",
    "FaucetService",
    "FundingAccountState",
    "FundingBalanceCheck",
    "HealthReport",
    "JobHandle",
    "JobState",
    "LedgerStateCache",
    "OutcomeStatus",
    "QueueClosedError",
    "QueuedJob",
    "StartupFailureCheck",
    "SubmissionAttempt",
    "TerminalOutcome",
    "TransactionRecord",
    "TransactionSubmitter",
    "backoff_delay",
    "validate_address",
]
