"""Blockchain integration for DRIP."""

from .client import (
    ChainClient,
    ChainError,
    ChainRejectedError,
    ChainTimeoutError,
    ChainUnavailableError,
    FeeTooLowError,
    SequenceConflictError,
    TransactionState,
    TransactionStatus,
    TransientChainError,
)
from .networks import NetworkInfo

__all__ = [
    "ChainClient",
    "ChainError",
    "ChainRejectedError",
    "ChainTimeoutError",
    "ChainUnavailableError",
    "FeeTooLowError",
    "NetworkInfo",
    "SequenceConflictError",
    "TransactionState",
    "TransactionStatus",
    "TransientChainError",
]
