"""Observability module for DRIP faucet."""

from .health import HealthCheck, HealthServer, HealthStatus
from .logging import clear_request_id, configure_logging, get_logger, set_request_id
from .metrics import (
    DISBURSEMENTS,
    FUNDING_BALANCE,
    IN_FLIGHT,
    NEXT_SEQUENCE,
    REQUEST_DURATION,
    REQUESTS,
    SUBMISSION_ATTEMPTS,
    TRANSACTION_DURATION,
)

__all__ = [
    # Health
    "HealthCheck",
    "HealthServer",
    "HealthStatus",
    # Logging
    "clear_request_id",
    "configure_logging",
    "get_logger",
    "set_request_id",
    # Metrics
    "DISBURSEMENTS",
    "FUNDING_BALANCE",
    "IN_FLIGHT",
    "NEXT_SEQUENCE",
    "REQUEST_DURATION",
    "REQUESTS",
    "SUBMISSION_ATTEMPTS",
    "TRANSACTION_DURATION",
]
