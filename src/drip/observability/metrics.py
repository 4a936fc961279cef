"""Prometheus metrics for DRIP faucet.

Metrics:
- drip_requests_total: Counter of disbursement requests by admission verdict
- drip_disbursements_total: Counter of finished jobs by terminal outcome
- drip_submission_attempts_total: Counter of chain submissions by result
- drip_in_flight: Gauge of admitted, unfinished jobs
- drip_funding_balance: Gauge of the funding account balance
- drip_next_sequence: Gauge of the next sequence number the ledger will hand out
- drip_request_duration_seconds: Histogram of request duration as seen by callers
- drip_transaction_duration_seconds: Histogram of submit-to-outcome duration
"""

from prometheus_client import Counter, Gauge, Histogram

# Counters
REQUESTS = Counter(
    "drip_requests_total",
    "Total number of disbursement requests",
    ["verdict"],
)

DISBURSEMENTS = Counter(
    "drip_disbursements_total",
    "Total disbursement jobs reaching a terminal outcome",
    ["outcome"],
)

SUBMISSION_ATTEMPTS = Counter(
    "drip_submission_attempts_total",
    "Total transaction submissions",
    ["result"],
)

# Gauges
IN_FLIGHT = Gauge(
    "drip_in_flight",
    "Admitted disbursement jobs without a terminal outcome",
)

FUNDING_BALANCE = Gauge(
    "drip_funding_balance",
    "Funding account balance in ether",
)

NEXT_SEQUENCE = Gauge(
    "drip_next_sequence",
    "Next sequence number the ledger cache will reserve",
)

# Histograms
REQUEST_DURATION = Histogram(
    "drip_request_duration_seconds",
    "Request processing duration",
    ["status"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

TRANSACTION_DURATION = Histogram(
    "drip_transaction_duration_seconds",
    "Blockchain transaction duration",
    ["outcome"],
    buckets=(1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)
