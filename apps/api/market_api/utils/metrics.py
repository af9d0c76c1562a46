"""Prometheus metrics."""

from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_call_duration = Histogram(
    "market_ledger_call_duration_seconds",
    "Ledger RPC call duration",
    ["method"],
)

ledger_retries = Counter(
    "market_ledger_retries_total",
    "Ledger calls retried after a transient failure",
    ["operation"],
)

# Settlement metrics
settlement_legs = Counter(
    "market_settlement_legs_total",
    "Transaction leg status transitions",
    ["kind", "status"],
)

settlement_batches = Counter(
    "market_settlement_batches_total",
    "Batches reaching a terminal state",
    ["kind", "outcome"],
)

open_batches = Gauge(
    "market_open_batches",
    "Batches not yet completed or failed, as of the last reconciliation sweep",
)

# Download metrics
download_tokens_issued = Counter(
    "market_download_tokens_issued_total",
    "Download tokens issued",
    ["reused"],
)

download_consumptions = Counter(
    "market_download_consumptions_total",
    "Download token consumption attempts",
    ["result"],
)

# Reputation metrics
rewards_distributed = Counter(
    "market_rewards_distributed_total",
    "Reward records written",
    ["first_submission"],
)
