"""Prometheus metrics for the Linode Infra Operator."""

from prometheus_client import Counter, Histogram

# Reconciliation metrics
reconcile_total = Counter(
    "linode_infra_operator_reconcile_total",
    "Total number of reconciliations",
    ["kind", "result"],
)

reconcile_duration_seconds = Histogram(
    "linode_infra_operator_reconcile_duration_seconds",
    "Duration of reconciliations in seconds",
    ["kind"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

error_total = Counter(
    "linode_infra_operator_error_total",
    "Total number of reconcile errors by category",
    ["kind", "error_type"],
)

resource_status_total = Counter(
    "linode_infra_operator_resource_status_total",
    "Resource readiness observed at the end of a reconcile cycle",
    ["kind", "status"],
)

commit_total = Counter(
    "linode_infra_operator_commit_total",
    "Object store writes issued by scope commits",
    ["kind", "result"],
)

# Key rotation metrics
key_rotation_total = Counter(
    "linode_infra_operator_key_rotation_total",
    "Object storage key rotations",
    ["result"],
)

# API call metrics
api_call_total = Counter(
    "linode_infra_operator_api_call_total",
    "Total number of API calls",
    ["api_type", "operation", "result"],
)

api_call_duration_seconds = Histogram(
    "linode_infra_operator_api_call_duration_seconds",
    "Duration of API calls in seconds",
    ["api_type", "operation"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

rate_limit_hits_total = Counter(
    "linode_infra_operator_rate_limit_hits_total",
    "Total number of rate limit hits",
    ["api_type"],
)
