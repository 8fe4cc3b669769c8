"""Utility functions for the Linode Infra Operator."""

from .conditions import (
    has_stale_condition,
    mark_false,
    mark_true,
    record_decaying_condition,
    update_condition,
)
from .context import Deadline, get_correlation_id, with_correlation_id
from .errors import classify_error, join_errors, sanitize_exception
from .events import EventRecorder, emit_event
from .filter import Filter
from .rate_limit import QuotaStore, credential_fingerprint, handle_rate_limit_error, rate_limit_k8s
from .secrets import get_credential_data
from .vlan_ips import VlanIPStore

__all__ = [
    "update_condition",
    "mark_true",
    "mark_false",
    "record_decaying_condition",
    "has_stale_condition",
    "Deadline",
    "get_correlation_id",
    "with_correlation_id",
    "classify_error",
    "join_errors",
    "sanitize_exception",
    "EventRecorder",
    "emit_event",
    "Filter",
    "QuotaStore",
    "credential_fingerprint",
    "rate_limit_k8s",
    "handle_rate_limit_error",
    "get_credential_data",
    "VlanIPStore",
]
