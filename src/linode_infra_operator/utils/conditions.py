"""Utilities for managing status conditions.

Conditions are plain dicts stored under ``status.conditions``. They are only
changed through the mark helpers below so that ``lastTransitionTime`` moves
exactly when ``status`` flips.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from ..constants import COND_READY, SEVERITY_ERROR, SEVERITY_INFO, SEVERITY_WARNING


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def update_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    severity: str | None = None,
    observed_generation: int | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Update or add a condition to the conditions list.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        status: Status of condition ("True", "False", "Unknown")
        reason: Reason for the condition
        message: Human-readable message
        severity: Severity for non-True conditions (Info, Warning, Error)
        observed_generation: Generation when condition was observed
        now: Override for the current time

    Returns:
        Updated list of conditions
    """
    timestamp = (now or _now()).isoformat()

    existing_idx = None
    for idx, cond in enumerate(conditions):
        if cond.get("type") == condition_type:
            existing_idx = idx
            break

    new_condition: dict[str, Any] = {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        "lastTransitionTime": timestamp,
    }
    if severity and status != "True":
        new_condition["severity"] = severity
    if observed_generation is not None:
        new_condition["observedGeneration"] = observed_generation

    if existing_idx is not None:
        existing = conditions[existing_idx]
        # Only update lastTransitionTime if status changed
        if existing.get("status") == status:
            new_condition["lastTransitionTime"] = existing.get("lastTransitionTime", timestamp)
        conditions[existing_idx] = new_condition
    else:
        conditions.append(new_condition)

    return conditions


def get_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    """Return the condition of the given type, if present."""
    for cond in conditions:
        if cond.get("type") == condition_type:
            return cond
    return None


def is_true(conditions: list[dict[str, Any]], condition_type: str) -> bool:
    """Return True when the condition is present with status True."""
    cond = get_condition(conditions, condition_type)
    return cond is not None and cond.get("status") == "True"


def mark_true(
    conditions: list[dict[str, Any]],
    condition_type: str,
    reason: str | None = None,
    message: str = "",
) -> list[dict[str, Any]]:
    """Mark a condition True."""
    return update_condition(conditions, condition_type, "True", reason or condition_type, message)


def mark_false(
    conditions: list[dict[str, Any]],
    condition_type: str,
    reason: str,
    message: str,
    severity: str = SEVERITY_WARNING,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Mark a condition False with the given severity."""
    return update_condition(conditions, condition_type, "False", reason, message, severity=severity, now=now)


def mark_unknown(
    conditions: list[dict[str, Any]],
    condition_type: str,
    reason: str,
    message: str,
) -> list[dict[str, Any]]:
    """Mark a condition Unknown."""
    return update_condition(conditions, condition_type, "Unknown", reason, message, severity=SEVERITY_INFO)


def set_ready_condition(
    conditions: list[dict[str, Any]],
    status: bool,
    message: str,
    reason: str | None = None,
    severity: str = SEVERITY_ERROR,
) -> list[dict[str, Any]]:
    """Set the Ready condition."""
    if status:
        return mark_true(conditions, COND_READY, reason or "Ready", message)
    return mark_false(conditions, COND_READY, reason or "NotReady", message, severity=severity)


def has_stale_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    timeout: float,
    now: datetime | None = None,
) -> bool:
    """Return True when the condition has held its status for longer than ``timeout`` seconds."""
    cond = get_condition(conditions, condition_type)
    if cond is None:
        return False
    transitioned = _parse_time(cond.get("lastTransitionTime"))
    if transitioned is None:
        return False
    return (now or _now()) > transitioned + timedelta(seconds=timeout)


def record_decaying_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    reason: str,
    message: str,
    timeout: float,
    now: datetime | None = None,
) -> bool:
    """Record a transient failure that escalates once it has persisted too long.

    The condition is marked False with Warning severity. If it has already
    been False for longer than ``timeout`` seconds, the severity is raised to
    Error and True is returned so the caller can stop retrying quietly.

    Args:
        conditions: List of existing conditions
        condition_type: Type of condition
        reason: Reason for the failure
        message: Human-readable message
        timeout: Seconds after which the failure is considered stale
        now: Override for the current time

    Returns:
        True if the condition is stale
    """
    mark_false(conditions, condition_type, reason, message, severity=SEVERITY_WARNING, now=now)

    if has_stale_condition(conditions, condition_type, timeout, now=now):
        mark_false(conditions, condition_type, reason, message, severity=SEVERITY_ERROR, now=now)
        return True

    return False
