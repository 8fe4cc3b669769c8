"""Reconcile error taxonomy and error sanitization utilities."""

from __future__ import annotations

import re
from typing import Any

import requests
from kubernetes.client.exceptions import ApiException

from ..constants import (
    FAILURE_REASON_CAPACITY,
    FAILURE_REASON_CONFLICT,
    FAILURE_REASON_INVARIANT,
    FAILURE_REASON_TRANSIENT,
    FAILURE_REASON_VALIDATION,
    TOO_MANY_REQUESTS_DELAY,
)


class ReconcileError(Exception):
    """Base class for errors the reconcile engine knows how to handle."""

    failure_reason = FAILURE_REASON_VALIDATION
    retryable = False


class ValidationError(ReconcileError):
    """The declared spec is invalid; the user must fix it."""


class CapacityError(ValidationError):
    """Provider limits (rule count, addresses per rule) would be exceeded."""

    failure_reason = FAILURE_REASON_CAPACITY


class TransientExternalError(ReconcileError):
    """The provider failed in a way that is expected to clear on its own."""

    failure_reason = FAILURE_REASON_TRANSIENT
    retryable = True

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitedError(TransientExternalError):
    """The provider quota is exhausted, or the quota gate is closed."""

    def __init__(self, message: str, retry_after: float | None = TOO_MANY_REQUESTS_DELAY):
        super().__init__(message, retry_after=retry_after)


class ReconcileTimeoutError(TransientExternalError):
    """The reconcile deadline expired or the cycle was cancelled."""


class NotFoundExternalError(ReconcileError):
    """The external counterpart of a managed resource no longer exists."""

    failure_reason = FAILURE_REASON_TRANSIENT
    retryable = True


class InvariantViolationError(ReconcileError):
    """More than one external resource matched a unique filter."""

    failure_reason = FAILURE_REASON_INVARIANT


class ExternalConflictError(ReconcileError):
    """External state conflicts with the declared resource."""

    failure_reason = FAILURE_REASON_CONFLICT


class CommitConflictError(ReconcileError):
    """Optimistic concurrency conflict while writing to the object store."""

    failure_reason = FAILURE_REASON_TRANSIENT
    retryable = True


class ObjectNotFoundError(ReconcileError):
    """The managed object is absent from the object store."""


class LinodeAPIError(Exception):
    """Non-2xx response from the Linode API."""

    def __init__(self, status: int, reasons: list[str] | None = None, method: str = "", path: str = ""):
        self.status = status
        self.reasons = reasons or []
        self.method = method
        self.path = path
        detail = "; ".join(self.reasons) if self.reasons else "no detail"
        target = f" {method} {path}" if method else ""
        super().__init__(f"[{status}]{target}: {detail}")


def is_not_found(error: BaseException) -> bool:
    """Return True for provider or object-store 404 errors."""
    if isinstance(error, (LinodeAPIError, ApiException)):
        return error.status == 404
    return isinstance(error, (NotFoundExternalError, ObjectNotFoundError))


def classify_error(error: BaseException) -> BaseException:
    """Map provider, transport and object-store errors onto the taxonomy.

    Errors already in the taxonomy are returned unchanged. Anything that
    cannot be classified is returned as-is and treated as permanent.

    Args:
        error: The raised exception

    Returns:
        A ReconcileError where a mapping exists, otherwise ``error``
    """
    if isinstance(error, ReconcileError):
        return error

    if isinstance(error, LinodeAPIError):
        message = sanitize_exception(error)
        # A bare 404 is a missing dependency; handlers raise NotFoundExternalError for their own object
        if error.status == 429:
            return RateLimitedError(message)
        if error.status >= 500 or error.status in (404, 408, 409):
            return TransientExternalError(message)
        if error.status in (400, 422):
            return ValidationError(message)
        return error

    if isinstance(error, requests.exceptions.Timeout):
        return ReconcileTimeoutError(sanitize_exception(error))
    if isinstance(error, requests.exceptions.RequestException):
        return TransientExternalError(sanitize_exception(error))

    if isinstance(error, ApiException):
        message = sanitize_exception(error)
        if error.status == 409:
            return CommitConflictError(message)
        if error.status == 404:
            return ObjectNotFoundError(message)
        if error.status in (429, 500, 502, 503, 504):
            return TransientExternalError(message)
        return error

    return error


def join_errors(primary: BaseException | None, secondary: BaseException | None) -> BaseException | None:
    """Combine a handler error with a commit error so neither is dropped."""
    if primary is None:
        return secondary
    if secondary is None:
        return primary
    return ExceptionGroup("reconcile failed and status commit failed", [primary, secondary])


# Patterns that might expose sensitive information
SENSITIVE_PATTERNS = [
    r"bearer\s+([A-Za-z0-9\-_\.]+)",
    r"authorization[:\s]+([^\s,;\)]+)",
    r"access[_\s]?key[:\s]+([A-Z0-9]{16,})",
    r"secret[_\s]?key[:\s]+([A-Za-z0-9/+=]{20,})",
]

# Fields to redact completely
SENSITIVE_FIELDS = {
    "access_key",
    "secret_key",
    "password",
    "secret",
    "credentials",
    "token",
    "apitoken",
}


def sanitize_error_message(message: str) -> str:
    """Sanitize error message to remove sensitive information.

    Args:
        message: Original error message

    Returns:
        Sanitized error message with sensitive data redacted
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(
            pattern,
            lambda m: m.group(0).replace(m.group(1), "[REDACTED]"),
            sanitized,
            flags=re.IGNORECASE,
        )

    for field in SENSITIVE_FIELDS:
        sanitized = re.sub(
            rf"\b{field}[:=\s]+([^\s,;\)]+)",
            rf"{field}: [REDACTED]",
            sanitized,
            flags=re.IGNORECASE,
        )

    return sanitized


def sanitize_exception(error: BaseException) -> str:
    """Sanitize exception message.

    Args:
        error: Exception object

    Returns:
        Sanitized error message
    """
    if isinstance(error, BaseExceptionGroup):
        return "; ".join(sanitize_exception(e) for e in error.exceptions)
    return sanitize_error_message(str(error))


def sanitize_dict(data: dict[str, Any], sensitive_keys: set[str] | None = None) -> dict[str, Any]:
    """Sanitize dictionary by redacting sensitive fields.

    Args:
        data: Dictionary to sanitize
        sensitive_keys: Additional keys to redact (merged with SENSITIVE_FIELDS)

    Returns:
        Sanitized dictionary with sensitive values redacted
    """
    all_sensitive = SENSITIVE_FIELDS | (sensitive_keys or set())
    sanitized: dict[str, Any] = {}

    for key, value in data.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in all_sensitive):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_dict(value, sensitive_keys)
        elif isinstance(value, str):
            sanitized[key] = sanitize_error_message(value)
        else:
            sanitized[key] = value

    return sanitized
