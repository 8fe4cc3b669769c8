"""Correlation IDs and deadlines for reconcile cycles."""

from __future__ import annotations

import contextvars
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator

from .errors import ReconcileTimeoutError

# Context variable for storing correlation ID
correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def get_correlation_id() -> str | None:
    """Get the correlation ID from the current context.

    Returns:
        Correlation ID if set, None otherwise
    """
    return correlation_id.get()


@contextmanager
def with_correlation_id(corr_id: str | None = None) -> Iterator[str]:
    """Context manager to set a correlation ID for the duration of a block.

    A fresh ID is generated when none is given, so every reconcile cycle
    can be followed through the logs.

    Args:
        corr_id: Correlation ID to use

    Yields:
        The correlation ID
    """
    corr_id = corr_id or uuid.uuid4().hex[:16]
    token = correlation_id.set(corr_id)
    try:
        yield corr_id
    finally:
        correlation_id.reset(token)


class Deadline:
    """Bounds a whole reconcile cycle in time.

    The cycle is also considered expired once ``cancelled`` is set, which
    is how shutdown interrupts in-flight work.
    """

    def __init__(self, timeout: float, cancelled: threading.Event | None = None):
        self.expires_at = time.monotonic() + timeout
        self.cancelled = cancelled

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        if self.cancelled is not None and self.cancelled.is_set():
            return True
        return self.remaining() <= 0

    def check(self) -> None:
        """Raise ReconcileTimeoutError if the cycle may not make further calls."""
        if self.cancelled is not None and self.cancelled.is_set():
            raise ReconcileTimeoutError("reconcile cancelled")
        if self.remaining() <= 0:
            raise ReconcileTimeoutError("reconcile deadline exceeded")
