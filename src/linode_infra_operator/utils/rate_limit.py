"""Rate limiting utilities for API calls.

Two concerns live here. Kubernetes API calls are throttled client-side with
``rate_limit_k8s``. Linode instance creation is gated by the quota the API
reports back in its response headers, tracked per credential in a
``QuotaStore`` that the reconcile engine owns.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Iterator, Mapping, TypeVar

from kubernetes.client.exceptions import ApiException

from .. import metrics
from ..constants import (
    DEFAULT_POST_REQUEST_LIMIT,
    HEADER_RATELIMIT_REMAINING,
    HEADER_RATELIMIT_RESET,
    RATE_LIMIT_SKEW_SECONDS,
)

logger = logging.getLogger(__name__)

_F = TypeVar("_F", bound=Callable[..., Any])

# Rate limit configuration
_K8S_RATE_LIMIT_PER_SECOND = float(os.getenv("K8S_RATE_LIMIT_PER_SECOND", "10.0"))

# Track last call time
_k8s_last_call_time: float = 0.0
_k8s_lock = threading.Lock()


def rate_limit_k8s(func: _F) -> _F:
    """Decorator to rate limit Kubernetes API calls.

    Enforces a minimum interval between calls so bursts of reconciles do not
    overwhelm the Kubernetes API server.
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        global _k8s_last_call_time
        with _k8s_lock:
            min_interval = 1.0 / _K8S_RATE_LIMIT_PER_SECOND
            time_since_last_call = time.time() - _k8s_last_call_time
            if time_since_last_call < min_interval:
                time.sleep(min_interval - time_since_last_call)
            _k8s_last_call_time = time.time()
        return func(*args, **kwargs)

    return wrapper  # type: ignore


def handle_rate_limit_error(e: Exception, attempt: int, max_retries: int = 3) -> bool:
    """Back off if an API exception is a rate limit error.

    Args:
        e: Exception raised by the Kubernetes client
        attempt: Zero-based retry attempt
        max_retries: Maximum number of retries

    Returns:
        True if the caller should retry, False otherwise
    """
    if not isinstance(e, ApiException):
        return False
    # Kubernetes API rate limit errors typically return 429 or 503
    if e.status == 429 or (e.status == 503 and "rate limit" in str(e).lower()):
        metrics.rate_limit_hits_total.labels(api_type="k8s").inc()
        if attempt < max_retries:
            # Exponential backoff: 1s, 2s, 4s
            time.sleep(2 ** attempt)
            return True
    return False


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def credential_fingerprint(token: str) -> str:
    """Return a stable, non-reversible key for a credential."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_expensive_call(method: str, url: str) -> bool:
    """Only instance creation is tracked against the POST quota."""
    return method.upper() == "POST" and url.rstrip("/").endswith("/linode/instances")


class QuotaState:
    """Remaining POST quota and its reset time for one credential.

    ``reset_at`` is a unix timestamp in seconds as reported by the API.
    ``creation_lock`` serializes the gate check and the create call so two
    cycles sharing a credential cannot both spend the last request.
    """

    def __init__(self, remaining: int = DEFAULT_POST_REQUEST_LIMIT, reset_at: float = 0.0):
        self.remaining = remaining
        self.reset_at = reset_at
        self.creation_lock = threading.Lock()
        self._lock = ReadWriteLock()

    def record_response(self, method: str, url: str, headers: Mapping[str, str]) -> bool:
        """Update the quota from a response to an expensive call.

        Args:
            method: HTTP method of the request
            url: Request URL
            headers: Response headers

        Returns:
            True if the state was updated
        """
        if not is_expensive_call(method, url):
            return False
        remaining = headers.get(HEADER_RATELIMIT_REMAINING)
        reset = headers.get(HEADER_RATELIMIT_RESET)
        if remaining is None or reset is None:
            return False
        try:
            remaining_value = int(remaining)
            reset_value = float(reset)
        except ValueError:
            logger.warning(f"Ignoring malformed rate limit headers: remaining={remaining!r} reset={reset!r}")
            return False
        with self._lock.write():
            self.remaining = remaining_value
            self.reset_at = reset_value
        return True

    def wait_duration(self, now: float | None = None) -> float:
        """Seconds the caller must wait before the next expensive call, 0 to proceed."""
        current = time.time() if now is None else now
        with self._lock.read():
            if self.remaining == 0 and current < self.reset_at:
                return self.reset_at - current + RATE_LIMIT_SKEW_SECONDS
        return 0.0

    def snapshot(self) -> tuple[int, float]:
        with self._lock.read():
            return self.remaining, self.reset_at


class QuotaStore:
    """Quota state per credential fingerprint, created lazily."""

    def __init__(self) -> None:
        self._states: dict[str, QuotaState] = {}
        self._lock = ReadWriteLock()

    def get(self, fingerprint: str) -> QuotaState:
        with self._lock.read():
            state = self._states.get(fingerprint)
        if state is not None:
            return state
        with self._lock.write():
            return self._states.setdefault(fingerprint, QuotaState())

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._states)
