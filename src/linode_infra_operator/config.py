"""Operator configuration loaded from the environment.

Values are validated once at startup so a misconfigured deployment fails
fast instead of surfacing as reconcile errors later.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_LINODE_URL = "https://api.linode.com/v4"
DEFAULT_CLIENT_TIMEOUT_SECONDS = 10
DEFAULT_CLIENT_RETRY_COUNT = 3
DEFAULT_RECONCILE_TIMEOUT_SECONDS = 90 * 60
DEFAULT_STALE_CONDITION_TIMEOUT_SECONDS = 20 * 60
DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS = 300
DEFAULT_METRICS_PORT = 8080
DEFAULT_MAX_WORKERS = 4


def _int_from_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    linode_token: str
    linode_url: str = DEFAULT_LINODE_URL
    root_certificate_path: str | None = None

    client_timeout: int = DEFAULT_CLIENT_TIMEOUT_SECONDS
    client_retry_count: int = DEFAULT_CLIENT_RETRY_COUNT
    reconcile_timeout: int = DEFAULT_RECONCILE_TIMEOUT_SECONDS
    stale_condition_timeout: int = DEFAULT_STALE_CONDITION_TIMEOUT_SECONDS
    drift_check_interval: int = DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS

    metrics_port: int = DEFAULT_METRICS_PORT
    max_workers: int = DEFAULT_MAX_WORKERS
    watch_namespace: str | None = None

    def __post_init__(self) -> None:
        if not self.linode_token:
            raise ConfigurationError("LINODE_TOKEN is required")
        if not self.linode_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"LINODE_URL must be an http(s) URL, got {self.linode_url!r}")
        if self.client_timeout <= 0:
            raise ConfigurationError("client timeout must be positive")
        if self.reconcile_timeout <= 0:
            raise ConfigurationError("reconcile timeout must be positive")
        if not 0 < self.metrics_port < 65536:
            raise ConfigurationError(f"METRICS_PORT out of range: {self.metrics_port}")

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Returns:
            Validated OperatorConfig

        Raises:
            ConfigurationError: If a variable is missing or malformed
        """
        return cls(
            linode_token=os.getenv("LINODE_TOKEN", ""),
            linode_url=os.getenv("LINODE_URL", DEFAULT_LINODE_URL).rstrip("/"),
            root_certificate_path=os.getenv("LINODE_CA") or None,
            client_timeout=_int_from_env(
                "LINODE_CLIENT_TIMEOUT_SECONDS", DEFAULT_CLIENT_TIMEOUT_SECONDS, minimum=1
            ),
            client_retry_count=_int_from_env(
                "LINODE_CLIENT_RETRY_COUNT", DEFAULT_CLIENT_RETRY_COUNT
            ),
            reconcile_timeout=_int_from_env(
                "RECONCILE_TIMEOUT_SECONDS", DEFAULT_RECONCILE_TIMEOUT_SECONDS, minimum=1
            ),
            stale_condition_timeout=_int_from_env(
                "STALE_CONDITION_TIMEOUT_SECONDS", DEFAULT_STALE_CONDITION_TIMEOUT_SECONDS, minimum=1
            ),
            drift_check_interval=_int_from_env(
                "DRIFT_CHECK_INTERVAL_SECONDS", DEFAULT_DRIFT_CHECK_INTERVAL_SECONDS, minimum=1
            ),
            metrics_port=_int_from_env("METRICS_PORT", DEFAULT_METRICS_PORT, minimum=1),
            max_workers=_int_from_env("MAX_WORKERS", DEFAULT_MAX_WORKERS, minimum=1),
            watch_namespace=os.getenv("WATCH_NAMESPACE") or None,
        )
