"""Structured logging configuration for the Linode Infra Operator.

Every record leaving the root logger is one JSON document per line, kopf's
own messages included. Resource events logged through ``log_resource_event``
carry their fields as a dict and are merged into that document.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .utils.context import get_correlation_id

SECRET_FIELDS = {"access_key", "secret_key", "token", "api_token", "password"}


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }
        fields = getattr(record, "resource_event", None)
        if fields:
            data.update(fields)
        else:
            data["message"] = record.getMessage()

        correlation_id = get_correlation_id()
        if correlation_id and "correlation_id" not in data:
            data["correlation_id"] = correlation_id
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_structured_logging() -> None:
    """Configure structured JSON logging on stdout.

    The level comes from ``LOG_LEVEL`` (default ``INFO``).
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        handlers=[handler],
        force=True,
    )


def log_resource_event(
    logger: logging.Logger,
    controller: str,
    resource_kind: str,
    resource_name: str,
    namespace: str,
    uid: str,
    event: str,
    reason: str,
    message: str,
    level: int = logging.INFO,
    **kwargs: Any,
) -> None:
    """Log a structured resource event."""
    fields = {
        "controller": controller,
        "resource": resource_kind,
        "name": resource_name,
        "namespace": namespace,
        "uid": uid,
        "event": event,
        "reason": reason,
        "message": message,
    }
    correlation_id = get_correlation_id()
    if correlation_id:
        fields["correlation_id"] = correlation_id
    fields.update(kwargs)
    fields = sanitize_secrets(fields)
    logger.log(level, message, extra={"resource_event": fields})


def sanitize_secrets(log_data: dict[str, Any]) -> dict[str, Any]:
    """Remove secret fields from log data."""
    sanitized = log_data.copy()
    for field in SECRET_FIELDS:
        if field in sanitized:
            sanitized[field] = "***REDACTED***"
    return sanitized
