"""Utilities for emitting Kubernetes events."""

from __future__ import annotations

import logging
from typing import Any

import kopf

from .errors import sanitize_error_message

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


def emit_event(
    body: dict[str, Any],
    reason: str,
    message: str,
    type_: str = EVENT_TYPE_NORMAL,
) -> None:
    """Emit a Kubernetes event.

    Args:
        body: Full resource body (apiVersion, kind, metadata)
        reason: Event reason
        message: Event message
        type_: Event type (Normal or Warning)
    """
    kopf.event(
        body,
        reason=reason,
        message=sanitize_error_message(message),
        type=type_,
    )


class EventRecorder:
    """Records events against managed resources.

    Events are posted through kopf, which queues them and posts them
    asynchronously, so recording never blocks a reconcile cycle.
    """

    def event(self, body: dict[str, Any], type_: str, reason: str, message: str) -> None:
        logger.debug(f"{type_} event {reason}: {message}")
        emit_event(body, reason, message, type_=type_)

    def normal(self, body: dict[str, Any], reason: str, message: str) -> None:
        self.event(body, EVENT_TYPE_NORMAL, reason, message)

    def warning(self, body: dict[str, Any], reason: str, message: str) -> None:
        self.event(body, EVENT_TYPE_WARNING, reason, message)
