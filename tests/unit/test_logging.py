"""Tests for structured logging."""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

from linode_infra_operator.logging import JsonFormatter, log_resource_event, sanitize_secrets
from linode_infra_operator.utils.context import with_correlation_id


def make_record(message="hello", **extra):
    record = logging.LogRecord("test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_plain_record(self):
        """Test that a plain message becomes a JSON document."""
        data = json.loads(JsonFormatter().format(make_record("kopf says hi")))

        assert data["message"] == "kopf says hi"
        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert "correlation_id" not in data

    def test_resource_event_fields(self):
        """Test that resource event fields are merged into the document."""
        record = make_record("created", resource_event={"resource": "LinodeVPC", "message": "created"})

        data = json.loads(JsonFormatter().format(record))

        assert data["resource"] == "LinodeVPC"
        assert data["message"] == "created"

    def test_correlation_id(self):
        """Test that the active correlation ID is attached."""
        with with_correlation_id("abc123"):
            data = json.loads(JsonFormatter().format(make_record()))

        assert data["correlation_id"] == "abc123"


class TestLogResourceEvent:
    """Test cases for log_resource_event."""

    def test_fields_and_level(self):
        """Test that the event is logged at the requested level with its fields."""
        logger = MagicMock()

        log_resource_event(
            logger,
            controller="linode-infra-operator",
            resource_kind="LinodeVPC",
            resource_name="net",
            namespace="default",
            uid="uid-1",
            event="create",
            reason="Reconciled",
            message="create succeeded",
            level=logging.WARNING,
            requeue_after=5,
        )

        level, message = logger.log.call_args.args
        fields = logger.log.call_args.kwargs["extra"]["resource_event"]
        assert level == logging.WARNING
        assert message == "create succeeded"
        assert fields["name"] == "net"
        assert fields["requeue_after"] == 5

    def test_secrets_are_redacted(self):
        """Test that secret-bearing fields never reach the log."""
        assert sanitize_secrets({"token": "abc", "name": "x"}) == {"token": "***REDACTED***", "name": "x"}
