"""Tests for the kopf entry points."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import kopf
import pytest

from linode_infra_operator import main
from linode_infra_operator.config import OperatorConfig
from linode_infra_operator.constants import KIND_FIREWALL, KIND_INSTANCE, KIND_VPC
from linode_infra_operator.reconciler import ReconcileResult
from linode_infra_operator.utils.errors import ValidationError


@pytest.fixture
def engine():
    engine = MagicMock()
    with patch.dict(main.engines, {KIND_VPC: engine}, clear=True):
        yield engine


class TestRunReconcile:
    """Test cases for translating cycle outcomes for kopf."""

    def test_done(self, engine):
        """Test that a finished cycle returns normally."""
        engine.reconcile.return_value = ReconcileResult()

        main.run_reconcile(KIND_VPC, "default", "net")

        engine.reconcile.assert_called_once_with("default", "net", cancelled=main.shutdown)

    def test_requeue(self, engine):
        """Test that a requeue becomes a delayed retry."""
        engine.reconcile.return_value = ReconcileResult(requeue_after=15)

        with pytest.raises(kopf.TemporaryError) as exc_info:
            main.run_reconcile(KIND_VPC, "default", "net")

        assert exc_info.value.delay == 15

    def test_immediate_requeue(self, engine):
        """Test that a zero delay still retries."""
        engine.reconcile.return_value = ReconcileResult(requeue_after=0)

        with pytest.raises(kopf.TemporaryError) as exc_info:
            main.run_reconcile(KIND_VPC, "default", "net")

        assert exc_info.value.delay == 0

    def test_timer_does_not_requeue(self, engine):
        """Test that drift checks leave rescheduling to the timer."""
        engine.reconcile.return_value = ReconcileResult(requeue_after=15)

        main.run_reconcile(KIND_VPC, "default", "net", requeue=False)

    def test_permanent_failure(self, engine):
        """Test that a recorded failure is not retried by kopf."""
        engine.reconcile.side_effect = ValidationError("subnet overlaps")

        with pytest.raises(kopf.PermanentError, match="subnet overlaps"):
            main.run_reconcile(KIND_VPC, "default", "net")

    def test_unexpected_error_propagates(self, engine):
        """Test that errors outside the taxonomy reach kopf unchanged."""
        engine.reconcile.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            main.run_reconcile(KIND_VPC, "default", "net")

    def test_handlers_dispatch_by_kind(self, engine):
        """Test that each kopf handler drives its own kind."""
        engine.reconcile.return_value = ReconcileResult()

        main.handle_vpc(namespace="default", name="net", body={}, logger=MagicMock())

        engine.reconcile.assert_called_once()


class TestBuildEngines:
    """Test cases for wiring engines at startup."""

    @patch("linode_infra_operator.main.client")
    def test_one_engine_per_kind(self, mock_client):
        """Test that every kind gets an engine sharing the cross-kind stores."""
        engines = main.build_engines(OperatorConfig(linode_token="tok", reconcile_timeout=600))

        assert set(engines) == set(main.HANDLER_CLASSES)
        assert engines[KIND_VPC].store is engines[KIND_INSTANCE].store
        assert engines[KIND_VPC].quota_store is engines[KIND_FIREWALL].quota_store
        assert engines[KIND_INSTANCE].vlan_ips is not None
        assert engines[KIND_VPC].reconcile_timeout == 600
        assert engines[KIND_VPC].client_config.token == "tok"
