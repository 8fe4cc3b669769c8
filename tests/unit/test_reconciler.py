"""Tests for the reconcile engine."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import pytest

from linode_infra_operator.constants import COND_READY, FINALIZER, KIND_VPC
from linode_infra_operator.handlers.base import BaseHandler
from linode_infra_operator.reconciler import ReconcileEngine, ReconcileResult
from linode_infra_operator.utils.conditions import get_condition
from linode_infra_operator.utils.errors import (
    LinodeAPIError,
    NotFoundExternalError,
    RateLimitedError,
    TransientExternalError,
    ValidationError,
)
from linode_infra_operator.utils.rate_limit import QuotaStore

from conftest import make_resource


class StubHandler(BaseHandler):
    """Handler whose paths are mocks."""

    kind = KIND_VPC
    external_id_field = ("spec", "vpcID")

    def __init__(self) -> None:
        super().__init__()
        self.create_mock = MagicMock(return_value=None)
        self.update_mock = MagicMock(return_value=None)
        self.delete_mock = MagicMock(return_value=None)

    def create(self, scope):
        return self.create_mock(scope)

    def update(self, scope):
        return self.update_mock(scope)

    def delete(self, scope):
        return self.delete_mock(scope)


@pytest.fixture
def handler():
    return StubHandler()


@pytest.fixture
def client_factory(linode_client):
    return MagicMock(return_value=linode_client)


@pytest.fixture
def engine(handler, store, client_config, recorder, client_factory):
    return ReconcileEngine(
        handler,
        store,
        client_config,
        recorder=recorder,
        quota_store=QuotaStore(),
        secrets_api=MagicMock(),
        client_factory=client_factory,
    )


def stored(store, name="test"):
    return store.get(KIND_VPC, "default", name)


def deleting(resource, finalizer=True):
    resource.metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    if finalizer:
        resource.add_finalizer(FINALIZER)
    return resource


class TestReconcileCreateUpdate:
    """Test cases for the create and update paths."""

    def test_object_not_found(self, engine, handler):
        """Test that a missing object is a no-op."""
        assert engine.reconcile("default", "missing") == ReconcileResult()
        handler.create_mock.assert_not_called()

    def test_finalizer_is_committed_before_create(self, engine, handler, store):
        """Test that the finalizer is persisted before any external call."""
        store.add(make_resource(KIND_VPC))

        def create(scope):
            assert FINALIZER in stored(store).finalizers
            return None

        handler.create_mock.side_effect = create

        result = engine.reconcile("default", "test")

        assert result.requeue_after is None
        assert len(store.writes) == 2
        assert FINALIZER in store.writes[0]["metadata"]["finalizers"]

    def test_ready_on_success(self, engine, store):
        """Test that a successful cycle marks the object ready."""
        store.add(make_resource(KIND_VPC))

        engine.reconcile("default", "test")

        obj = stored(store)
        assert obj.status["ready"] is True
        assert get_condition(obj.conditions, COND_READY)["status"] == "True"

    def test_update_path(self, engine, handler, store):
        """Test that an object with an external ID takes the update path."""
        store.add(make_resource(KIND_VPC, spec={"vpcID": 100}))

        engine.reconcile("default", "test")

        handler.update_mock.assert_called_once()
        handler.create_mock.assert_not_called()

    def test_progressing(self, engine, handler, store):
        """Test that a handler asking for a requeue leaves the object progressing."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.return_value = 15

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 15
        cond = get_condition(stored(store).conditions, COND_READY)
        assert cond["status"] == "False"
        assert cond["reason"] == "Progressing"
        assert cond["severity"] == "Info"
        assert stored(store).status["ready"] is False

    def test_previous_failure_is_cleared(self, engine, store):
        """Test that a successful cycle removes an earlier failure."""
        store.add(make_resource(
            KIND_VPC, status={"failureReason": "InvalidConfiguration", "failureMessage": "bad"}
        ))

        engine.reconcile("default", "test")

        assert "failureReason" not in stored(store).status
        assert "failureMessage" not in stored(store).status


class TestReconcileErrors:
    """Test cases for the error policy."""

    def test_transient_error_requeues(self, engine, handler, store, recorder):
        """Test that a transient failure requeues without a failure record."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.side_effect = TransientExternalError("provider busy")

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        obj = stored(store)
        assert "failureReason" not in obj.status
        cond = get_condition(obj.conditions, COND_READY)
        assert cond["reason"] == "TransientError"
        assert cond["severity"] == "Warning"
        recorder.event.assert_not_called()

    def test_retry_after_is_honored(self, engine, handler, store):
        """Test that the error's own delay is used."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.side_effect = RateLimitedError("slow down", retry_after=30)

        assert engine.reconcile("default", "test").requeue_after == 30

    def test_provider_error_is_classified(self, engine, handler, store):
        """Test that a raw 503 from the provider is transient."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.side_effect = LinodeAPIError(503, ["unavailable"])

        assert engine.reconcile("default", "test").requeue_after == 5

    def test_stale_transient_error_is_surfaced(self, engine, handler, store, recorder):
        """Test that a long-lasting transient failure is recorded but still retried."""
        store.add(make_resource(KIND_VPC, status={"conditions": [{
            "type": COND_READY,
            "status": "False",
            "reason": "TransientError",
            "message": "provider busy",
            "lastTransitionTime": "2020-01-01T00:00:00+00:00",
        }]}))
        handler.create_mock.side_effect = TransientExternalError("provider busy")

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        obj = stored(store)
        assert obj.status["failureReason"] == "TransientError"
        assert get_condition(obj.conditions, COND_READY)["severity"] == "Error"
        assert recorder.event.call_args.args[1:3] == ("Warning", "ReconcileFailed")

    def test_vanished_resource_is_recreated(self, engine, handler, store, recorder):
        """Test that a missing external resource on update clears its ID."""
        store.add(make_resource(KIND_VPC, spec={"vpcID": 100}))
        handler.update_mock.side_effect = NotFoundExternalError("vpc 100 not found")

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 0
        assert "vpcID" not in stored(store).spec
        assert recorder.event.call_args.args[2] == "Recreating"

    def test_dependency_not_found_keeps_external_id(self, engine, handler, store, recorder):
        """Test that a provider 404 for some other object does not trigger a recreate."""
        store.add(make_resource(KIND_VPC, spec={"vpcID": 100}))
        handler.update_mock.side_effect = LinodeAPIError(404, ["Not found"], "GET", "/networking/firewalls/7")

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        assert stored(store).spec["vpcID"] == 100
        recorder.event.assert_not_called()

    def test_permanent_error(self, engine, handler, store, recorder):
        """Test that a permanent failure is recorded and raised."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.side_effect = ValidationError("subnet overlaps")

        with pytest.raises(ValidationError):
            engine.reconcile("default", "test")

        obj = stored(store)
        assert obj.status["failureReason"] == "InvalidConfiguration"
        assert obj.status["failureMessage"] == "subnet overlaps"
        assert obj.status["ready"] is False
        cond = get_condition(obj.conditions, COND_READY)
        assert cond["severity"] == "Error"
        recorder.event.assert_called_once()
        assert recorder.event.call_args.args[1:] == ("Warning", "ReconcileFailed", "subnet overlaps")

    def test_unclassified_error_uses_path_reason(self, engine, handler, store):
        """Test that an unknown error is attributed to the path it came from."""
        store.add(make_resource(KIND_VPC, spec={"vpcID": 100}))
        handler.update_mock.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            engine.reconcile("default", "test")

        assert stored(store).status["failureReason"] == "UpdateError"

    def test_bad_request_is_validation_error(self, engine, handler, store):
        """Test that a 400 from the provider becomes a validation error."""
        store.add(make_resource(KIND_VPC))
        handler.create_mock.side_effect = LinodeAPIError(400, ["label: invalid"])

        with pytest.raises(ValidationError):
            engine.reconcile("default", "test")

    def test_cancelled_cycle(self, engine, handler, store):
        """Test that a cancelled cycle stops before the handler runs."""
        store.add(make_resource(KIND_VPC))
        cancelled = threading.Event()
        cancelled.set()

        result = engine.reconcile("default", "test", cancelled=cancelled)

        assert result.requeue_after == 5
        handler.create_mock.assert_not_called()


class TestReconcileCommitConflicts:
    """Test cases for write conflicts."""

    def test_conflict_restarts_cycle(self, engine, handler, store):
        """Test that a conflicting write is retried from a fresh read."""
        store.add(make_resource(KIND_VPC))
        store.conflicts = 1

        result = engine.reconcile("default", "test")

        assert result.requeue_after is None
        assert handler.create_mock.call_count == 1
        assert stored(store).status["ready"] is True

    def test_persistent_conflicts_requeue(self, engine, handler, store):
        """Test that the engine gives up after repeated conflicts."""
        store.add(make_resource(KIND_VPC))
        store.conflicts = 100

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        handler.create_mock.assert_not_called()


class TestReconcileDelete:
    """Test cases for the delete path."""

    def test_delete_removes_finalizer(self, engine, handler, store):
        """Test that a confirmed deletion releases the object."""
        store.add(deleting(make_resource(KIND_VPC, spec={"vpcID": 100})))

        result = engine.reconcile("default", "test")

        assert result.requeue_after is None
        handler.delete_mock.assert_called_once()
        assert FINALIZER not in stored(store).finalizers

    def test_pending_delete_keeps_finalizer(self, engine, handler, store):
        """Test that an unfinished deletion keeps the object guarded."""
        store.add(deleting(make_resource(KIND_VPC, spec={"vpcID": 100})))
        handler.delete_mock.return_value = 5

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        assert FINALIZER in stored(store).finalizers

    def test_no_finalizer_skips_handler(self, engine, handler, store):
        """Test that an unguarded object is not touched."""
        store.add(deleting(make_resource(KIND_VPC), finalizer=False))

        engine.reconcile("default", "test")

        handler.delete_mock.assert_not_called()

    def test_failed_delete_is_recorded(self, engine, handler, store):
        """Test that a permanent delete failure keeps the finalizer."""
        store.add(deleting(make_resource(KIND_VPC, spec={"vpcID": 100})))
        handler.delete_mock.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            engine.reconcile("default", "test")

        obj = stored(store)
        assert obj.status["failureReason"] == "DeleteError"
        assert FINALIZER in obj.finalizers

    def test_vanished_on_delete_is_not_recreated(self, engine, handler, store):
        """Test that a not-found error on delete is retried instead of clearing the ID."""
        store.add(deleting(make_resource(KIND_VPC, spec={"vpcID": 100})))
        handler.delete_mock.side_effect = NotFoundExternalError("gone")

        result = engine.reconcile("default", "test")

        assert result.requeue_after == 5
        assert stored(store).spec["vpcID"] == 100


class TestReconcileCredentials:
    """Test cases for per-resource credentials."""

    @patch("linode_infra_operator.reconciler.get_credential_data")
    def test_credentials_ref_overrides_token(self, mock_get, engine, store, client_factory):
        """Test that the referenced token is used for the cycle."""
        mock_get.return_value = b"override-token\n"
        store.add(make_resource(KIND_VPC, spec={"credentialsRef": {"name": "linode-creds"}}))

        engine.reconcile("default", "test")

        assert mock_get.call_args.args[1:] == ({"name": "linode-creds"}, "default", "apiToken")
        assert client_factory.call_args.args[0].token == "override-token"

    def test_default_token(self, engine, store, client_factory):
        """Test that the operator's token is used without a reference."""
        store.add(make_resource(KIND_VPC))

        engine.reconcile("default", "test")

        assert client_factory.call_args.args[0].token == "test-token"
        assert client_factory.call_args.kwargs["quota"] is not None

    def test_credentials_ref_without_secrets_api(self, handler, store, client_config, client_factory):
        """Test that a reference cannot be resolved without a secrets API."""
        engine = ReconcileEngine(handler, store, client_config, client_factory=client_factory)
        store.add(make_resource(KIND_VPC, spec={"credentialsRef": {"name": "linode-creds"}}))

        with pytest.raises(ValidationError):
            engine.reconcile("default", "test")
