"""Tests for the LinodeNodeBalancer handler."""

from __future__ import annotations

import pytest

from linode_infra_operator.constants import KIND_FIREWALL, KIND_NODEBALANCER
from linode_infra_operator.handlers.nodebalancer import NodeBalancerHandler
from linode_infra_operator.utils.errors import (
    ExternalConflictError,
    LinodeAPIError,
    NotFoundExternalError,
    TransientExternalError,
    ValidationError,
)

from conftest import make_resource

CREATED = {
    "id": 30,
    "label": "lb",
    "ipv4": "192.0.2.10",
    "ipv6": "2001:db8::10",
    "hostname": "nb-192-0-2-10.us-ord.nodebalancer.linode.com",
    "tags": ["uid-1234"],
}


def nb_resource(**spec):
    return make_resource(KIND_NODEBALANCER, name="lb", spec={"region": "us-ord", **spec})


class TestNodeBalancerCreate:
    """Test cases for creating NodeBalancers."""

    def test_create_defaults(self, make_scope, linode_client):
        """Test creating a NodeBalancer with the default API server config."""
        linode_client.list_nodebalancers.return_value = []
        linode_client.create_nodebalancer.return_value = CREATED
        scope = make_scope(nb_resource())

        assert NodeBalancerHandler().create(scope) is None

        opts = linode_client.create_nodebalancer.call_args.args[0]
        assert opts == {
            "label": "lb",
            "region": "us-ord",
            "tags": ["uid-1234"],
            "configs": [{"port": 6443, "protocol": "tcp", "algorithm": "roundrobin", "check": "connection"}],
        }
        assert scope.resource.spec["nodeBalancerID"] == 30
        assert scope.resource.status["ipv4"] == "192.0.2.10"
        assert scope.resource.status["hostname"] == CREATED["hostname"]

    def test_create_with_firewall(self, store, make_scope, linode_client):
        """Test that a referenced firewall is attached at creation."""
        store.add(make_resource(KIND_FIREWALL, name="fw", spec={"firewallID": 50}))
        linode_client.list_nodebalancers.return_value = []
        linode_client.create_nodebalancer.return_value = CREATED
        scope = make_scope(nb_resource(firewallRef={"name": "fw"}, clientConnThrottle=5))

        NodeBalancerHandler().create(scope)

        opts = linode_client.create_nodebalancer.call_args.args[0]
        assert opts["firewall_id"] == 50
        assert opts["client_conn_throttle"] == 5

    def test_firewall_not_ready(self, store, make_scope, linode_client):
        """Test that a firewall without an ID yet is waited for."""
        store.add(make_resource(KIND_FIREWALL, name="fw"))
        linode_client.list_nodebalancers.return_value = []
        scope = make_scope(nb_resource(firewallRef={"name": "fw"}))

        with pytest.raises(TransientExternalError):
            NodeBalancerHandler().create(scope)

        linode_client.create_nodebalancer.assert_not_called()

    def test_firewall_missing(self, make_scope, linode_client):
        """Test that a dangling firewall reference is a validation error."""
        linode_client.list_nodebalancers.return_value = []
        scope = make_scope(nb_resource(firewallRef={"name": "nope"}))

        with pytest.raises(ValidationError):
            NodeBalancerHandler().create(scope)

    def test_adopt_foreign_is_conflict(self, make_scope, linode_client):
        """Test that an untagged NodeBalancer is never adopted."""
        linode_client.list_nodebalancers.return_value = [{**CREATED, "tags": []}]
        scope = make_scope(nb_resource())

        with pytest.raises(ExternalConflictError):
            NodeBalancerHandler().create(scope)

        assert "nodeBalancerID" not in scope.resource.spec


class TestNodeBalancerUpdate:
    """Test cases for converging NodeBalancers."""

    def test_in_sync(self, make_scope, linode_client):
        """Test that nothing is updated when the NodeBalancer matches."""
        linode_client.get_nodebalancer.return_value = CREATED
        scope = make_scope(nb_resource(nodeBalancerID=30))

        assert NodeBalancerHandler().update(scope) is None

        linode_client.update_nodebalancer.assert_not_called()
        assert scope.resource.status["ipv6"] == "2001:db8::10"

    def test_throttle_drift(self, make_scope, linode_client):
        """Test that only drifted fields are sent."""
        linode_client.get_nodebalancer.return_value = {**CREATED, "client_conn_throttle": 0}
        linode_client.update_nodebalancer.return_value = {**CREATED, "client_conn_throttle": 10}
        scope = make_scope(nb_resource(nodeBalancerID=30, clientConnThrottle=10))

        NodeBalancerHandler().update(scope)

        linode_client.update_nodebalancer.assert_called_once_with(30, {"client_conn_throttle": 10})

    def test_vanished(self, make_scope, linode_client):
        """Test that a deleted NodeBalancer is reported as not found."""
        linode_client.get_nodebalancer.side_effect = LinodeAPIError(404)

        with pytest.raises(NotFoundExternalError):
            NodeBalancerHandler().update(make_scope(nb_resource(nodeBalancerID=30)))


class TestNodeBalancerDelete:
    """Test cases for deleting NodeBalancers."""

    def test_delete(self, make_scope, linode_client):
        """Test deleting a NodeBalancer."""
        scope = make_scope(nb_resource(nodeBalancerID=30))

        assert NodeBalancerHandler().delete(scope) is None

        linode_client.delete_nodebalancer.assert_called_once_with(30)
        assert "nodeBalancerID" not in scope.resource.spec

    def test_delete_error_keeps_id(self, make_scope, linode_client):
        """Test that a failed delete leaves the ID in place."""
        linode_client.delete_nodebalancer.side_effect = LinodeAPIError(500)
        scope = make_scope(nb_resource(nodeBalancerID=30))

        with pytest.raises(LinodeAPIError):
            NodeBalancerHandler().delete(scope)

        assert scope.resource.spec["nodeBalancerID"] == 30
