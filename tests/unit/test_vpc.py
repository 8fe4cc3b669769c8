"""Tests for the LinodeVPC handler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from linode_infra_operator.constants import COND_PREFLIGHT_WAITING_FOR_DETACH, KIND_VPC
from linode_infra_operator.handlers.vpc import VPCHandler, vpc_create_options
from linode_infra_operator.utils.conditions import get_condition
from linode_infra_operator.utils.errors import (
    ExternalConflictError,
    InvariantViolationError,
    LinodeAPIError,
    NotFoundExternalError,
)
from linode_infra_operator.utils.filter import Filter

from conftest import make_resource

SPEC = {
    "region": "us-ord",
    "description": "cluster network",
    "subnets": [{"label": "nodes", "ipv4": "10.0.0.0/24"}],
}


def vpc_resource(**spec):
    return make_resource(KIND_VPC, name="net", spec={**SPEC, **spec})


class TestVPCCreateOptions:
    """Test cases for the create payload."""

    def test_options(self):
        """Test translating a spec into the provider payload."""
        opts = vpc_create_options("net", {**SPEC, "ipv6Range": ["auto"]})

        assert opts == {
            "label": "net",
            "region": "us-ord",
            "description": "cluster network",
            "subnets": [{"label": "nodes", "ipv4": "10.0.0.0/24"}],
            "ipv6": [{"range": "auto"}],
        }

    def test_no_ipv6(self):
        """Test that IPv6 is omitted when not declared."""
        assert "ipv6" not in vpc_create_options("net", SPEC)


class TestVPCCreate:
    """Test cases for creating VPCs."""

    def test_create(self, make_scope, linode_client):
        """Test that a VPC is created and its IDs recorded."""
        linode_client.list_vpcs.return_value = []
        linode_client.create_vpc.return_value = {"id": 100, "subnets": [{"id": 7, "label": "nodes"}]}
        scope = make_scope(vpc_resource())

        assert VPCHandler().create(scope) is None

        linode_client.list_vpcs.assert_called_once_with(Filter(label="net"))
        assert scope.resource.spec["vpcID"] == 100
        assert scope.resource.spec["subnets"][0]["subnetID"] == 7

    def test_adopts_leftover(self, make_scope, linode_client):
        """Test that a VPC created by an interrupted cycle is adopted."""
        linode_client.list_vpcs.return_value = [{"id": 100, "subnets": [{"id": 7, "label": "nodes"}]}]
        scope = make_scope(vpc_resource())

        VPCHandler().create(scope)

        linode_client.create_vpc.assert_not_called()
        assert scope.resource.spec["vpcID"] == 100

    def test_duplicates_block_creation(self, make_scope, linode_client):
        """Test that two VPCs with the same label are an invariant violation."""
        linode_client.list_vpcs.return_value = [{"id": 1}, {"id": 2}]
        scope = make_scope(vpc_resource())

        with pytest.raises(InvariantViolationError):
            VPCHandler().create(scope)

        linode_client.create_vpc.assert_not_called()
        assert "vpcID" not in scope.resource.spec

    def test_repeated_create_reuses_vpc(self, make_scope, linode_client):
        """Test that a create whose ID was never recorded adopts the VPC it made."""
        vpcs = []

        def create_vpc(opts):
            vpc = {"id": 100 + len(vpcs), "label": opts["label"], "subnets": [{"id": 7, "label": "nodes"}]}
            vpcs.append(vpc)
            return vpc

        linode_client.list_vpcs.side_effect = lambda filter_=None: [v for v in vpcs if v["label"] == filter_.label]
        linode_client.create_vpc.side_effect = create_vpc

        first = make_scope(vpc_resource())
        VPCHandler().create(first)
        second = make_scope(vpc_resource())
        VPCHandler().create(second)

        assert linode_client.create_vpc.call_count == 1
        assert first.resource.spec["vpcID"] == second.resource.spec["vpcID"] == 100
        assert second.resource.spec["subnets"][0]["subnetID"] == 7


class TestVPCUpdate:
    """Test cases for converging existing VPCs."""

    def test_missing_subnet_is_created(self, make_scope, linode_client):
        """Test that a declared subnet the VPC lacks is added."""
        linode_client.get_vpc.return_value = {"id": 100, "subnets": []}
        linode_client.create_vpc_subnet.return_value = {"id": 8}
        scope = make_scope(vpc_resource(vpcID=100))

        VPCHandler().update(scope)

        linode_client.create_vpc_subnet.assert_called_once_with(100, {"label": "nodes", "ipv4": "10.0.0.0/24"})
        assert scope.resource.spec["subnets"][0]["subnetID"] == 8

    def test_vanished_vpc(self, make_scope, linode_client):
        """Test that a 404 is reported as not found."""
        linode_client.get_vpc.side_effect = LinodeAPIError(404)
        scope = make_scope(vpc_resource(vpcID=100))

        with pytest.raises(NotFoundExternalError):
            VPCHandler().update(scope)


class TestVPCDelete:
    """Test cases for deleting VPCs."""

    def test_delete(self, make_scope, linode_client):
        """Test deleting a VPC without attached linodes."""
        linode_client.get_vpc.return_value = {"id": 100, "subnets": [{"id": 7, "label": "nodes", "linodes": []}]}
        scope = make_scope(vpc_resource(vpcID=100))

        assert VPCHandler().delete(scope) is None

        linode_client.delete_vpc.assert_called_once_with(100)
        assert "vpcID" not in scope.resource.spec

    def test_delete_already_gone(self, make_scope, linode_client):
        """Test that a VPC already removed counts as deleted."""
        linode_client.get_vpc.side_effect = LinodeAPIError(404)
        scope = make_scope(vpc_resource(vpcID=100))

        assert VPCHandler().delete(scope) is None

        linode_client.delete_vpc.assert_not_called()

    def test_delete_without_id(self, make_scope, linode_client):
        """Test that nothing is called when no VPC was created."""
        assert VPCHandler().delete(make_scope(vpc_resource())) is None
        linode_client.get_vpc.assert_not_called()

    def test_waits_for_attached_linodes(self, make_scope, linode_client):
        """Test that deletion is requeued while linodes are attached."""
        linode_client.get_vpc.return_value = {
            "id": 100,
            "subnets": [{"id": 7, "label": "nodes", "linodes": [{"id": 1}]}],
        }
        scope = make_scope(vpc_resource(vpcID=100))

        assert VPCHandler().delete(scope) == 5

        linode_client.delete_vpc.assert_not_called()
        cond = get_condition(scope.resource.conditions, COND_PREFLIGHT_WAITING_FOR_DETACH)
        assert cond["status"] == "False"
        assert cond["reason"] == "NodesAttached"

    def test_gives_up_when_linodes_stay_attached(self, make_scope, linode_client):
        """Test that a long wait is escalated to a conflict."""
        linode_client.get_vpc.return_value = {
            "id": 100,
            "subnets": [{"id": 7, "label": "nodes", "linodes": [{"id": 1}]}],
        }
        long_ago = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        resource = vpc_resource(vpcID=100)
        resource.status["conditions"] = [{
            "type": COND_PREFLIGHT_WAITING_FOR_DETACH,
            "status": "False",
            "reason": "NodesAttached",
            "message": "waiting",
            "lastTransitionTime": long_ago,
        }]
        scope = make_scope(resource)

        with pytest.raises(ExternalConflictError):
            VPCHandler().delete(scope)
