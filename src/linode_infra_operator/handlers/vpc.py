"""Handler for LinodeVPC resources."""

from __future__ import annotations

from typing import Any

from ..constants import (
    COND_PREFLIGHT_WAITING_FOR_DETACH,
    DEFAULT_REQUEUE_DELAY,
    EVENT_REASON_DELETED,
    KIND_VPC,
)
from ..scope import Scope
from ..tracing import trace_span
from ..utils.conditions import record_decaying_condition
from ..utils.errors import ExternalConflictError, LinodeAPIError, NotFoundExternalError, is_not_found
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.filter import Filter
from .base import BaseHandler, Requeue


def vpc_create_options(resource_name: str, spec: dict[str, Any]) -> dict[str, Any]:
    """Translate a LinodeVPC spec into the provider's create payload."""
    opts: dict[str, Any] = {
        "label": resource_name,
        "region": spec.get("region", ""),
        "description": spec.get("description", ""),
        "subnets": [
            {"label": subnet["label"], "ipv4": subnet.get("ipv4", "")}
            for subnet in spec.get("subnets") or []
        ],
    }
    if spec.get("ipv6Range"):
        opts["ipv6"] = [{"range": r} for r in spec["ipv6Range"]]
    return opts


class VPCHandler(BaseHandler):
    """Handler for LinodeVPC resources."""

    kind = KIND_VPC
    external_id_field = ("spec", "vpcID")

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        with trace_span("create_vpc", kind=self.kind, attributes={"vpc.label": resource.name}):
            matches = scope.client.list_vpcs(Filter(label=resource.name))
            vpc = self.adopt_or_create(
                scope,
                matches,
                lambda: scope.client.create_vpc(vpc_create_options(resource.name, resource.spec)),
                "VPC",
            )
            self.set_external_id(resource, vpc["id"])
            self._record_subnets(scope, vpc)
        return None

    def update(self, scope: Scope) -> Requeue:
        resource = scope.resource
        vpc_id = self.external_id(resource)
        try:
            vpc = scope.client.get_vpc(vpc_id)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"VPC {vpc_id} no longer exists") from e
            raise
        self._record_subnets(scope, vpc)
        return None

    def _record_subnets(self, scope: Scope, vpc: dict[str, Any]) -> None:
        """Fill in subnet IDs by label, creating declared subnets the VPC lacks."""
        existing = {subnet["label"]: subnet["id"] for subnet in vpc.get("subnets") or []}
        for subnet in scope.resource.spec.get("subnets") or []:
            subnet_id = existing.get(subnet["label"])
            if subnet_id is None:
                created = scope.client.create_vpc_subnet(
                    vpc["id"], {"label": subnet["label"], "ipv4": subnet.get("ipv4", "")}
                )
                subnet_id = created["id"]
                self.log_info(scope.resource, f"Created subnet {subnet['label']} in VPC {vpc['id']}")
            subnet["subnetID"] = subnet_id

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        vpc_id = self.external_id(resource)
        if vpc_id is None:
            self.log_info(resource, "VPC ID is missing, nothing to do")
            return None

        try:
            vpc = scope.client.get_vpc(vpc_id)
        except LinodeAPIError as e:
            if not is_not_found(e):
                raise
            vpc = None

        if vpc is not None:
            attached = [s["label"] for s in vpc.get("subnets") or [] if s.get("linodes")]
            if attached:
                message = f"subnets {', '.join(attached)} still have linodes attached"
                stale = record_decaying_condition(
                    resource.conditions,
                    COND_PREFLIGHT_WAITING_FOR_DETACH,
                    "NodesAttached",
                    message,
                    scope.stale_timeout,
                )
                if stale:
                    raise ExternalConflictError(f"will not delete VPC {vpc_id}: {message}")
                self.log_info(resource, f"VPC {vpc_id} {message}, re-queuing deletion")
                return DEFAULT_REQUEUE_DELAY

            try:
                scope.client.delete_vpc(vpc_id)
            except LinodeAPIError as e:
                if not is_not_found(e):
                    raise

        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"VPC {vpc_id} has been cleaned up")
        self.clear_external_id(resource)
        return None
