"""Handler for LinodeNodeBalancer resources."""

from __future__ import annotations

from typing import Any

from ..constants import EVENT_REASON_DELETED, EVENT_REASON_UPDATED, KIND_FIREWALL, KIND_NODEBALANCER
from ..scope import Scope
from ..tracing import trace_span
from ..utils.errors import (
    LinodeAPIError,
    NotFoundExternalError,
    ObjectNotFoundError,
    TransientExternalError,
    ValidationError,
    is_not_found,
)
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.filter import Filter
from .base import BaseHandler, Requeue

DEFAULT_LB_PORT = 6443


def _config_options(config: dict[str, Any]) -> dict[str, Any]:
    return {
        "port": config.get("port", DEFAULT_LB_PORT),
        "protocol": config.get("protocol", "tcp"),
        "algorithm": config.get("algorithm", "roundrobin"),
        "check": config.get("check", "connection"),
    }


class NodeBalancerHandler(BaseHandler):
    """Handler for LinodeNodeBalancer resources."""

    kind = KIND_NODEBALANCER
    external_id_field = ("spec", "nodeBalancerID")

    def _firewall_id(self, scope: Scope) -> int | None:
        """Resolve ``spec.firewallRef`` to the provider ID of a ready LinodeFirewall."""
        ref = scope.resource.spec.get("firewallRef")
        if not ref:
            return None
        namespace = ref.get("namespace") or scope.resource.namespace
        try:
            firewall = scope.store.get(KIND_FIREWALL, namespace, ref["name"])
        except ObjectNotFoundError as e:
            raise ValidationError(f"referenced LinodeFirewall {namespace}/{ref['name']} not found") from e
        firewall_id = firewall.spec.get("firewallID")
        if firewall_id is None:
            raise TransientExternalError(f"LinodeFirewall {namespace}/{ref['name']} has no firewall ID yet")
        return firewall_id

    def _desired(self, scope: Scope) -> dict[str, Any]:
        spec = scope.resource.spec
        desired: dict[str, Any] = {"label": scope.resource.name}
        if spec.get("clientConnThrottle") is not None:
            desired["client_conn_throttle"] = spec["clientConnThrottle"]
        return desired

    def _record(self, scope: Scope, nodebalancer: dict[str, Any]) -> None:
        status = scope.resource.status
        status["ipv4"] = nodebalancer.get("ipv4")
        status["ipv6"] = nodebalancer.get("ipv6")
        status["hostname"] = nodebalancer.get("hostname")

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        spec = resource.spec

        def create_nodebalancer() -> dict[str, Any]:
            opts: dict[str, Any] = {
                **self._desired(scope),
                "region": spec.get("region", ""),
                "tags": [resource.uid],
                "configs": [_config_options(c) for c in spec.get("configs") or [{}]],
            }
            firewall_id = self._firewall_id(scope)
            if firewall_id is not None:
                opts["firewall_id"] = firewall_id
            return scope.client.create_nodebalancer(opts)

        with trace_span("create_nodebalancer", kind=self.kind, attributes={"nodebalancer.label": resource.name}):
            matches = scope.client.list_nodebalancers(Filter(label=resource.name))
            nodebalancer = self.adopt_or_create(scope, matches, create_nodebalancer, "NodeBalancer")
            if matches:
                self.ensure_owned(resource, nodebalancer, "NodeBalancer")
            self.set_external_id(resource, nodebalancer["id"])
            self._record(scope, nodebalancer)
        return None

    def update(self, scope: Scope) -> Requeue:
        resource = scope.resource
        nodebalancer_id = self.external_id(resource)
        try:
            nodebalancer = scope.client.get_nodebalancer(nodebalancer_id)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"NodeBalancer {nodebalancer_id} no longer exists") from e
            raise

        desired = self._desired(scope)
        drifted = {k: v for k, v in desired.items() if nodebalancer.get(k) != v}
        if drifted:
            nodebalancer = scope.client.update_nodebalancer(nodebalancer_id, drifted)
            self.log_info(resource, f"Updated NodeBalancer {nodebalancer_id}", reason="Updated", fields=sorted(drifted))
            scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_UPDATED, f"Updated NodeBalancer {nodebalancer_id}")
        self._record(scope, nodebalancer)
        return None

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        nodebalancer_id = self.external_id(resource)
        if nodebalancer_id is None:
            self.log_info(resource, "NodeBalancer ID is missing, nothing to do")
            return None
        try:
            scope.client.delete_nodebalancer(nodebalancer_id)
        except LinodeAPIError as e:
            if not is_not_found(e):
                raise
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"NodeBalancer {nodebalancer_id} has been cleaned up")
        self.clear_external_id(resource)
        return None
