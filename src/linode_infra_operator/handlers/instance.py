"""Handler for LinodeInstance resources."""

from __future__ import annotations

import ipaddress
import uuid
from typing import Any

from .. import metrics
from ..constants import (
    COND_PREFLIGHT_RATE_LIMITED,
    EVENT_REASON_DELETED,
    KIND_FIREWALL,
    KIND_INSTANCE,
    KIND_PLACEMENT_GROUP,
    KIND_VPC,
    LABEL_CLUSTER_NAME,
    WAIT_FOR_RUNNING_DELAY,
)
from ..models import ManagedResource
from ..scope import Scope
from ..tracing import trace_span
from ..utils.conditions import mark_false, mark_true
from ..utils.errors import (
    LinodeAPIError,
    NotFoundExternalError,
    ObjectNotFoundError,
    RateLimitedError,
    TransientExternalError,
    ValidationError,
    is_not_found,
)
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.filter import Filter
from ..utils.vlan_ips import ADDRESS_TYPE_INTERNAL
from .base import BaseHandler, Requeue

ADDRESS_TYPE_EXTERNAL = "ExternalIP"
DEFAULT_IMAGE = "linode/ubuntu22.04"
INSTANCE_STATUS_RUNNING = "running"
INSTANCE_STATUS_OFFLINE = "offline"
# Provider VLAN interfaces take a prefix; the cluster range is carved from 10.0.0.0/8
VLAN_PREFIX_LENGTH = 11


class InstanceHandler(BaseHandler):
    """Handler for LinodeInstance resources.

    Instance creation is the expensive call the provider rate-limits per
    token, so the create request goes through the credential's quota gate.
    """

    kind = KIND_INSTANCE
    external_id_field = ("spec", "instanceID")

    def _get_ref(self, scope: Scope, kind: str, field: str) -> ManagedResource | None:
        ref = scope.resource.spec.get(field)
        if not ref:
            return None
        namespace = ref.get("namespace") or scope.resource.namespace
        try:
            return scope.store.get(kind, namespace, ref["name"])
        except ObjectNotFoundError as e:
            raise ValidationError(f"referenced {kind} {namespace}/{ref['name']} not found") from e

    def _ref_id(self, scope: Scope, kind: str, field: str, id_key: str) -> int | None:
        """Resolve a reference to the provider ID its object records.

        Raises:
            ValidationError: If the referenced object does not exist
            TransientExternalError: If the referenced object has no provider ID yet
        """
        referenced = self._get_ref(scope, kind, field)
        if referenced is None:
            return None
        external_id = referenced.spec.get(id_key)
        if external_id is None:
            raise TransientExternalError(f"{kind} {referenced.namespace}/{referenced.name} is not ready yet")
        return external_id

    def _vpc_interface(self, scope: Scope) -> dict[str, Any] | None:
        vpc = self._get_ref(scope, KIND_VPC, "vpcRef")
        if vpc is None:
            return None
        if vpc.spec.get("vpcID") is None:
            raise TransientExternalError(f"{KIND_VPC} {vpc.namespace}/{vpc.name} is not ready yet")

        subnets = vpc.spec.get("subnets") or []
        wanted = scope.resource.spec.get("subnetName")
        if wanted:
            subnets = [s for s in subnets if s.get("label") == wanted]
        subnet_id = subnets[0].get("subnetID") if subnets else None
        if subnet_id is None:
            raise TransientExternalError(
                f"no subnet ID recorded for {wanted or 'the first subnet'} of {KIND_VPC} {vpc.namespace}/{vpc.name}"
            )
        return {
            "purpose": "vpc",
            "primary": True,
            "subnet_id": subnet_id,
            "ipv4": {"nat_1_1": "any"},
        }

    def _cluster_name(self, scope: Scope) -> str:
        cluster = scope.resource.labels.get(LABEL_CLUSTER_NAME)
        if not cluster:
            raise ValidationError(f"spec.useVlan requires the {LABEL_CLUSTER_NAME} label")
        return cluster

    def _vlan_interface(self, scope: Scope) -> dict[str, Any] | None:
        resource = scope.resource
        if not resource.spec.get("useVlan"):
            return None
        cluster = self._cluster_name(scope)
        ip = resource.status.get("vlanIP")
        if ip is None:
            if scope.vlan_ips is None:
                raise ValidationError("VLAN addressing is not available in this operator")
            ip = scope.vlan_ips.next_ip(cluster, resource.namespace, scope.store)
            # Recorded before the create call so a retry reuses the same address
            resource.status["vlanIP"] = ip
            self.log_info(resource, f"Allocated VLAN address {ip} in cluster {cluster}", reason="VlanIPAllocated")
        return {"purpose": "vlan", "label": cluster, "ipam_address": f"{ip}/{VLAN_PREFIX_LENGTH}"}

    def create_options(self, scope: Scope) -> dict[str, Any]:
        """Build the instance create payload, resolving references.

        Returns:
            Payload for the provider's instance create call
        """
        resource = scope.resource
        spec = resource.spec
        opts: dict[str, Any] = {
            "label": resource.name,
            "region": spec.get("region", ""),
            "type": spec.get("type", ""),
            "image": spec.get("image") or DEFAULT_IMAGE,
            "root_pass": uuid.uuid4().hex,
            "tags": list(spec.get("tags") or []),
            "private_ip": bool(spec.get("privateIP", False)),
            "booted": True,
        }
        if spec.get("authorizedKeys"):
            opts["authorized_keys"] = list(spec["authorizedKeys"])

        firewall_id = self._ref_id(scope, KIND_FIREWALL, "firewallRef", "firewallID")
        if firewall_id is not None:
            opts["firewall_id"] = firewall_id
        group_id = self._ref_id(scope, KIND_PLACEMENT_GROUP, "placementGroupRef", "pgID")
        if group_id is not None:
            opts["placement_group"] = {"id": group_id}

        interfaces = []
        vpc_interface = self._vpc_interface(scope)
        if vpc_interface is not None:
            interfaces.append(vpc_interface)
        vlan_interface = self._vlan_interface(scope)
        if vlan_interface is not None:
            if vpc_interface is None:
                interfaces.append({"purpose": "public"})
            interfaces.append(vlan_interface)
        if interfaces:
            opts["interfaces"] = interfaces
        return opts

    def _gated_create(self, scope: Scope, opts: dict[str, Any]) -> dict[str, Any]:
        """Create the instance unless the credential's POST quota is spent."""
        quota = scope.quota()
        if quota is None:
            return scope.client.create_instance(opts)

        conditions = scope.resource.conditions
        with quota.creation_lock:
            wait = quota.wait_duration()
            if wait > 0:
                metrics.rate_limit_hits_total.labels(api_type="linode").inc()
                message = f"instance creation quota exhausted, retrying in {wait:.0f}s"
                mark_false(conditions, COND_PREFLIGHT_RATE_LIMITED, "QuotaExhausted", message)
                raise RateLimitedError(message, retry_after=wait)
            created = scope.client.create_instance(opts)
        mark_true(conditions, COND_PREFLIGHT_RATE_LIMITED, "QuotaAvailable")
        return created

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        with trace_span("create_instance", kind=self.kind, attributes={"instance.label": resource.name}):
            # An adopted instance already exists; its references are not resolved again
            matches = scope.client.list_instances(Filter(label=resource.name))
            instance = self.adopt_or_create(
                scope, matches, lambda: self._gated_create(scope, self.create_options(scope)), "instance"
            )
            self.set_external_id(resource, instance["id"])
            return self._observe(scope, instance)

    def update(self, scope: Scope) -> Requeue:
        instance_id = self.external_id(scope.resource)
        try:
            instance = scope.client.get_instance(instance_id)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"instance {instance_id} no longer exists") from e
            raise
        if instance.get("status") == INSTANCE_STATUS_OFFLINE:
            self.log_info(scope.resource, f"Booting offline instance {instance_id}", reason="Booting")
            scope.client.boot_instance(instance_id)
        return self._observe(scope, instance)

    def _observe(self, scope: Scope, instance: dict[str, Any]) -> Requeue:
        status = scope.resource.status
        status["instanceState"] = instance.get("status")
        if instance.get("status") != INSTANCE_STATUS_RUNNING:
            self.log_info(
                scope.resource,
                f"Instance {instance['id']} is {instance.get('status')}, waiting for it to run",
                reason="WaitingForRunning",
            )
            return WAIT_FOR_RUNNING_DELAY
        status["addresses"] = self.addresses(scope, instance)
        return None

    def addresses(self, scope: Scope, instance: dict[str, Any]) -> list[dict[str, str]]:
        """Classify the addresses of a running instance as external or internal."""
        result = []
        for address in instance.get("ipv4") or []:
            kind = ADDRESS_TYPE_INTERNAL if ipaddress.ip_address(address).is_private else ADDRESS_TYPE_EXTERNAL
            result.append({"type": kind, "address": address})
        if instance.get("ipv6"):
            result.append({"type": ADDRESS_TYPE_EXTERNAL, "address": instance["ipv6"].split("/")[0]})
        vlan_ip = scope.resource.status.get("vlanIP")
        if vlan_ip:
            result.append({"type": ADDRESS_TYPE_INTERNAL, "address": vlan_ip})
        return result

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        instance_id = self.external_id(resource)
        if instance_id is not None:
            try:
                scope.client.delete_instance(instance_id)
            except LinodeAPIError as e:
                if not is_not_found(e):
                    raise
            scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"Instance {instance_id} has been cleaned up")
            self.clear_external_id(resource)

        if resource.spec.get("useVlan") and scope.vlan_ips is not None:
            self._release_vlan(scope)
        return None

    def _release_vlan(self, scope: Scope) -> None:
        """Forget the cluster's VLAN addresses once its last instance is gone."""
        resource = scope.resource
        cluster = resource.labels.get(LABEL_CLUSTER_NAME)
        if not cluster:
            return
        others = [
            i
            for i in scope.store.list(KIND_INSTANCE, resource.namespace, label_selector=f"{LABEL_CLUSTER_NAME}={cluster}")
            if i.uid != resource.uid
        ]
        if not others:
            scope.vlan_ips.release_cluster(cluster, resource.namespace)
            self.log_info(resource, f"Released VLAN addresses of cluster {cluster}", reason="VlanIPsReleased")
