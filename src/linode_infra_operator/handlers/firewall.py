"""Handler for LinodeFirewall resources."""

from __future__ import annotations

from typing import Any

from ..acl import CompiledRuleSet, FirewallRule, NetworkAddresses, compile_acl
from ..constants import EVENT_REASON_DELETED, EVENT_REASON_UPDATED, KIND_ADDRESS_SET, KIND_FIREWALL
from ..scope import Scope
from ..tracing import trace_span
from ..utils.errors import (
    LinodeAPIError,
    NotFoundExternalError,
    ObjectNotFoundError,
    ValidationError,
    is_not_found,
)
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.filter import Filter
from .base import BaseHandler, Requeue

FIREWALL_ENABLED = "enabled"
FIREWALL_DISABLED = "disabled"

_RULE_FIELDS = ("action", "label", "description", "protocol", "ports", "addresses")


def _comparable_rules(rules: dict[str, Any]) -> dict[str, Any]:
    """Reduce a provider rule set to the fields this operator manages."""

    def rule_view(rule: dict[str, Any]) -> dict[str, Any]:
        view = {k: rule.get(k) for k in _RULE_FIELDS if rule.get(k)}
        addresses = view.get("addresses") or {}
        view["addresses"] = {family: sorted(ips) for family, ips in addresses.items() if ips}
        return view

    return {
        "inbound": [rule_view(r) for r in rules.get("inbound") or []],
        "inbound_policy": rules.get("inbound_policy"),
        "outbound": [rule_view(r) for r in rules.get("outbound") or []],
        "outbound_policy": rules.get("outbound_policy"),
    }


class FirewallHandler(BaseHandler):
    """Handler for LinodeFirewall resources."""

    kind = KIND_FIREWALL
    external_id_field = ("spec", "firewallID")

    def _resolve_address_sets(self, scope: Scope, refs: list[dict[str, Any]]) -> NetworkAddresses:
        """Collect the addresses of every referenced AddressSet."""
        merged = NetworkAddresses()
        for ref in refs:
            namespace = ref.get("namespace") or scope.resource.namespace
            try:
                address_set = scope.store.get(KIND_ADDRESS_SET, namespace, ref["name"])
            except ObjectNotFoundError as e:
                raise ValidationError(f"referenced AddressSet {namespace}/{ref['name']} not found") from e
            merged = merged.merged(NetworkAddresses.from_spec(address_set.spec))
        return merged

    def _rules(self, scope: Scope, direction: str) -> list[FirewallRule]:
        rules = []
        for data in scope.resource.spec.get(direction) or []:
            rule = FirewallRule.from_spec(data)
            refs = data.get("addressSetRefs") or []
            if refs:
                extra = self._resolve_address_sets(scope, refs)
                rule = FirewallRule(
                    action=rule.action,
                    label=rule.label,
                    protocol=rule.protocol,
                    ports=rule.ports,
                    description=rule.description,
                    addresses=rule.addresses.merged(extra),
                )
            rules.append(rule)
        return rules

    def compile(self, scope: Scope) -> CompiledRuleSet:
        """Compile the declared inbound and outbound rules of the firewall.

        Raises:
            ValidationError: If a rule, address, policy or AddressSet reference is invalid
            CapacityError: If the compiled set exceeds the provider's rule limit
        """
        spec = scope.resource.spec
        return compile_acl(
            self._rules(scope, "inboundRules"),
            self._rules(scope, "outboundRules"),
            spec.get("inboundPolicy", ""),
            spec.get("outboundPolicy", ""),
        )

    def _desired_status(self, scope: Scope) -> str:
        return FIREWALL_ENABLED if scope.resource.spec.get("enabled") else FIREWALL_DISABLED

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        with trace_span("create_firewall", kind=self.kind, attributes={"firewall.label": resource.name}):
            rules = self.compile(scope)
            matches = scope.client.list_firewalls(Filter(label=resource.name))
            firewall = self.adopt_or_create(
                scope,
                matches,
                lambda: scope.client.create_firewall({
                    "label": resource.name,
                    "rules": rules.to_api(),
                    "tags": [resource.uid],
                }),
                "firewall",
            )
            if matches:
                self.ensure_owned(resource, firewall, "firewall")
                self._sync_rules(scope, firewall["id"], rules)
            self.set_external_id(resource, firewall["id"])
            self._sync_status(scope, firewall)
        return None

    def update(self, scope: Scope) -> Requeue:
        resource = scope.resource
        firewall_id = self.external_id(resource)
        rules = self.compile(scope)
        try:
            firewall = scope.client.get_firewall(firewall_id)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"firewall {firewall_id} no longer exists") from e
            raise
        self._sync_rules(scope, firewall_id, rules)
        self._sync_status(scope, firewall)
        return None

    def _sync_rules(self, scope: Scope, firewall_id: int, rules: CompiledRuleSet) -> None:
        desired = rules.to_api()
        current = scope.client.get_firewall_rules(firewall_id)
        if _comparable_rules(current) == _comparable_rules(desired):
            return
        scope.client.update_firewall_rules(firewall_id, desired)
        self.log_info(scope.resource, f"Replaced rules of firewall {firewall_id}", reason="RulesUpdated")
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_UPDATED, f"Updated rules of firewall {firewall_id}")

    def _sync_status(self, scope: Scope, firewall: dict[str, Any]) -> None:
        desired = self._desired_status(scope)
        tags = firewall.get("tags") or []
        if firewall.get("status") == desired and scope.resource.uid in tags:
            return
        scope.client.update_firewall(
            firewall["id"],
            {"status": desired, "tags": sorted({*tags, scope.resource.uid})},
        )

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        firewall_id = self.external_id(resource)
        if firewall_id is None:
            self.log_info(resource, "Firewall ID is missing, nothing to do")
            return None
        try:
            scope.client.delete_firewall(firewall_id)
        except LinodeAPIError as e:
            if not is_not_found(e):
                raise
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"Firewall {firewall_id} has been cleaned up")
        self.clear_external_id(resource)
        return None
