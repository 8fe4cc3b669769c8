"""Firewall ACL compilation.

Turns the declared inbound and outbound rules of a LinodeFirewall into the
rule set the Linode API accepts. The provider caps how many addresses one
rule may carry and how many rules one firewall may hold, so large address
lists are split into several rules and anything that would not fit is
rejected outright rather than truncated.

Compilation is pure: the same input always yields the same output, which is
what lets the update path compare the compiled set against what the
firewall currently has.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Iterable

from .constants import (
    CONTROLLER_NAME,
    MAX_FIREWALL_RULE_LABEL_LENGTH,
    MAX_IPS_PER_FIREWALL_RULE,
    MAX_RULES_PER_FIREWALL,
)
from .utils.errors import CapacityError, ValidationError

ACTION_ACCEPT = "ACCEPT"
ACTION_DROP = "DROP"
VALID_ACTIONS = (ACTION_ACCEPT, ACTION_DROP)
VALID_PROTOCOLS = ("TCP", "UDP", "ICMP", "IPENCAP")


@dataclass(frozen=True)
class NetworkAddresses:
    ipv4: tuple[str, ...] = ()
    ipv6: tuple[str, ...] = ()

    @classmethod
    def from_spec(cls, data: dict[str, Any] | None) -> NetworkAddresses:
        data = data or {}
        return cls(ipv4=tuple(data.get("ipv4") or ()), ipv6=tuple(data.get("ipv6") or ()))

    def merged(self, other: NetworkAddresses) -> NetworkAddresses:
        return NetworkAddresses(ipv4=self.ipv4 + other.ipv4, ipv6=self.ipv6 + other.ipv6)


@dataclass(frozen=True)
class FirewallRule:
    """A declared firewall rule."""

    action: str
    label: str
    protocol: str = "TCP"
    ports: str = ""
    description: str = ""
    addresses: NetworkAddresses = field(default_factory=NetworkAddresses)

    @classmethod
    def from_spec(cls, data: dict[str, Any]) -> FirewallRule:
        return cls(
            action=data.get("action", ""),
            label=data.get("label", ""),
            protocol=data.get("protocol") or "TCP",
            ports=data.get("ports") or "",
            description=data.get("description") or "",
            addresses=NetworkAddresses.from_spec(data.get("addresses")),
        )


@dataclass(frozen=True)
class ProviderRule:
    """One entry of the provider rule set."""

    action: str
    label: str
    description: str
    protocol: str
    ports: str
    ipv4: tuple[str, ...] = ()
    ipv6: tuple[str, ...] = ()

    def to_api(self) -> dict[str, Any]:
        addresses: dict[str, list[str]] = {}
        if self.ipv4:
            addresses["ipv4"] = list(self.ipv4)
        if self.ipv6:
            addresses["ipv6"] = list(self.ipv6)
        rule: dict[str, Any] = {
            "action": self.action,
            "label": self.label,
            "description": self.description,
            "protocol": self.protocol,
            "addresses": addresses,
        }
        if self.ports:
            rule["ports"] = self.ports
        return rule


@dataclass(frozen=True)
class CompiledRuleSet:
    inbound: tuple[ProviderRule, ...]
    outbound: tuple[ProviderRule, ...]
    inbound_policy: str
    outbound_policy: str

    @property
    def rule_count(self) -> int:
        return len(self.inbound) + len(self.outbound)

    def to_api(self) -> dict[str, Any]:
        return {
            "inbound": [rule.to_api() for rule in self.inbound],
            "inbound_policy": self.inbound_policy,
            "outbound": [rule.to_api() for rule in self.outbound],
            "outbound_policy": self.outbound_policy,
        }


def to_cidr(address: str, version: int) -> str:
    """Normalize an address or network to CIDR notation.

    Args:
        address: An IP address or network
        version: Expected IP version (4 or 6)

    Returns:
        The normalized network, e.g. ``10.0.0.1`` becomes ``10.0.0.1/32``

    Raises:
        ValidationError: If the address is malformed or of the wrong family
    """
    try:
        network = ipaddress.ip_network(address.strip(), strict=False)
    except ValueError as e:
        raise ValidationError(f"invalid address {address!r}: {e}") from e
    if network.version != version:
        raise ValidationError(f"address {address!r} is not an IPv{version} address")
    return network.with_prefixlen


def normalize_addresses(addresses: Iterable[str], version: int) -> list[str]:
    """Normalize to CIDR and drop duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for address in addresses:
        seen.setdefault(to_cidr(address, version), None)
    return list(seen)


def chunk(items: list[str], size: int = MAX_IPS_PER_FIREWALL_RULE) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def rule_label(prefix: str, label: str, index: int) -> str:
    """Build a chunk label that fits the provider's label length limit.

    The ``-{index}`` suffix is always kept; the ``{prefix}-{label}`` part is
    truncated to make room for it.
    """
    suffix = f"-{index}"
    base = f"{prefix}-{label}" if prefix else label
    return base[:MAX_FIREWALL_RULE_LABEL_LENGTH - len(suffix)] + suffix


def effective_policy(declared: str) -> str:
    """Default policy for traffic no rule matches.

    Declaring ``ACCEPT`` means the rules are an allow list, so everything
    else is dropped. Any other declaration makes the rules a deny list.
    """
    if declared and declared not in VALID_ACTIONS:
        raise ValidationError(f"invalid policy {declared!r}, expected one of {', '.join(VALID_ACTIONS)}")
    return ACTION_DROP if declared == ACTION_ACCEPT else ACTION_ACCEPT


def _validate_rule(rule: FirewallRule) -> None:
    if rule.action not in VALID_ACTIONS:
        raise ValidationError(f"rule {rule.label!r}: invalid action {rule.action!r}")
    if not rule.label:
        raise ValidationError("firewall rules require a label")
    if rule.protocol not in VALID_PROTOCOLS:
        raise ValidationError(f"rule {rule.label!r}: invalid protocol {rule.protocol!r}")


def compile_rules(rules: Iterable[FirewallRule], label_prefix: str | None = None) -> list[ProviderRule]:
    """Compile the rules of one direction.

    Labels start with ``label_prefix``, or with each rule's own action when
    it is None.

    Each family is chunked independently, IPv4 first. The chunk index used
    in labels and descriptions runs across both families of a rule, so every
    provider rule derived from the same declared rule has a distinct label.
    """
    compiled: list[ProviderRule] = []
    for rule in rules:
        _validate_rule(rule)
        ipv4 = normalize_addresses(rule.addresses.ipv4, 4)
        ipv6 = normalize_addresses(rule.addresses.ipv6, 6)

        index = 0
        for family, addresses in (("ipv4", ipv4), ("ipv6", ipv6)):
            for part in chunk(addresses):
                compiled.append(ProviderRule(
                    action=rule.action,
                    label=rule_label(rule.action if label_prefix is None else label_prefix, rule.label, index),
                    description=rule.description or f"Rule {index}, Created by {CONTROLLER_NAME}: {rule.label}",
                    protocol=rule.protocol,
                    ports=rule.ports,
                    ipv4=tuple(part) if family == "ipv4" else (),
                    ipv6=tuple(part) if family == "ipv6" else (),
                ))
                index += 1
    return compiled


def compile_acl(
    inbound: Iterable[FirewallRule],
    outbound: Iterable[FirewallRule],
    inbound_policy: str,
    outbound_policy: str,
) -> CompiledRuleSet:
    """Compile declared rules and policies into a provider rule set.

    Args:
        inbound: Declared inbound rules, in order
        outbound: Declared outbound rules, in order
        inbound_policy: Declared inbound policy (ACCEPT or DROP)
        outbound_policy: Declared outbound policy (ACCEPT or DROP)

    Returns:
        The compiled rule set with effective default policies

    Raises:
        ValidationError: If a rule, address or policy is invalid
        CapacityError: If the compiled set exceeds the per-firewall rule limit
    """
    compiled = CompiledRuleSet(
        inbound=tuple(compile_rules(inbound)),
        outbound=tuple(compile_rules(outbound, outbound_policy)),
        inbound_policy=effective_policy(inbound_policy),
        outbound_policy=effective_policy(outbound_policy),
    )
    if compiled.rule_count > MAX_RULES_PER_FIREWALL:
        raise CapacityError(
            f"too many IPs in this ACL: {compiled.rule_count} rules would exceed "
            f"the limit of {MAX_RULES_PER_FIREWALL} rules per firewall"
        )
    return compiled
