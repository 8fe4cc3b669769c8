"""VLAN private address allocation per cluster."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import TYPE_CHECKING

from ..constants import KIND_INSTANCE, LABEL_CLUSTER_NAME, VLAN_IP_RANGE
from .rate_limit import ReadWriteLock

if TYPE_CHECKING:
    from ..store import ObjectStore

logger = logging.getLogger(__name__)

ADDRESS_TYPE_INTERNAL = "InternalIP"


class ClusterIPs:
    """Addresses handed out to one cluster's instances."""

    def __init__(self, ips: list[str]):
        self._ips = set(ips)
        self._lock = threading.Lock()

    def next_ip(self) -> str:
        network = ipaddress.ip_network(VLAN_IP_RANGE)
        with self._lock:
            candidate = network.network_address + 1
            while str(candidate) in self._ips:
                candidate += 1
            if candidate not in network:
                raise RuntimeError(f"VLAN range {VLAN_IP_RANGE} is exhausted")
            self._ips.add(str(candidate))
            return str(candidate)

    def __contains__(self, ip: str) -> bool:
        with self._lock:
            return ip in self._ips


class VlanIPStore:
    """Per-cluster address sets keyed by ``namespace.cluster``.

    Each cluster's set is seeded from the internal addresses already
    recorded on its instances the first time it is needed, and lives until
    ``release_cluster`` drops it.
    """

    def __init__(self) -> None:
        self._clusters: dict[str, ClusterIPs] = {}
        self._lock = ReadWriteLock()

    @staticmethod
    def _key(cluster: str, namespace: str) -> str:
        return f"{namespace}.{cluster}"

    def _existing_ips(self, cluster: str, namespace: str, store: ObjectStore) -> list[str]:
        network = ipaddress.ip_network(VLAN_IP_RANGE)
        instances = store.list(KIND_INSTANCE, namespace, label_selector=f"{LABEL_CLUSTER_NAME}={cluster}")
        existing = []
        for instance in instances:
            candidates = [
                addr.get("address", "")
                for addr in instance.status.get("addresses") or []
                if addr.get("type") == ADDRESS_TYPE_INTERNAL
            ]
            # Reserved before the instance existed
            if instance.status.get("vlanIP"):
                candidates.append(instance.status["vlanIP"])
            for address in candidates:
                try:
                    if ipaddress.ip_address(address) in network:
                        existing.append(address)
                except ValueError:
                    logger.warning(f"Ignoring malformed address {address!r} on {instance.name}")
        return existing

    def cluster_ips(self, cluster: str, namespace: str, store: ObjectStore) -> ClusterIPs:
        key = self._key(cluster, namespace)
        with self._lock.read():
            ips = self._clusters.get(key)
        if ips is not None:
            return ips
        with self._lock.write():
            ips = self._clusters.get(key)
            if ips is None:
                ips = ClusterIPs(self._existing_ips(cluster, namespace, store))
                self._clusters[key] = ips
            return ips

    def next_ip(self, cluster: str, namespace: str, store: ObjectStore) -> str:
        """Allocate the lowest free address in the VLAN range for the cluster."""
        return self.cluster_ips(cluster, namespace, store).next_ip()

    def release_cluster(self, cluster: str, namespace: str) -> None:
        with self._lock.write():
            self._clusters.pop(self._key(cluster, namespace), None)

    def __contains__(self, key: str) -> bool:
        with self._lock.read():
            return key in self._clusters
