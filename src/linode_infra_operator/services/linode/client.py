"""Linode API v4 client.

A client is built once per reconcile cycle from an immutable ``ClientConfig``
and is never mutated afterwards; a credential override produces a new
client. Every call is bounded by the cycle's deadline, and responses to
instance creation feed the credential's quota state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ... import metrics
from ...config import DEFAULT_LINODE_URL, OperatorConfig
from ...constants import CONTROLLER_NAME, HEADER_FILTER
from ...utils.context import Deadline
from ...utils.errors import LinodeAPIError, ReconcileTimeoutError
from ...utils.filter import Filter
from ...utils.rate_limit import QuotaState

logger = logging.getLogger(__name__)

PAGE_SIZE = 500
RETRYABLE_STATUSES = (500, 502, 503, 504)


@dataclass(frozen=True)
class ClientConfig:
    """Everything needed to build a client.

    ``retry_count`` of 0 disables automatic retries, ``timeout`` caps each
    call, and ``token`` is the credential, which a resource may override.
    """

    token: str
    base_url: str = DEFAULT_LINODE_URL
    root_certificate_path: str | None = None
    timeout: float = 10
    retry_count: int = 3
    user_agent: str = CONTROLLER_NAME

    @classmethod
    def from_operator_config(cls, config: OperatorConfig) -> ClientConfig:
        return cls(
            token=config.linode_token,
            base_url=config.linode_url,
            root_certificate_path=config.root_certificate_path,
            timeout=config.client_timeout,
            retry_count=config.client_retry_count,
        )

    def with_token(self, token: str) -> ClientConfig:
        return replace(self, token=token)


def build_session(config: ClientConfig) -> requests.Session:
    session = requests.Session()
    session.headers.update({
        "Authorization": f"Bearer {config.token}",
        "User-Agent": config.user_agent,
        "Accept": "application/json",
    })
    if config.root_certificate_path:
        session.verify = config.root_certificate_path

    if config.retry_count > 0:
        # POST is not idempotent, so creation is never retried here
        retry = Retry(
            total=config.retry_count,
            backoff_factor=0.5,
            status_forcelist=RETRYABLE_STATUSES,
            allowed_methods=frozenset({"GET", "PUT", "DELETE"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
    else:
        adapter = HTTPAdapter(max_retries=0)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def _error_reasons(response: requests.Response) -> list[str]:
    try:
        payload = response.json()
    except ValueError:
        return [response.text[:200]] if response.text else []
    reasons = []
    for error in payload.get("errors") or []:
        reason = error.get("reason", "")
        if error.get("field"):
            reason = f"{error['field']}: {reason}"
        reasons.append(reason)
    return reasons


class LinodeClient:
    """Typed operations over the Linode API, one method per call."""

    def __init__(
        self,
        config: ClientConfig,
        deadline: Deadline | None = None,
        quota: QuotaState | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.deadline = deadline
        self.quota = quota
        self.session = session or build_session(config)

    def _timeout(self) -> float:
        if self.deadline is None:
            return self.config.timeout
        self.deadline.check()
        return min(self.config.timeout, self.deadline.remaining())

    def request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        filter_: Filter | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Issue one API call.

        Args:
            method: HTTP method
            path: Path below the API base URL
            json: Request body
            filter_: List filter sent as the X-Filter header
            params: Query parameters

        Returns:
            Decoded JSON body, or an empty dict for empty responses

        Raises:
            LinodeAPIError: On a non-2xx response
            ReconcileTimeoutError: If the cycle deadline expired or was cancelled
        """
        url = f"{self.config.base_url}{path}"
        headers = {}
        if filter_ is not None and filter_.to_json():
            headers[HEADER_FILTER] = filter_.to_json()

        operation = f"{method.lower()}_{path.split('/')[1]}"
        start_time = time.time()
        try:
            response = self.session.request(
                method, url, json=json, params=params, headers=headers, timeout=self._timeout()
            )
        except requests.exceptions.Timeout as e:
            metrics.api_call_total.labels(api_type="linode", operation=operation, result="timeout").inc()
            if self.deadline is not None and self.deadline.expired:
                raise ReconcileTimeoutError(f"{method} {path}: reconcile deadline exceeded") from e
            raise
        finally:
            metrics.api_call_duration_seconds.labels(api_type="linode", operation=operation).observe(
                time.time() - start_time
            )

        if self.quota is not None:
            self.quota.record_response(method, url, response.headers)

        if response.status_code >= 400:
            metrics.api_call_total.labels(api_type="linode", operation=operation, result="error").inc()
            if response.status_code == 429:
                metrics.rate_limit_hits_total.labels(api_type="linode").inc()
            raise LinodeAPIError(response.status_code, _error_reasons(response), method, path)

        metrics.api_call_total.labels(api_type="linode", operation=operation, result="success").inc()
        if not response.content:
            return {}
        return response.json()

    def _list(self, path: str, filter_: Filter | None = None) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            body = self.request("GET", path, filter_=filter_, params={"page": page, "page_size": PAGE_SIZE})
            results.extend(body.get("data") or [])
            if page >= body.get("pages", 1):
                return results
            page += 1

    # VPCs
    def list_vpcs(self, filter_: Filter | None = None) -> list[dict[str, Any]]:
        return self._list("/vpcs", filter_)

    def get_vpc(self, vpc_id: int) -> dict[str, Any]:
        return self.request("GET", f"/vpcs/{vpc_id}")

    def create_vpc(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/vpcs", json=opts)

    def update_vpc(self, vpc_id: int, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("PUT", f"/vpcs/{vpc_id}", json=opts)

    def delete_vpc(self, vpc_id: int) -> None:
        self.request("DELETE", f"/vpcs/{vpc_id}")

    def create_vpc_subnet(self, vpc_id: int, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", f"/vpcs/{vpc_id}/subnets", json=opts)

    # Firewalls
    def list_firewalls(self, filter_: Filter | None = None) -> list[dict[str, Any]]:
        return self._list("/networking/firewalls", filter_)

    def get_firewall(self, firewall_id: int) -> dict[str, Any]:
        return self.request("GET", f"/networking/firewalls/{firewall_id}")

    def create_firewall(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/networking/firewalls", json=opts)

    def update_firewall(self, firewall_id: int, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("PUT", f"/networking/firewalls/{firewall_id}", json=opts)

    def get_firewall_rules(self, firewall_id: int) -> dict[str, Any]:
        return self.request("GET", f"/networking/firewalls/{firewall_id}/rules")

    def update_firewall_rules(self, firewall_id: int, rules: dict[str, Any]) -> dict[str, Any]:
        return self.request("PUT", f"/networking/firewalls/{firewall_id}/rules", json=rules)

    def delete_firewall(self, firewall_id: int) -> None:
        self.request("DELETE", f"/networking/firewalls/{firewall_id}")

    # NodeBalancers
    def list_nodebalancers(self, filter_: Filter | None = None) -> list[dict[str, Any]]:
        return self._list("/nodebalancers", filter_)

    def get_nodebalancer(self, nodebalancer_id: int) -> dict[str, Any]:
        return self.request("GET", f"/nodebalancers/{nodebalancer_id}")

    def create_nodebalancer(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/nodebalancers", json=opts)

    def update_nodebalancer(self, nodebalancer_id: int, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("PUT", f"/nodebalancers/{nodebalancer_id}", json=opts)

    def delete_nodebalancer(self, nodebalancer_id: int) -> None:
        self.request("DELETE", f"/nodebalancers/{nodebalancer_id}")

    # Object storage buckets
    def list_buckets(self, region: str) -> list[dict[str, Any]]:
        return self._list(f"/object-storage/buckets/{region}")

    def get_bucket(self, region: str, label: str) -> dict[str, Any]:
        return self.request("GET", f"/object-storage/buckets/{region}/{label}")

    def create_bucket(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/object-storage/buckets", json=opts)

    def get_bucket_access(self, region: str, label: str) -> dict[str, Any]:
        return self.request("GET", f"/object-storage/buckets/{region}/{label}/access")

    def update_bucket_access(self, region: str, label: str, opts: dict[str, Any]) -> None:
        self.request("PUT", f"/object-storage/buckets/{region}/{label}/access", json=opts)

    def delete_bucket(self, region: str, label: str) -> None:
        self.request("DELETE", f"/object-storage/buckets/{region}/{label}")

    # Object storage keys
    def get_object_storage_key(self, key_id: int) -> dict[str, Any]:
        return self.request("GET", f"/object-storage/keys/{key_id}")

    def create_object_storage_key(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/object-storage/keys", json=opts)

    def delete_object_storage_key(self, key_id: int) -> None:
        self.request("DELETE", f"/object-storage/keys/{key_id}")

    # Placement groups
    def list_placement_groups(self, filter_: Filter | None = None) -> list[dict[str, Any]]:
        return self._list("/placement/groups", filter_)

    def get_placement_group(self, group_id: int) -> dict[str, Any]:
        return self.request("GET", f"/placement/groups/{group_id}")

    def create_placement_group(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/placement/groups", json=opts)

    def unassign_placement_group(self, group_id: int, linode_ids: list[int]) -> dict[str, Any]:
        return self.request("POST", f"/placement/groups/{group_id}/unassign", json={"linodes": linode_ids})

    def delete_placement_group(self, group_id: int) -> None:
        self.request("DELETE", f"/placement/groups/{group_id}")

    # Instances
    def list_instances(self, filter_: Filter | None = None) -> list[dict[str, Any]]:
        return self._list("/linode/instances", filter_)

    def get_instance(self, instance_id: int) -> dict[str, Any]:
        return self.request("GET", f"/linode/instances/{instance_id}")

    def create_instance(self, opts: dict[str, Any]) -> dict[str, Any]:
        return self.request("POST", "/linode/instances", json=opts)

    def boot_instance(self, instance_id: int) -> None:
        self.request("POST", f"/linode/instances/{instance_id}/boot")

    def delete_instance(self, instance_id: int) -> None:
        self.request("DELETE", f"/linode/instances/{instance_id}")
