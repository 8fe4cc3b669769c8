"""Shared fakes and fixtures for unit tests."""

from __future__ import annotations

import copy
from typing import Any
from unittest.mock import MagicMock

import pytest

from linode_infra_operator.models import ManagedResource
from linode_infra_operator.scope import Scope
from linode_infra_operator.services.linode.client import ClientConfig, LinodeClient
from linode_infra_operator.utils.errors import CommitConflictError, LinodeAPIError, ObjectNotFoundError
from linode_infra_operator.utils.rate_limit import QuotaStore
from linode_infra_operator.utils.vlan_ips import VlanIPStore


class FakeStore:
    """In-memory object store with the same contract as ObjectStore."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.writes: list[dict[str, Any]] = []
        self.conflicts = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def add(self, resource: ManagedResource) -> ManagedResource:
        resource.metadata.setdefault("resourceVersion", self._next_version())
        self.objects[(resource.kind, resource.namespace, resource.name)] = copy.deepcopy(resource.body)
        return resource

    def get(self, kind: str, namespace: str, name: str) -> ManagedResource:
        body = self.objects.get((kind, namespace, name))
        if body is None:
            raise ObjectNotFoundError(f"{kind} {namespace}/{name} not found")
        return ManagedResource(copy.deepcopy(body))

    def list(self, kind: str, namespace: str, label_selector: str | None = None) -> list[ManagedResource]:
        wanted = dict(part.split("=", 1) for part in (label_selector or "").split(",") if part)
        result = []
        for (obj_kind, obj_ns, _), body in self.objects.items():
            if obj_kind != kind or obj_ns != namespace:
                continue
            labels = body["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                result.append(ManagedResource(copy.deepcopy(body)))
        return result

    def write(self, resource: ManagedResource, previous: dict[str, Any]) -> None:
        if self.conflicts:
            self.conflicts -= 1
            raise CommitConflictError(f"{resource!r} was modified")
        resource.metadata["resourceVersion"] = self._next_version()
        self.writes.append(copy.deepcopy(resource.body))
        self.objects[(resource.kind, resource.namespace, resource.name)] = copy.deepcopy(resource.body)


def make_resource(
    kind: str,
    name: str = "test",
    namespace: str = "default",
    spec: dict[str, Any] | None = None,
    status: dict[str, Any] | None = None,
    uid: str = "uid-1234",
    labels: dict[str, str] | None = None,
) -> ManagedResource:
    resource = ManagedResource.new(kind, name, namespace, spec or {})
    resource.metadata["uid"] = uid
    if labels:
        resource.metadata["labels"] = dict(labels)
    if status is not None:
        resource.body["status"] = status
    return resource


def api_error(status: int, reason: str = "error") -> LinodeAPIError:
    return LinodeAPIError(status, [reason], "GET", "/test")


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def linode_client() -> MagicMock:
    return MagicMock(spec=LinodeClient)


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(token="test-token", retry_count=0)


@pytest.fixture
def recorder() -> MagicMock:
    return MagicMock()


@pytest.fixture
def make_scope(store, linode_client, client_config, recorder):
    """Build a Scope around a resource with the shared fakes."""

    def _make_scope(resource: ManagedResource, **kwargs: Any) -> Scope:
        kwargs.setdefault("quota_for", QuotaStore().get)
        kwargs.setdefault("vlan_ips", VlanIPStore())
        kwargs.setdefault("secrets_api", MagicMock())
        return Scope(
            resource,
            store,
            client_config,
            lambda config: linode_client,
            recorder=recorder,
            **kwargs,
        )

    return _make_scope
