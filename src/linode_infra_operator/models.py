"""Wrappers around managed objects and provider payloads."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from .constants import API_GROUP_VERSION, PLURALS


class ManagedResource:
    """A declarative object as read from the object store.

    The raw body is kept as-is so that writing it back preserves fields this
    operator does not know about. Accessors create ``spec`` and ``status``
    on first use.
    """

    def __init__(self, body: dict[str, Any]):
        self.body = body
        self.body.setdefault("metadata", {})

    @classmethod
    def new(cls, kind: str, name: str, namespace: str, spec: dict[str, Any] | None = None) -> ManagedResource:
        return cls({
            "apiVersion": API_GROUP_VERSION,
            "kind": kind,
            "metadata": {"name": name, "namespace": namespace},
            "spec": spec or {},
        })

    @property
    def kind(self) -> str:
        return self.body.get("kind", "")

    @property
    def plural(self) -> str:
        return PLURALS[self.kind]

    @property
    def metadata(self) -> dict[str, Any]:
        return self.body["metadata"]

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "default")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def generation(self) -> int:
        return self.metadata.get("generation", 0)

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def resource_version(self) -> str | None:
        return self.metadata.get("resourceVersion")

    @property
    def spec(self) -> dict[str, Any]:
        return self.body.setdefault("spec", {})

    @property
    def status(self) -> dict[str, Any]:
        if self.body.get("status") is None:
            self.body["status"] = {}
        return self.body["status"]

    @property
    def conditions(self) -> list[dict[str, Any]]:
        return self.status.setdefault("conditions", [])

    @property
    def finalizers(self) -> list[str]:
        return self.metadata.get("finalizers") or []

    @property
    def deletion_requested(self) -> bool:
        return bool(self.metadata.get("deletionTimestamp"))

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if it was not already present."""
        if self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = [*self.finalizers, finalizer]
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if it was present."""
        if not self.has_finalizer(finalizer):
            return False
        self.metadata["finalizers"] = [f for f in self.finalizers if f != finalizer]
        return True

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": self.body.get("apiVersion", API_GROUP_VERSION),
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.body)

    def __repr__(self) -> str:
        return f"<{self.kind} {self.namespace}/{self.name}>"


@dataclass(frozen=True)
class AccessKey:
    """An object storage access key as returned by the provider."""

    id: int
    access_key: str
    secret_key: str
    label: str = ""
    generation: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any], generation: int | None = None) -> AccessKey:
        return cls(
            id=data["id"],
            access_key=data.get("access_key", ""),
            secret_key=data.get("secret_key", ""),
            label=data.get("label", ""),
            generation=generation,
        )
