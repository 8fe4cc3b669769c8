"""Object store access for managed resources.

Reads and writes custom objects through the Kubernetes API. Writes carry
the ``resourceVersion`` that was read, so a concurrent change surfaces as a
``CommitConflictError`` instead of being overwritten.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from . import metrics
from .constants import API_GROUP, API_VERSION, PLURALS
from .models import ManagedResource
from .utils.errors import CommitConflictError, ObjectNotFoundError
from .utils.rate_limit import handle_rate_limit_error, rate_limit_k8s

logger = logging.getLogger(__name__)


class ObjectStore:
    """Get, write and list custom objects."""

    def __init__(self, api: client.CustomObjectsApi | None = None):
        self.api = api or client.CustomObjectsApi()

    def _call(self, operation: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        start_time = time.time()
        attempt = 0
        try:
            while True:
                try:
                    result = rate_limit_k8s(fn)(**kwargs)
                    metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
                    return result
                except ApiException as e:
                    if handle_rate_limit_error(e, attempt):
                        attempt += 1
                        continue
                    metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
                    raise
        finally:
            metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(
                time.time() - start_time
            )

    def get(self, kind: str, namespace: str, name: str) -> ManagedResource:
        """Fetch an object.

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        try:
            body = self._call(
                "get",
                self.api.get_namespaced_custom_object,
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURALS[kind],
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                raise ObjectNotFoundError(f"{kind} {namespace}/{name} not found") from e
            raise
        return ManagedResource(body)

    def list(self, kind: str, namespace: str, label_selector: str | None = None) -> list[ManagedResource]:
        result = self._call(
            "list",
            self.api.list_namespaced_custom_object,
            group=API_GROUP,
            version=API_VERSION,
            namespace=namespace,
            plural=PLURALS[kind],
            label_selector=label_selector or "",
        )
        return [ManagedResource(item) for item in result.get("items", [])]

    def write(self, resource: ManagedResource, previous: dict[str, Any]) -> None:
        """Persist the differences between ``resource`` and ``previous``.

        Metadata and spec go to the main resource, status to the status
        subresource. The new ``resourceVersion`` is copied back so that a
        status write following a main write does not conflict with itself.

        Args:
            resource: The object as mutated during the cycle
            previous: The object as it was last read or written

        Raises:
            CommitConflictError: If the object changed since it was read
        """
        body = resource.body
        main_changed = (
            body.get("metadata") != previous.get("metadata")
            or body.get("spec") != previous.get("spec")
        )
        status_changed = body.get("status") != previous.get("status")

        try:
            if main_changed:
                updated = self._call(
                    "replace",
                    self.api.replace_namespaced_custom_object,
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=resource.namespace,
                    plural=resource.plural,
                    name=resource.name,
                    body=body,
                )
                resource.metadata["resourceVersion"] = updated["metadata"]["resourceVersion"]
            if status_changed:
                updated = self._call(
                    "replace_status",
                    self.api.replace_namespaced_custom_object_status,
                    group=API_GROUP,
                    version=API_VERSION,
                    namespace=resource.namespace,
                    plural=resource.plural,
                    name=resource.name,
                    body=body,
                )
                resource.metadata["resourceVersion"] = updated["metadata"]["resourceVersion"]
        except ApiException as e:
            if e.status == 409:
                raise CommitConflictError(f"{resource.kind} {resource.namespace}/{resource.name} was modified: {e.reason}") from e
            if e.status == 404 and resource.deletion_requested and not resource.finalizers:
                # Removing the last finalizer let the object go away
                logger.debug(f"{resource!r} removed after its finalizers were cleared")
                return
            raise
