"""Per-cycle unit of work.

A ``Scope`` owns the in-memory copy of one managed object for the duration
of a reconcile cycle. Handlers mutate that copy freely; the scope writes the
accumulated changes back to the object store when the cycle ends, however it
ends. Handlers never write to the store themselves.

    with Scope(resource, store, client_config, make_client) as scope:
        handler.create(scope)
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import TYPE_CHECKING, Callable

from . import metrics
from .models import ManagedResource
from .utils.errors import join_errors
from .utils.rate_limit import QuotaState, credential_fingerprint

if TYPE_CHECKING:
    from kubernetes import client as k8s_client

    from .services.linode.client import ClientConfig, LinodeClient
    from .store import ObjectStore
    from .utils.events import EventRecorder
    from .utils.vlan_ips import VlanIPStore

logger = logging.getLogger(__name__)


class Scope:
    """Unit of work bundling a resource, its provider client and a deferred commit."""

    def __init__(
        self,
        resource: ManagedResource,
        store: ObjectStore,
        client_config: ClientConfig,
        make_client: Callable[[ClientConfig], LinodeClient],
        quota_for: Callable[[str], QuotaState] | None = None,
        secrets_api: k8s_client.CoreV1Api | None = None,
        recorder: EventRecorder | None = None,
        vlan_ips: VlanIPStore | None = None,
        stale_timeout: float = 1200,
    ) -> None:
        self.resource = resource
        self.store = store
        self.client_config = client_config
        self._make_client = make_client
        self._quota_for = quota_for
        self.client = make_client(client_config)
        self.secrets_api = secrets_api
        self.recorder = recorder
        self.vlan_ips = vlan_ips
        self.stale_timeout = stale_timeout
        self.writes = 0
        self._snapshot = resource.snapshot()

    def __enter__(self) -> Scope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        try:
            self.commit()
        except Exception as commit_error:
            if exc is None:
                raise
            combined = join_errors(exc, commit_error)
            raise combined from None
        return False

    @property
    def dirty(self) -> bool:
        return self.resource.body != self._snapshot

    def commit(self) -> bool:
        """Write the object back if it changed since it was opened or last committed.

        Returns:
            True if a write was issued
        """
        if not self.dirty:
            return False
        try:
            self.store.write(self.resource, self._snapshot)
        except Exception:
            metrics.commit_total.labels(kind=self.resource.kind, result="error").inc()
            raise
        metrics.commit_total.labels(kind=self.resource.kind, result="success").inc()
        self.writes += 1
        self._snapshot = self.resource.snapshot()
        return True

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer and persist it immediately.

        Committing right away means a crash later in the cycle still leaves
        the object guarded, so the next cycle runs the delete path.
        """
        if self.resource.add_finalizer(finalizer):
            self.commit()
            return True
        return False

    def remove_finalizer(self, finalizer: str) -> bool:
        return self.resource.remove_finalizer(finalizer)

    def set_credential_token(self, token: str) -> None:
        """Rebuild the provider client with a per-resource token."""
        self.client_config = self.client_config.with_token(token)
        self.client = self._make_client(self.client_config)

    @property
    def credential_fingerprint(self) -> str:
        return credential_fingerprint(self.client_config.token)

    def quota(self) -> QuotaState | None:
        """Quota state for the credential this cycle uses."""
        if self._quota_for is None:
            return None
        return self._quota_for(self.credential_fingerprint)

    def event(self, type_: str, reason: str, message: str) -> None:
        if self.recorder is not None:
            self.recorder.event(self.resource.body, type_, reason, message)
