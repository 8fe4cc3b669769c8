"""Reconcile engine shared by every managed kind.

One cycle reads the object, opens a ``Scope`` around it, and drives the
kind's handler down the delete, create or update path. Whatever happens,
the scope commits the object once on the way out, so the status written by
the error policy below is never lost.

Error policy:

* transient provider failures keep a decaying ``Ready`` condition and
  requeue; once the failure is stale it is also surfaced to the user,
* an external resource that vanished on the update path has its ID cleared
  and the object is requeued straight into the create path,
* every other failure is permanent: it is written to ``failureReason`` and
  ``failureMessage``, marked on ``Ready`` and emitted as a Warning event,
  then raised to the caller,
* a write conflict on the object restarts the cycle from a fresh read.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from . import metrics
from .constants import (
    COND_READY,
    CONTROLLER_NAME,
    CREDENTIAL_TOKEN_KEY,
    DEFAULT_REQUEUE_DELAY,
    EVENT_REASON_RECONCILE_FAILED,
    EVENT_REASON_RECREATING,
    FAILURE_REASON_CREATE,
    FAILURE_REASON_DELETE,
    FAILURE_REASON_UPDATE,
    MAX_COMMIT_CONFLICT_RETRIES,
    SEVERITY_ERROR,
    SEVERITY_INFO,
)
from .config import DEFAULT_RECONCILE_TIMEOUT_SECONDS, DEFAULT_STALE_CONDITION_TIMEOUT_SECONDS
from .logging import log_resource_event
from .scope import Scope
from .services.linode.client import ClientConfig, LinodeClient
from .tracing import trace_span
from .utils.conditions import mark_false, record_decaying_condition, set_ready_condition
from .utils.context import Deadline, with_correlation_id
from .utils.errors import (
    CommitConflictError,
    NotFoundExternalError,
    ObjectNotFoundError,
    ReconcileError,
    ValidationError,
    classify_error,
    sanitize_exception,
)
from .utils.events import EVENT_TYPE_WARNING
from .utils.rate_limit import credential_fingerprint
from .utils.secrets import get_credential_data

if TYPE_CHECKING:
    from kubernetes import client as k8s_client

    from .handlers.base import BaseHandler
    from .store import ObjectStore
    from .utils.events import EventRecorder
    from .utils.rate_limit import QuotaStore
    from .utils.vlan_ips import VlanIPStore

logger = logging.getLogger(__name__)

PATH_CREATE = "create"
PATH_UPDATE = "update"
PATH_DELETE = "delete"

_PATH_FAILURE_REASONS = {
    PATH_CREATE: FAILURE_REASON_CREATE,
    PATH_UPDATE: FAILURE_REASON_UPDATE,
    PATH_DELETE: FAILURE_REASON_DELETE,
}


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a cycle; ``requeue_after`` is None when nothing is pending."""

    requeue_after: float | None = None


def _is_commit_conflict(error: BaseException) -> bool:
    if isinstance(error, CommitConflictError):
        return True
    if isinstance(error, BaseExceptionGroup):
        return any(_is_commit_conflict(e) for e in error.exceptions)
    return False


class ReconcileEngine:
    """Drives one handler's kind toward its declared state."""

    def __init__(
        self,
        handler: BaseHandler,
        store: ObjectStore,
        client_config: ClientConfig,
        recorder: EventRecorder | None = None,
        quota_store: QuotaStore | None = None,
        vlan_ips: VlanIPStore | None = None,
        secrets_api: k8s_client.CoreV1Api | None = None,
        reconcile_timeout: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS,
        stale_timeout: float = DEFAULT_STALE_CONDITION_TIMEOUT_SECONDS,
        client_factory: Callable[..., LinodeClient] = LinodeClient,
    ) -> None:
        self.handler = handler
        self.store = store
        self.client_config = client_config
        self.recorder = recorder
        self.quota_store = quota_store
        self.vlan_ips = vlan_ips
        self.secrets_api = secrets_api
        self.reconcile_timeout = reconcile_timeout
        self.stale_timeout = stale_timeout
        self.client_factory = client_factory

    @property
    def kind(self) -> str:
        return self.handler.kind

    def reconcile(
        self,
        namespace: str,
        name: str,
        cancelled: threading.Event | None = None,
    ) -> ReconcileResult:
        """Run one reconcile cycle for an object.

        Args:
            namespace: Namespace of the object
            name: Name of the object
            cancelled: Set to abandon the cycle at the next provider call

        Returns:
            When, if at all, the object should be reconciled again

        Raises:
            ReconcileError: For permanent failures, after they were recorded on the object
        """
        start_time = time.time()
        deadline = Deadline(self.reconcile_timeout, cancelled)
        result_label = "error"
        with with_correlation_id(), trace_span(
            "reconcile", kind=self.kind, attributes={"k8s.namespace": namespace, "k8s.name": name}
        ):
            try:
                for attempt in range(MAX_COMMIT_CONFLICT_RETRIES + 1):
                    try:
                        result = self._reconcile_once(namespace, name, deadline)
                    except Exception as e:
                        if not _is_commit_conflict(e):
                            raise
                        logger.info(
                            f"{self.kind} {namespace}/{name} changed during reconcile "
                            f"(attempt {attempt + 1}), re-reading"
                        )
                        continue
                    result_label = "success" if result.requeue_after is None else "requeue"
                    return result

                logger.warning(f"{self.kind} {namespace}/{name} kept changing during reconcile, requeuing")
                metrics.error_total.labels(kind=self.kind, error_type="CommitConflictError").inc()
                result_label = "requeue"
                return ReconcileResult(requeue_after=DEFAULT_REQUEUE_DELAY)
            finally:
                metrics.reconcile_total.labels(kind=self.kind, result=result_label).inc()
                metrics.reconcile_duration_seconds.labels(kind=self.kind).observe(time.time() - start_time)

    def _make_client(self, deadline: Deadline) -> Callable[[ClientConfig], LinodeClient]:
        def make_client(config: ClientConfig) -> LinodeClient:
            quota = None
            if self.quota_store is not None:
                quota = self.quota_store.get(credential_fingerprint(config.token))
            return self.client_factory(config, deadline=deadline, quota=quota)

        return make_client

    def _reconcile_once(self, namespace: str, name: str, deadline: Deadline) -> ReconcileResult:
        try:
            resource = self.store.get(self.kind, namespace, name)
        except ObjectNotFoundError:
            logger.debug(f"{self.kind} {namespace}/{name} not found, nothing to do")
            return ReconcileResult()

        scope = Scope(
            resource,
            self.store,
            self.client_config,
            self._make_client(deadline),
            quota_for=self.quota_store.get if self.quota_store is not None else None,
            secrets_api=self.secrets_api,
            recorder=self.recorder,
            vlan_ips=self.vlan_ips,
            stale_timeout=self.stale_timeout,
        )
        with scope:
            path = PATH_DELETE if resource.deletion_requested else PATH_UPDATE
            try:
                self._apply_credentials(scope)
                deadline.check()
                path, requeue = self._dispatch(scope)
            except Exception as e:
                if _is_commit_conflict(e):
                    raise
                return self._handle_error(scope, path, e)
            self._record_success(scope, path, requeue)
            return ReconcileResult(requeue_after=requeue)

    def _apply_credentials(self, scope: Scope) -> None:
        """Switch the cycle to the token named by ``spec.credentialsRef``, if any."""
        ref = self.handler.credentials_ref(scope.resource)
        if not ref:
            return
        if self.secrets_api is None:
            raise ValidationError("spec.credentialsRef is set but no secrets API is configured")
        token = get_credential_data(self.secrets_api, ref, scope.resource.namespace, CREDENTIAL_TOKEN_KEY)
        scope.set_credential_token(token.decode("utf-8").strip())

    def _dispatch(self, scope: Scope) -> tuple[str, float | None]:
        resource = scope.resource
        handler = self.handler
        status = resource.status
        status["ready"] = False
        status.pop("failureReason", None)
        status.pop("failureMessage", None)

        if resource.deletion_requested:
            if not resource.has_finalizer(handler.finalizer):
                return PATH_DELETE, None
            requeue = handler.delete(scope)
            if requeue is None:
                scope.remove_finalizer(handler.finalizer)
            return PATH_DELETE, requeue

        scope.add_finalizer(handler.finalizer)
        if handler.external_id(resource) is None:
            return PATH_CREATE, handler.create(scope)
        return PATH_UPDATE, handler.update(scope)

    def _record_success(self, scope: Scope, path: str, requeue: float | None) -> None:
        resource = scope.resource
        if path == PATH_DELETE:
            self._log(scope, logging.INFO, "deleted" if requeue is None else "deleting", path, "Reconciled")
            return
        if requeue is None:
            resource.status["ready"] = True
            set_ready_condition(resource.conditions, True, f"{self.kind} is ready")
            metrics.resource_status_total.labels(kind=self.kind, status="ready").inc()
        else:
            mark_false(
                resource.conditions,
                COND_READY,
                "Progressing",
                f"waiting {requeue:g}s for {self.kind} to settle",
                severity=SEVERITY_INFO,
            )
            metrics.resource_status_total.labels(kind=self.kind, status="progressing").inc()
        self._log(scope, logging.INFO, f"{path} succeeded", path, "Reconciled", requeue_after=requeue)

    def _handle_error(self, scope: Scope, path: str, error: Exception) -> ReconcileResult:
        resource = scope.resource
        classified = classify_error(error)
        message = sanitize_exception(classified)
        error_type = type(classified).__name__
        metrics.error_total.labels(kind=self.kind, error_type=error_type).inc()

        if isinstance(classified, NotFoundExternalError) and path == PATH_UPDATE:
            self.handler.clear_external_id(resource)
            self._log(scope, logging.WARNING, f"external resource vanished, recreating: {message}", path, "Recreating")
            scope.event(EVENT_TYPE_WARNING, EVENT_REASON_RECREATING, message)
            return ReconcileResult(requeue_after=0)

        if isinstance(classified, ReconcileError) and classified.retryable:
            delay = getattr(classified, "retry_after", None) or DEFAULT_REQUEUE_DELAY
            stale = record_decaying_condition(
                resource.conditions, COND_READY, classified.failure_reason, message, self.stale_timeout
            )
            if stale:
                self._record_failure(scope, classified.failure_reason, message)
            self._log(
                scope,
                logging.WARNING,
                f"{path} failed, retrying in {delay:g}s: {message}",
                path,
                classified.failure_reason,
                error_type=error_type,
                stale=stale,
            )
            return ReconcileResult(requeue_after=delay)

        reason = (
            classified.failure_reason
            if isinstance(classified, ReconcileError)
            else _PATH_FAILURE_REASONS[path]
        )
        self._record_failure(scope, reason, message)
        self._log(scope, logging.ERROR, f"{path} failed: {message}", path, reason, error_type=error_type)
        if classified is error:
            raise error
        raise classified from error

    def _record_failure(self, scope: Scope, reason: str, message: str) -> None:
        resource = scope.resource
        resource.status["failureReason"] = reason
        resource.status["failureMessage"] = message
        set_ready_condition(resource.conditions, False, message, reason=reason, severity=SEVERITY_ERROR)
        metrics.resource_status_total.labels(kind=self.kind, status="failed").inc()
        scope.event(EVENT_TYPE_WARNING, EVENT_REASON_RECONCILE_FAILED, message)

    def _log(self, scope: Scope, level: int, message: str, path: str, reason: str, **kwargs) -> None:
        resource = scope.resource
        log_resource_event(
            logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=resource.name,
            namespace=resource.namespace,
            uid=resource.uid,
            event=path,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )
