"""Handler for LinodeObjectStorageKey resources."""

from __future__ import annotations

from typing import Any

from ..constants import (
    EVENT_REASON_KEY_ASSIGNED,
    EVENT_REASON_KEY_REVOKED,
    EVENT_REASON_KEY_ROTATED,
    EVENT_REASON_SECRET_RESTORED,
    KIND_OBJECT_STORAGE_KEY,
)
from ..models import AccessKey
from ..rotation import (
    KeyState,
    determine_key_state,
    init_key,
    lookup_secret_bucket,
    render_key_secret,
    restore_key,
    revoke_key,
    rotate_key,
    secret_target,
)
from ..scope import Scope
from ..tracing import trace_span
from ..utils.errors import LinodeAPIError, NotFoundExternalError, ValidationError, is_not_found
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.secrets import apply_secret, delete_secret, secret_exists
from .base import BaseHandler, Requeue


class ObjectStorageKeyHandler(BaseHandler):
    """Handler for LinodeObjectStorageKey resources.

    Keys are never adopted: the provider returns the secret half of a key
    only when it is created, so a leftover key could not fill the secret.
    """

    kind = KIND_OBJECT_STORAGE_KEY
    external_id_field = ("status", "accessKeyRef")

    @staticmethod
    def _secrets_api(scope: Scope):
        if scope.secrets_api is None:
            raise ValidationError("no secrets API configured for generated key secrets")
        return scope.secrets_api

    def _write_secret(self, scope: Scope, key: AccessKey, bucket: dict[str, Any] | None) -> None:
        resource = scope.resource
        namespace, name = secret_target(resource)
        # Owner references cannot cross namespaces; such secrets are removed on delete instead
        owners = [resource.owner_reference()] if namespace == resource.namespace else None
        apply_secret(
            self._secrets_api(scope),
            namespace,
            name,
            render_key_secret(scope, key, bucket),
            secret_type=(resource.spec.get("generatedSecret") or {}).get("type") or "Opaque",
            owner_references=owners,
        )
        self.log_info(resource, f"Stored access key {key.id} in secret {namespace}/{name}", reason="KeyStored")

    def _finish(self, scope: Scope) -> None:
        scope.resource.status["lastKeyGeneration"] = scope.resource.spec.get("keyGeneration", 0)

    def create(self, scope: Scope) -> Requeue:
        with trace_span("create_object_storage_key", kind=self.kind, attributes={"key.name": scope.resource.name}):
            bucket = lookup_secret_bucket(scope)
            key = init_key(scope)
            scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_KEY_ASSIGNED, f"Object storage key {key.id} assigned")
            self._write_secret(scope, key, bucket)
            self._finish(scope)
        return None

    def update(self, scope: Scope) -> Requeue:
        resource = scope.resource
        namespace, name = secret_target(resource)
        present = secret_exists(self._secrets_api(scope), namespace, name)
        state = determine_key_state(resource, secret_present=present)

        if state is KeyState.CURRENT:
            self._finish(scope)
            return None

        bucket = lookup_secret_bucket(scope)
        if state is KeyState.PENDING_ROTATION:
            with trace_span("rotate_object_storage_key", kind=self.kind, attributes={"key.name": resource.name}):
                key = rotate_key(scope)
                scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_KEY_ROTATED, f"Object storage key rotated to {key.id}")
                self._write_secret(scope, key, bucket)
        elif state is KeyState.SECRET_MISSING:
            try:
                key = restore_key(scope)
            except LinodeAPIError as e:
                if is_not_found(e):
                    raise NotFoundExternalError(f"access key {resource.status['accessKeyRef']} no longer exists") from e
                raise
            self._write_secret(scope, key, bucket)
            scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_SECRET_RESTORED, f"Secret {namespace}/{name} restored")

        self._finish(scope)
        return None

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        revoke_key(scope)
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_KEY_REVOKED, "Object storage key revoked")

        namespace, name = secret_target(resource)
        if namespace != resource.namespace:
            delete_secret(self._secrets_api(scope), namespace, name)
        self.clear_external_id(resource)
        return None
