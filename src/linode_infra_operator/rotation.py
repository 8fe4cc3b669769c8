"""Object storage access key lifecycle.

A key moves from ``UNINITIALIZED`` to ``CURRENT`` when first issued and
through ``PENDING_ROTATION`` back to ``CURRENT`` whenever
``spec.keyGeneration`` is bumped. Independently, a key whose generated
secret was deleted out-of-band is ``SECRET_MISSING``: the secret is rebuilt
from the existing key, never by issuing a new one, since consumers may have
cached the current credentials.

Rotation creates the replacement first and only then revokes the old key.
If revocation fails the old key id is recorded in
``status.staleAccessKeyRefs`` for manual cleanup and the cycle still
succeeds; a leaked key is a lesser failure than a blocked rotation.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from string import Template
from typing import TYPE_CHECKING, Any

import requests

from . import metrics
from .constants import (
    EVENT_REASON_KEY_REVOKE_FAILED,
    S3_SECRET_ACCESS_KEY,
    S3_SECRET_SECRET_KEY,
)
from .models import AccessKey, ManagedResource
from .utils.errors import (
    LinodeAPIError,
    TransientExternalError,
    ValidationError,
    is_not_found,
    sanitize_exception,
)
from .utils.events import EVENT_TYPE_WARNING

if TYPE_CHECKING:
    from .scope import Scope

logger = logging.getLogger(__name__)


class KeyState(enum.Enum):
    UNINITIALIZED = "Uninitialized"
    CURRENT = "Current"
    PENDING_ROTATION = "PendingRotation"
    SECRET_MISSING = "SecretMissing"


def determine_key_state(resource: ManagedResource, secret_present: bool = True) -> KeyState:
    """Classify a key resource.

    Args:
        resource: The LinodeObjectStorageKey
        secret_present: Whether the generated secret currently exists

    Returns:
        The state the key is in
    """
    status = resource.status
    if status.get("accessKeyRef") is None:
        return KeyState.UNINITIALIZED
    last_generation = status.get("lastKeyGeneration")
    if last_generation is not None and resource.spec.get("keyGeneration", 0) != last_generation:
        # A rotation rewrites the secret, so it also covers a missing one
        return KeyState.PENDING_ROTATION
    if not secret_present:
        return KeyState.SECRET_MISSING
    return KeyState.CURRENT


def secret_target(resource: ManagedResource) -> tuple[str, str]:
    """Namespace and name of the generated secret."""
    generated = resource.spec.get("generatedSecret") or {}
    return (
        generated.get("namespace") or resource.namespace,
        generated.get("name") or f"{resource.name}-obj-key",
    )


def _create_key(scope: Scope) -> AccessKey:
    resource = scope.resource
    generation = resource.spec.get("keyGeneration", 0)
    bucket_access = [
        {
            "bucket_name": access["bucketName"],
            "permissions": access["permissions"],
            "region": access["region"],
        }
        for access in resource.spec.get("bucketAccess") or []
    ]
    if not bucket_access:
        raise ValidationError("spec.bucketAccess must not be empty")

    created = scope.client.create_object_storage_key({
        "label": f"{resource.name}-{generation}",
        "bucket_access": bucket_access,
    })
    return AccessKey.from_api(created, generation=generation)


def init_key(scope: Scope) -> AccessKey:
    """Issue the first key for a resource."""
    key = _create_key(scope)
    status = scope.resource.status
    status["accessKeyRef"] = key.id
    status["creationTime"] = datetime.now(timezone.utc).isoformat()
    logger.info(f"Issued access key {key.id} for {scope.resource!r}")
    return key


def rotate_key(scope: Scope) -> AccessKey:
    """Replace the current key, then revoke the old one.

    Returns:
        The new key
    """
    status = scope.resource.status
    old_key_id = status.get("accessKeyRef")

    key = _create_key(scope)
    status["accessKeyRef"] = key.id
    logger.info(f"Rotated {scope.resource!r} to access key {key.id}")

    if old_key_id is not None and old_key_id != key.id:
        try:
            scope.client.delete_object_storage_key(old_key_id)
        except (LinodeAPIError, TransientExternalError, requests.exceptions.RequestException) as e:
            if not is_not_found(e):
                _record_stale_key(scope, old_key_id, e)
                metrics.key_rotation_total.labels(result="revoke_failed").inc()
                return key
    metrics.key_rotation_total.labels(result="success").inc()
    return key


def _record_stale_key(scope: Scope, key_id: int, error: Exception) -> None:
    message = f"failed to revoke old access key {key_id}; it must be revoked manually: {sanitize_exception(error)}"
    logger.warning(message)
    stale = scope.resource.status.setdefault("staleAccessKeyRefs", [])
    if key_id not in stale:
        stale.append(key_id)
    scope.event(EVENT_TYPE_WARNING, EVENT_REASON_KEY_REVOKE_FAILED, message)


def restore_key(scope: Scope) -> AccessKey:
    """Fetch the current key by reference so its secret can be rebuilt.

    Raises:
        LinodeAPIError: If the key cannot be fetched; a 404 means the key is gone
    """
    key_id = scope.resource.status["accessKeyRef"]
    data = scope.client.get_object_storage_key(key_id)
    return AccessKey.from_api(data, generation=scope.resource.status.get("lastKeyGeneration"))


def revoke_key(scope: Scope) -> None:
    """Revoke the current key. A key that no longer exists counts as revoked."""
    key_id = scope.resource.status.get("accessKeyRef")
    if key_id is None:
        return
    try:
        scope.client.delete_object_storage_key(key_id)
    except LinodeAPIError as e:
        if not is_not_found(e):
            raise
        logger.info(f"Access key {key_id} already revoked")


def _secret_formats(resource: ManagedResource) -> dict[str, str]:
    return (resource.spec.get("generatedSecret") or {}).get("format") or {}


def lookup_secret_bucket(scope: Scope) -> dict[str, Any] | None:
    """Fetch the bucket a templated secret is rendered from.

    Runs before any key is issued or rotated, so a missing bucket never
    leaves a fresh key without a secret.

    Returns:
        The first ``spec.bucketAccess`` bucket, or None without a format

    Raises:
        ValidationError: If there is no bucket access or the bucket does not exist
    """
    resource = scope.resource
    if not _secret_formats(resource):
        return None

    bucket_access = resource.spec.get("bucketAccess") or []
    if not bucket_access:
        raise ValidationError("unable to generate secret; spec.bucketAccess must not be empty")
    region, label = bucket_access[0]["region"], bucket_access[0]["bucketName"]
    try:
        return scope.client.get_bucket(region, label)
    except LinodeAPIError as e:
        if is_not_found(e):
            raise ValidationError(f"unable to generate secret; bucket {region}/{label} not found") from e
        raise


def render_key_secret(scope: Scope, key: AccessKey, bucket: dict[str, Any] | None = None) -> dict[str, str]:
    """Build the data of the generated secret.

    Without ``spec.generatedSecret.format`` the secret holds the ``access``
    and ``secret`` keys. With it, each entry is a ``string.Template`` that
    may use ``${AccessKey}``, ``${SecretKey}``, ``${BucketName}``,
    ``${BucketEndpoint}`` and ``${S3Endpoint}``; bucket values come from the
    first ``spec.bucketAccess`` entry, looked up unless ``bucket`` is given.

    Raises:
        ValidationError: If a template is malformed or uses an unknown name
    """
    formats = _secret_formats(scope.resource)
    if not formats:
        return {S3_SECRET_ACCESS_KEY: key.access_key, S3_SECRET_SECRET_KEY: key.secret_key}

    if bucket is None:
        bucket = lookup_secret_bucket(scope)
    hostname = bucket.get("hostname", "")
    label = bucket.get("label", "")
    values: dict[str, Any] = {
        "AccessKey": key.access_key,
        "SecretKey": key.secret_key,
        "BucketName": label,
        "BucketEndpoint": hostname,
        "S3Endpoint": "https://" + hostname.removeprefix(f"{label}."),
    }

    data = {}
    for name, template in formats.items():
        try:
            data[name] = Template(template).substitute(values)
        except (KeyError, ValueError) as e:
            raise ValidationError(f"unable to generate secret; bad template for key {name}: {e}") from e
    return data
