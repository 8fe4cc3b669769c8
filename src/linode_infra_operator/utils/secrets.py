"""Utilities for managing Kubernetes secrets."""

from __future__ import annotations

import base64
import binascii
from typing import Any

from kubernetes import client

from ..constants import FIELD_MANAGER, LABEL_MANAGED_BY
from .errors import ValidationError


def _decode(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        # Some client versions hand back already-decoded data
        return value.encode("utf-8")


def get_credential_data(
    api: client.CoreV1Api,
    ref: dict[str, Any],
    default_namespace: str,
    key: str,
) -> bytes:
    """Resolve a secret reference to the raw bytes stored under ``key``.

    Args:
        api: Kubernetes API client
        ref: Secret reference with ``name`` and optional ``namespace``
        default_namespace: Namespace used when the reference has none
        key: Key in the secret

    Returns:
        Raw secret value

    Raises:
        ValidationError: If the secret or key cannot be read, naming the secret
    """
    namespace = ref.get("namespace") or default_namespace
    name = ref.get("name", "")
    try:
        secret = api.read_namespaced_secret(name=name, namespace=namespace)
    except client.exceptions.ApiException as e:
        raise ValidationError(f"get credentials secret {namespace}/{name}: {e.reason or e.status}") from e

    data = secret.data or {}
    if key not in data:
        raise ValidationError(f"get credentials secret {namespace}/{name}: no {key} key in secret")
    return _decode(data[key])


def read_secret_data(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
) -> dict[str, str]:
    """Read all data from a Kubernetes secret.

    Args:
        api: Kubernetes API client
        namespace: Namespace of the secret
        secret_name: Name of the secret

    Returns:
        Dictionary of secret data (decoded)

    Raises:
        ValidationError: If secret not found
    """
    try:
        secret = api.read_namespaced_secret(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            raise ValidationError(f"secret {namespace}/{secret_name} not found") from e
        raise
    return {k: _decode(v).decode("utf-8") for k, v in (secret.data or {}).items()}


def secret_exists(api: client.CoreV1Api, namespace: str, secret_name: str) -> bool:
    """Return True if the secret exists."""
    try:
        api.read_namespaced_secret(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return False
        raise
    return True


def apply_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
    string_data: dict[str, str],
    secret_type: str = "Opaque",
    owner_references: list[dict[str, Any]] | None = None,
) -> None:
    """Create a secret, or replace its data if it already exists.

    Args:
        api: Kubernetes API client
        namespace: Namespace for the secret
        secret_name: Name of the secret
        string_data: Unencoded secret data
        secret_type: Kubernetes secret type
        owner_references: Owner references for the secret
    """
    secret = client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=secret_name,
            namespace=namespace,
            owner_references=owner_references or None,
            labels={LABEL_MANAGED_BY: FIELD_MANAGER},
        ),
        type=secret_type,
        data={k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in string_data.items()},
    )

    try:
        api.create_namespaced_secret(namespace=namespace, body=secret, field_manager=FIELD_MANAGER)
    except client.exceptions.ApiException as e:
        if e.status != 409:
            raise
        api.replace_namespaced_secret(
            name=secret_name,
            namespace=namespace,
            body=secret,
            field_manager=FIELD_MANAGER,
        )


def delete_secret(
    api: client.CoreV1Api,
    namespace: str,
    secret_name: str,
) -> None:
    """Delete a Kubernetes secret; an absent secret counts as deleted."""
    try:
        api.delete_namespaced_secret(name=secret_name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status != 404:
            raise
