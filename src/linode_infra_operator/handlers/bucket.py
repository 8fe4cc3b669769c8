"""Handler for LinodeObjectStorageBucket resources."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from ..constants import (
    EVENT_REASON_DELETED,
    EVENT_REASON_UPDATED,
    KIND_BUCKET,
    S3_SECRET_ACCESS_KEY,
    S3_SECRET_ENDPOINT_KEY,
    S3_SECRET_SECRET_KEY,
)
from ..scope import Scope
from ..services.s3.client import S3BucketClient
from ..tracing import trace_span
from ..utils.errors import LinodeAPIError, NotFoundExternalError, ValidationError, is_not_found
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.secrets import read_secret_data
from .base import BaseHandler, Requeue

DEFAULT_BUCKET_ACL = "private"


class BucketHandler(BaseHandler):
    """Handler for LinodeObjectStorageBucket resources.

    The bucket is addressed by region and label (the object name); the
    provider has no numeric ID for it, so the hostname it reports marks the
    bucket as created.
    """

    kind = KIND_BUCKET
    external_id_field = ("status", "hostname")

    def __init__(self, s3_client_factory: Callable[..., S3BucketClient] = S3BucketClient) -> None:
        super().__init__()
        self.s3_client_factory = s3_client_factory

    @staticmethod
    def _region(scope: Scope) -> str:
        region = scope.resource.spec.get("region")
        if not region:
            raise ValidationError("spec.region is required")
        return region

    def _desired_access(self, scope: Scope) -> dict[str, Any]:
        spec = scope.resource.spec
        return {
            "acl": spec.get("acl") or DEFAULT_BUCKET_ACL,
            "cors_enabled": bool(spec.get("corsEnabled", False)),
        }

    def _record(self, scope: Scope, bucket: dict[str, Any]) -> None:
        self.set_external_id(scope.resource, bucket["hostname"])
        status = scope.resource.status
        status.setdefault("creationTime", bucket.get("created") or datetime.now(timezone.utc).isoformat())

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        region = self._region(scope)
        with trace_span("create_bucket", kind=self.kind, attributes={"bucket.label": resource.name}):
            matches = [b for b in scope.client.list_buckets(region) if b.get("label") == resource.name]
            bucket = self.adopt_or_create(
                scope,
                matches,
                lambda: scope.client.create_bucket({
                    "label": resource.name,
                    "region": region,
                    **self._desired_access(scope),
                }),
                "bucket",
            )
            if matches:
                self._sync_access(scope, region)
            self._record(scope, bucket)
        return None

    def update(self, scope: Scope) -> Requeue:
        resource = scope.resource
        region = self._region(scope)
        try:
            bucket = scope.client.get_bucket(region, resource.name)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"bucket {resource.name} in {region} no longer exists") from e
            raise
        self._sync_access(scope, region)
        self._record(scope, bucket)
        return None

    def _sync_access(self, scope: Scope, region: str) -> None:
        name = scope.resource.name
        desired = self._desired_access(scope)
        current = scope.client.get_bucket_access(region, name)
        if all(current.get(k) == v for k, v in desired.items()):
            return
        scope.client.update_bucket_access(region, name, desired)
        self.log_info(scope.resource, f"Updated access of bucket {name}", reason="AccessUpdated", **desired)
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_UPDATED, f"Updated ACL of bucket {name}")

    def _s3_client(self, scope: Scope) -> S3BucketClient:
        """Build an S3 client from the secret named by ``spec.accessKeyRef``.

        Raises:
            ValidationError: If no access key is referenced or the secret is incomplete
        """
        resource = scope.resource
        ref = resource.spec.get("accessKeyRef") or {}
        if not ref.get("name"):
            raise ValidationError("spec.accessKeyRef is required to force-delete a bucket")
        if scope.secrets_api is None:
            raise ValidationError("no secrets API configured to read spec.accessKeyRef")
        namespace = ref.get("namespace") or resource.namespace
        data = read_secret_data(scope.secrets_api, namespace, ref["name"])
        missing = [k for k in (S3_SECRET_ACCESS_KEY, S3_SECRET_SECRET_KEY) if not data.get(k)]
        if missing:
            raise ValidationError(f"secret {namespace}/{ref['name']} is missing keys: {', '.join(missing)}")

        region = self._region(scope)
        endpoint = data.get(S3_SECRET_ENDPOINT_KEY) or f"https://{region}.linodeobjects.com"
        return self.s3_client_factory(
            endpoint=endpoint,
            access_key=data[S3_SECRET_ACCESS_KEY],
            secret_key=data[S3_SECRET_SECRET_KEY],
            region=region,
        )

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        if self.external_id(resource) is None:
            self.log_info(resource, "Bucket was never created, nothing to do")
            return None
        region = self._region(scope)

        if resource.spec.get("forceDeleteBucket"):
            deleted = self._s3_client(scope).empty_bucket(resource.name)
            self.log_info(resource, f"Purged {deleted} objects from bucket {resource.name}", reason="BucketPurged")

        try:
            scope.client.delete_bucket(region, resource.name)
        except LinodeAPIError as e:
            if not is_not_found(e):
                raise
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"Bucket {resource.name} has been cleaned up")
        self.clear_external_id(resource)
        return None
