"""S3 data-plane access to Linode Object Storage.

The Linode API refuses to delete a bucket that still holds objects, so
force deletion empties it through the S3 interface first.
"""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from ...utils.errors import TransientExternalError

logger = logging.getLogger(__name__)

DELETE_BATCH_SIZE = 1000


class S3BucketClient:
    """S3 client scoped to one Object Storage endpoint."""

    def __init__(
        self,
        endpoint: str,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
    ) -> None:
        """Initialize the S3 client.

        Args:
            endpoint: S3 endpoint URL, e.g. https://us-east-1.linodeobjects.com
            access_key: Access key ID
            secret_key: Secret access key
            region: Signing region
        """
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        self.endpoint = endpoint
        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def is_bucket_empty(self, name: str) -> bool:
        response = self.client.list_object_versions(Bucket=name, MaxKeys=1)
        return not response.get("Versions") and not response.get("DeleteMarkers")

    def _delete_batch(self, name: str, objects: list[dict[str, Any]]) -> None:
        response = self.client.delete_objects(Bucket=name, Delete={"Objects": objects, "Quiet": True})
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise TransientExternalError(
                f"failed to delete {len(errors)} objects from bucket {name}, "
                f"first: {first.get('Key')}: {first.get('Message')}"
            )

    def empty_bucket(self, name: str) -> int:
        """Delete every object version and delete marker in a bucket.

        Args:
            name: Bucket name

        Returns:
            Number of deleted entries

        Raises:
            TransientExternalError: If some objects could not be deleted
        """
        logger.info(f"Emptying bucket {name}")
        deleted = 0
        batch: list[dict[str, Any]] = []
        try:
            paginator = self.client.get_paginator("list_object_versions")
            for page in paginator.paginate(Bucket=name):
                for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
                    batch.append({"Key": entry["Key"], "VersionId": entry["VersionId"]})
                    if len(batch) == DELETE_BATCH_SIZE:
                        self._delete_batch(name, batch)
                        deleted += len(batch)
                        batch = []
            if batch:
                self._delete_batch(name, batch)
                deleted += len(batch)
        except ClientError as e:
            logger.error(f"Failed to empty bucket {name}: {e}")
            raise TransientExternalError(f"empty bucket {name}: {e}") from e

        logger.info(f"Emptied bucket {name}, deleted {deleted} entries")
        return deleted
