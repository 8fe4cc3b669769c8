"""Tests for the S3 bucket client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from linode_infra_operator.services.s3.client import S3BucketClient
from linode_infra_operator.utils.errors import TransientExternalError


@pytest.fixture
def boto_client():
    with patch("linode_infra_operator.services.s3.client.boto3.client") as mock_client:
        yield mock_client.return_value


def version_page(keys):
    return {"Versions": [{"Key": k, "VersionId": f"v-{k}"} for k in keys]}


class TestS3BucketClient:
    """Test cases for S3BucketClient."""

    def test_endpoint_scheme_is_added(self):
        """Test that a bare endpoint gets an https scheme."""
        with patch("linode_infra_operator.services.s3.client.boto3.client") as mock_client:
            client = S3BucketClient("us-east-1.linodeobjects.com", "AK", "SK")

        assert client.endpoint == "https://us-east-1.linodeobjects.com"
        assert mock_client.call_args.kwargs["endpoint_url"] == "https://us-east-1.linodeobjects.com"
        assert mock_client.call_args.kwargs["aws_access_key_id"] == "AK"

    def test_is_bucket_empty(self, boto_client):
        """Test detecting an empty bucket."""
        boto_client.list_object_versions.return_value = {}
        assert S3BucketClient("https://s3", "AK", "SK").is_bucket_empty("logs")

        boto_client.list_object_versions.return_value = version_page(["a"])
        assert not S3BucketClient("https://s3", "AK", "SK").is_bucket_empty("logs")

    def test_empty_bucket(self, boto_client):
        """Test that versions and delete markers are all deleted."""
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {**version_page(["a", "b"]), "DeleteMarkers": [{"Key": "c", "VersionId": "v-c"}]},
        ]
        boto_client.get_paginator.return_value = paginator
        boto_client.delete_objects.return_value = {}

        deleted = S3BucketClient("https://s3", "AK", "SK").empty_bucket("logs")

        assert deleted == 3
        objects = boto_client.delete_objects.call_args.kwargs["Delete"]["Objects"]
        assert [o["Key"] for o in objects] == ["a", "b", "c"]

    def test_empty_bucket_batches(self, boto_client):
        """Test that deletes are sent in batches of 1000."""
        paginator = MagicMock()
        paginator.paginate.return_value = [version_page([str(i) for i in range(1500)])]
        boto_client.get_paginator.return_value = paginator
        boto_client.delete_objects.return_value = {}

        deleted = S3BucketClient("https://s3", "AK", "SK").empty_bucket("logs")

        assert deleted == 1500
        assert boto_client.delete_objects.call_count == 2

    def test_partial_failure(self, boto_client):
        """Test that objects that could not be deleted are reported."""
        paginator = MagicMock()
        paginator.paginate.return_value = [version_page(["a"])]
        boto_client.get_paginator.return_value = paginator
        boto_client.delete_objects.return_value = {"Errors": [{"Key": "a", "Message": "AccessDenied"}]}

        with pytest.raises(TransientExternalError, match="AccessDenied"):
            S3BucketClient("https://s3", "AK", "SK").empty_bucket("logs")

    def test_client_error(self, boto_client):
        """Test that S3 errors become transient errors."""
        paginator = MagicMock()
        paginator.paginate.side_effect = ClientError(
            {"Error": {"Code": "SlowDown", "Message": "Reduce your request rate"}}, "ListObjectVersions"
        )
        boto_client.get_paginator.return_value = paginator

        with pytest.raises(TransientExternalError):
            S3BucketClient("https://s3", "AK", "SK").empty_bucket("logs")
