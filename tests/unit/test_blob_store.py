"""Unit tests for S3BlobStore."""

import pytest
from unittest import mock

from images_workflow.core.exceptions import BlobNotFoundError, StorageError
from images_workflow.storage.blob_store import S3BlobStore
from images_workflow.testing.fakes import FakeS3Client


@pytest.fixture
def s3_client():
    client = FakeS3Client()
    client.create_bucket("images")
    return client


@pytest.fixture
def mock_sleep():
    with mock.patch("images_workflow.core.error_handling.time.sleep") as mocked:
        yield mocked


class TestS3BlobStore:
    """Tests for S3BlobStore."""

    def test_put_and_get(self, s3_client):
        store = S3BlobStore(s3_client, "images")
        store.put("originals/u1/a.png", b"bytes", "image/png")

        assert store.get("originals/u1/a.png") == b"bytes"
        stored = s3_client.get_bucket("images").get_object("originals/u1/a.png")
        assert stored.content_type == "image/png"
        assert store.bucket == "images"

    def test_missing_blob_is_not_retried(self, s3_client, mock_sleep):
        store = S3BlobStore(s3_client, "images")
        with pytest.raises(BlobNotFoundError):
            store.get("missing")
        assert s3_client.operation_count == 1
        mock_sleep.assert_not_called()

    def test_transient_failure_is_retried(self, s3_client, mock_sleep):
        store = S3BlobStore(s3_client, "images")
        s3_client.set_failure_mode(True, times=2)

        store.put("k", b"v", "image/jpeg")

        assert s3_client.operation_count == 3
        assert mock_sleep.call_count == 2

    def test_persistent_failure_raises_storage_error(self, s3_client, mock_sleep):
        store = S3BlobStore(s3_client, "images")
        s3_client.set_failure_mode(True)

        with pytest.raises(StorageError):
            store.put("k", b"v", "image/jpeg")

        assert s3_client.operation_count == 3
        assert s3_client.get_bucket("images").list_keys() == []

    def test_missing_bucket_is_a_storage_error(self, mock_sleep):
        store = S3BlobStore(FakeS3Client(), "absent")
        with pytest.raises(StorageError):
            store.get("k")

    def test_delete(self, s3_client):
        store = S3BlobStore(s3_client, "images")
        store.put("originals/u1/a.png", b"bytes", "image/png")

        store.delete("originals/u1/a.png")
        store.delete("originals/u1/a.png")

        assert s3_client.get_bucket("images").list_keys() == []

    def test_delete_retries_transient_failure(self, s3_client, mock_sleep):
        store = S3BlobStore(s3_client, "images")
        store.put("k", b"v", "image/jpeg")
        s3_client.set_failure_mode(True, times=1)

        store.delete("k")

        assert mock_sleep.call_count == 1
        assert s3_client.get_bucket("images").list_keys() == []
