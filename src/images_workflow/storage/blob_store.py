"""S3-backed blob store."""

from ..core.error_handling import retry_storage_operation, with_error_handling
from ..core.logging_config import get_logger
from ..core.protocols import S3ClientProtocol


class S3BlobStore:
    """Blob store over a single S3 bucket.

    Transient failures are retried with backoff; a missing key raises
    BlobNotFoundError immediately.
    """

    def __init__(self, s3_client: S3ClientProtocol, bucket: str):
        self._s3_client = s3_client
        self._bucket = bucket
        self._logger = get_logger("blob-store")

    @property
    def bucket(self) -> str:
        return self._bucket

    @retry_storage_operation()
    @with_error_handling
    def put(self, path: str, data: bytes, content_type: str) -> None:
        self._logger.debug(f"Uploading {len(data)} bytes to s3://{self._bucket}/{path}")
        self._s3_client.put_object(
            Bucket=self._bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
        )

    @retry_storage_operation()
    @with_error_handling
    def get(self, path: str) -> bytes:
        self._logger.debug(f"Downloading s3://{self._bucket}/{path}")
        response = self._s3_client.get_object(Bucket=self._bucket, Key=path)
        return response["Body"].read()

    @retry_storage_operation()
    @with_error_handling
    def delete(self, path: str) -> None:
        self._logger.debug(f"Deleting s3://{self._bucket}/{path}")
        self._s3_client.delete_object(Bucket=self._bucket, Key=path)
