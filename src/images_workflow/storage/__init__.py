"""Persistence for the images workflow engine: blobs in S3, records in DuckDB."""

from .blob_store import S3BlobStore
from .database import Database, connect, ensure_schema
from .repositories import DuckDBImageRepository, DuckDBShareRequestRepository

__all__ = [
    "S3BlobStore",
    "Database",
    "connect",
    "ensure_schema",
    "DuckDBImageRepository",
    "DuckDBShareRequestRepository",
]
