"""DuckDB connection factory and schema."""

import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

import duckdb

from ..core.exceptions import DatabaseLockedError


class Database:
    """A DuckDB connection shared by the repositories.

    DuckDB connections are not safe for concurrent use, so every statement
    runs under one re-entrant lock. Holding ``locked()`` across several
    statements makes a read-check-write sequence atomic.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self._conn = conn
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator["Database"]:
        with self._lock:
            yield self

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        with self._lock:
            self._conn.execute(sql, list(params or []))

    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[tuple]:
        with self._lock:
            return self._conn.execute(sql, list(params or [])).fetchone()

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[tuple]:
        with self._lock:
            return self._conn.execute(sql, list(params or [])).fetchall()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def connect(database_path: str = ":memory:") -> Database:
    """
    Open a DuckDB database with the workflow schema initialized.

    Raises:
        DatabaseLockedError: If another process holds the file open for writing
    """
    try:
        conn = duckdb.connect(database_path)
    except duckdb.IOException as e:
        if "lock" in str(e).lower():
            raise DatabaseLockedError(
                f"Database {database_path} is in use by another process: {e}"
            ) from e
        raise
    ensure_schema(conn)
    return Database(conn)


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create tables and indexes if they do not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS images (
            id                VARCHAR PRIMARY KEY,
            owner_id          VARCHAR NOT NULL,
            original_path     VARCHAR NOT NULL,
            original_filename VARCHAR NOT NULL,
            content_type      VARCHAR NOT NULL,
            size_bytes        BIGINT NOT NULL,
            width             INTEGER,
            height            INTEGER,
            title             VARCHAR NOT NULL DEFAULT '',
            description       VARCHAR,
            tags              VARCHAR NOT NULL DEFAULT '[]',
            visibility        VARCHAR NOT NULL,
            status            VARCHAR NOT NULL,
            thumbnail_path    VARCHAR,
            preview_path      VARCHAR,
            retry_count       INTEGER NOT NULL DEFAULT 0,
            last_error        VARCHAR,
            created_at        TIMESTAMP NOT NULL,
            updated_at        TIMESTAMP NOT NULL
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_images_owner ON images(owner_id)")

    # At most one Pending row per (image_id, requester_id) is enforced by
    # ShareRequestRepository.add under the repository lock.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS share_requests (
            id               VARCHAR PRIMARY KEY,
            image_id         VARCHAR NOT NULL,
            requester_id     VARCHAR NOT NULL,
            owner_id         VARCHAR NOT NULL,
            status           VARCHAR NOT NULL,
            message          VARCHAR,
            response_message VARCHAR,
            created_at       TIMESTAMP NOT NULL,
            expires_at       TIMESTAMP NOT NULL,
            decided_at       TIMESTAMP
        )
    """)
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_share_image_requester "
        "ON share_requests(image_id, requester_id)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_share_owner ON share_requests(owner_id)")
