"""DuckDB-backed repositories for images and share requests."""

import json
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Tuple

from ..core.exceptions import ConflictError
from ..core.models import (
    Image,
    ImageQuery,
    ImageStatus,
    ShareRequest,
    ShareStatus,
    SortOrder,
    Visibility,
)
from ..core.protocols import ImageRepository, ShareRequestRepository
from .database import Database

_IMAGE_COLUMNS = (
    "id, owner_id, original_path, original_filename, content_type, size_bytes, "
    "width, height, title, description, tags, visibility, status, "
    "thumbnail_path, preview_path, retry_count, last_error, created_at, updated_at"
)

_SHARE_COLUMNS = (
    "id, image_id, requester_id, owner_id, status, message, response_message, "
    "created_at, expires_at, decided_at"
)


def _to_db_ts(value: Optional[datetime]) -> Optional[datetime]:
    """Store timestamps as naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_ts(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DuckDBImageRepository(ImageRepository):
    """Image table. Owner edits and processing updates write disjoint columns."""

    def __init__(self, db: Database):
        self._db = db

    def add(self, image: Image) -> None:
        self._db.execute(
            f"INSERT INTO images ({_IMAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                image.id,
                image.owner_id,
                image.original_path,
                image.original_filename,
                image.content_type,
                image.size_bytes,
                image.width,
                image.height,
                image.title,
                image.description,
                json.dumps(image.tags),
                image.visibility.value,
                image.status.value,
                image.thumbnail_path,
                image.preview_path,
                image.retry_count,
                image.last_error,
                _to_db_ts(image.created_at),
                _to_db_ts(image.updated_at),
            ],
        )

    def get(self, image_id: str) -> Optional[Image]:
        row = self._db.fetchone(
            f"SELECT {_IMAGE_COLUMNS} FROM images WHERE id = ?", [image_id]
        )
        if row is None:
            return None
        return _row_to_image(row)

    def save_processing_state(self, image: Image) -> None:
        self._db.execute(
            """
            UPDATE images SET
                status = ?, thumbnail_path = ?, preview_path = ?,
                width = ?, height = ?, retry_count = ?, last_error = ?,
                updated_at = ?
            WHERE id = ?
            """,
            [
                image.status.value,
                image.thumbnail_path,
                image.preview_path,
                image.width,
                image.height,
                image.retry_count,
                image.last_error,
                _to_db_ts(image.updated_at),
                image.id,
            ],
        )

    def save_metadata(self, image: Image) -> None:
        self._db.execute(
            """
            UPDATE images SET
                title = ?, description = ?, tags = ?, visibility = ?
            WHERE id = ?
            """,
            [
                image.title,
                image.description,
                json.dumps(image.tags),
                image.visibility.value,
                image.id,
            ],
        )

    def search(
        self,
        query: ImageQuery,
        owner_id: Optional[str] = None,
        image_ids: Optional[Iterable[str]] = None,
    ) -> Tuple[List[Image], int]:
        """
        One page of images matching the filters, plus the total match count.

        Args:
            query: Page, sort and keyword
            owner_id: Only images owned by this user
            image_ids: Only these images; an empty iterable matches nothing
        """
        clauses: List[str] = []
        params: List[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if image_ids is not None:
            ids = list(dict.fromkeys(image_ids))
            if not ids:
                return [], 0
            clauses.append(f"id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if query.keyword:
            keyword = query.keyword.lower()
            clauses.append(
                "(contains(lower(title), ?) OR contains(lower(coalesce(description, '')), ?) "
                "OR contains(lower(tags), ?))"
            )
            params.extend([keyword, keyword, keyword])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._db.locked():
            total = self._db.fetchone(f"SELECT COUNT(*) FROM images {where}", params)[0]
            direction = "ASC" if query.sort_order == SortOrder.ASCENDING else "DESC"
            rows = self._db.fetchall(
                f"SELECT {_IMAGE_COLUMNS} FROM images {where} "
                f"ORDER BY {query.sort_by.value} {direction} NULLS LAST, id {direction} "
                "LIMIT ? OFFSET ?",
                [*params, query.page_size, query.offset],
            )
        return [_row_to_image(row) for row in rows], total

    def delete(self, image_id: str) -> bool:
        with self._db.locked():
            if self._db.fetchone("SELECT 1 FROM images WHERE id = ?", [image_id]) is None:
                return False
            self._db.execute("DELETE FROM images WHERE id = ?", [image_id])
            return True

    def list_stale(
        self, statuses: Iterable[ImageStatus], updated_before: datetime
    ) -> List[Image]:
        status_values = [status.value for status in statuses]
        if not status_values:
            return []
        placeholders = ", ".join("?" for _ in status_values)
        rows = self._db.fetchall(
            f"SELECT {_IMAGE_COLUMNS} FROM images "
            f"WHERE status IN ({placeholders}) AND updated_at < ? ORDER BY updated_at",
            [*status_values, _to_db_ts(updated_before)],
        )
        return [_row_to_image(row) for row in rows]


class DuckDBShareRequestRepository(ShareRequestRepository):
    """Share request table; rows are inserted once and only leave Pending once."""

    def __init__(self, db: Database):
        self._db = db

    def add(self, request: ShareRequest) -> None:
        with self._db.locked():
            if request.is_pending and self.find_pending(request.image_id, request.requester_id):
                raise ConflictError(
                    f"A pending share request already exists for image {request.image_id} "
                    f"and requester {request.requester_id}"
                )
            self._db.execute(
                f"INSERT INTO share_requests ({_SHARE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    request.id,
                    request.image_id,
                    request.requester_id,
                    request.owner_id,
                    request.status.value,
                    request.message,
                    request.response_message,
                    _to_db_ts(request.created_at),
                    _to_db_ts(request.expires_at),
                    _to_db_ts(request.decided_at),
                ],
            )

    def get(self, request_id: str) -> Optional[ShareRequest]:
        row = self._db.fetchone(
            f"SELECT {_SHARE_COLUMNS} FROM share_requests WHERE id = ?", [request_id]
        )
        if row is None:
            return None
        return _row_to_share_request(row)

    def save_transition(self, request: ShareRequest) -> bool:
        with self._db.locked():
            row = self._db.fetchone(
                "SELECT status FROM share_requests WHERE id = ?", [request.id]
            )
            if row is None or row[0] != ShareStatus.PENDING.value:
                return False
            self._db.execute(
                """
                UPDATE share_requests SET
                    status = ?, response_message = ?, decided_at = ?
                WHERE id = ?
                """,
                [
                    request.status.value,
                    request.response_message,
                    _to_db_ts(request.decided_at),
                    request.id,
                ],
            )
            return True

    def find_pending(self, image_id: str, requester_id: str) -> Optional[ShareRequest]:
        row = self._db.fetchone(
            f"SELECT {_SHARE_COLUMNS} FROM share_requests "
            "WHERE image_id = ? AND requester_id = ? AND status = ?",
            [image_id, requester_id, ShareStatus.PENDING.value],
        )
        if row is None:
            return None
        return _row_to_share_request(row)

    def list_pending_created_before(self, cutoff: datetime) -> List[ShareRequest]:
        rows = self._db.fetchall(
            f"SELECT {_SHARE_COLUMNS} FROM share_requests "
            "WHERE status = ? AND created_at <= ? ORDER BY created_at",
            [ShareStatus.PENDING.value, _to_db_ts(cutoff)],
        )
        return [_row_to_share_request(row) for row in rows]

    def list_for_owner(
        self, owner_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        return self._list_by("owner_id", owner_id, status)

    def list_for_requester(
        self, requester_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        return self._list_by("requester_id", requester_id, status)

    def has_approved(self, image_id: str, viewer_id: str) -> bool:
        row = self._db.fetchone(
            "SELECT COUNT(*) FROM share_requests "
            "WHERE image_id = ? AND requester_id = ? AND status = ?",
            [image_id, viewer_id, ShareStatus.APPROVED.value],
        )
        return bool(row and row[0])

    def approved_image_ids(self, viewer_id: str) -> List[str]:
        rows = self._db.fetchall(
            "SELECT DISTINCT image_id FROM share_requests "
            "WHERE requester_id = ? AND status = ? ORDER BY image_id",
            [viewer_id, ShareStatus.APPROVED.value],
        )
        return [row[0] for row in rows]

    def _list_by(
        self, column: str, value: str, status: Optional[ShareStatus]
    ) -> List[ShareRequest]:
        query = f"SELECT {_SHARE_COLUMNS} FROM share_requests WHERE {column} = ?"
        params: List[Any] = [value]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC"
        rows = self._db.fetchall(query, params)
        return [_row_to_share_request(row) for row in rows]


def _row_to_image(row: tuple) -> Image:
    """Convert a DB row tuple (in _IMAGE_COLUMNS order) to an Image."""
    return Image(
        id=row[0],
        owner_id=row[1],
        original_path=row[2],
        original_filename=row[3],
        content_type=row[4],
        size_bytes=row[5],
        width=row[6],
        height=row[7],
        title=row[8],
        description=row[9],
        tags=json.loads(row[10]) if row[10] else [],
        visibility=Visibility(row[11]),
        status=ImageStatus(row[12]),
        thumbnail_path=row[13],
        preview_path=row[14],
        retry_count=row[15],
        last_error=row[16],
        created_at=_from_db_ts(row[17]),
        updated_at=_from_db_ts(row[18]),
    )


def _row_to_share_request(row: tuple) -> ShareRequest:
    """Convert a DB row tuple (in _SHARE_COLUMNS order) to a ShareRequest."""
    return ShareRequest(
        id=row[0],
        image_id=row[1],
        requester_id=row[2],
        owner_id=row[3],
        status=ShareStatus(row[4]),
        message=row[5],
        response_message=row[6],
        created_at=_from_db_ts(row[7]),
        expires_at=_from_db_ts(row[8]),
        decided_at=_from_db_ts(row[9]),
    )
