"""Shared data models for the images workflow engine."""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .exceptions import InvalidStateError, ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ImageStatus(str, Enum):
    UPLOADED = "Uploaded"
    PROCESSING = "Processing"
    READY = "Ready"
    FAILED = "Failed"


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ShareStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class Decision(str, Enum):
    APPROVE = "Approve"
    REJECT = "Reject"


class AssetVariant(str, Enum):
    ORIGINAL = "original"
    THUMBNAIL = "thumbnail"
    PREVIEW = "preview"


class ImageSortField(str, Enum):
    UPLOAD_DATE = "created_at"
    TITLE = "title"
    FILE_SIZE = "size_bytes"
    WIDTH = "width"
    HEIGHT = "height"


class SortOrder(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


class IngestMetadata(BaseModel):
    """Caller-supplied metadata accompanying an upload."""

    title: str = ""
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE
    content_type: Optional[str] = None


class Image(BaseModel):
    """
    An uploaded image and its derived assets.

    Derived paths are set exactly when status is Ready. Status fields are
    changed only through the mark_* methods, which the processing worker
    calls; owners edit the descriptive fields.
    """

    id: str = Field(default_factory=new_id)
    owner_id: str
    original_path: str
    original_filename: str
    content_type: str
    size_bytes: int
    width: Optional[int] = None
    height: Optional[int] = None
    title: str = ""
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    visibility: Visibility = Visibility.PRIVATE
    status: ImageStatus = ImageStatus.UPLOADED
    thumbnail_path: Optional[str] = None
    preview_path: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_public(self) -> bool:
        return self.visibility == Visibility.PUBLIC

    @property
    def is_terminal(self) -> bool:
        return self.status in (ImageStatus.READY, ImageStatus.FAILED)

    def mark_processing(self, now: datetime) -> None:
        if self.status == ImageStatus.PROCESSING:
            return
        if self.status != ImageStatus.UPLOADED:
            raise InvalidStateError(
                f"Image {self.id} cannot start processing from {self.status.value}"
            )
        self.status = ImageStatus.PROCESSING
        self.updated_at = now

    def mark_ready(
        self,
        thumbnail_path: str,
        preview_path: str,
        width: int,
        height: int,
        now: datetime,
    ) -> None:
        if self.status != ImageStatus.PROCESSING:
            raise InvalidStateError(
                f"Image {self.id} cannot become Ready from {self.status.value}"
            )
        self.status = ImageStatus.READY
        self.thumbnail_path = thumbnail_path
        self.preview_path = preview_path
        self.width = width
        self.height = height
        self.last_error = None
        self.updated_at = now

    def record_retry(self, reason: str, now: datetime) -> int:
        self.retry_count += 1
        self.last_error = reason
        self.updated_at = now
        return self.retry_count

    def mark_failed(self, reason: str, now: datetime) -> None:
        if self.status == ImageStatus.READY:
            raise InvalidStateError(f"Image {self.id} is already Ready")
        self.status = ImageStatus.FAILED
        self.thumbnail_path = None
        self.preview_path = None
        self.last_error = reason
        self.updated_at = now


class ShareRequest(BaseModel):
    """
    A request by one user to view another user's image.

    owner_id is a snapshot of the image owner at creation time. Requests are
    never deleted; each leaves Pending exactly once.
    """

    id: str = Field(default_factory=new_id)
    image_id: str
    requester_id: str
    owner_id: str
    status: ShareStatus = ShareStatus.PENDING
    message: Optional[str] = None
    response_message: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    decided_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == ShareStatus.PENDING

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at

    def transition(
        self, status: ShareStatus, now: datetime, response_message: Optional[str] = None
    ) -> None:
        if not self.is_pending:
            raise InvalidStateError(
                f"Share request {self.id} is {self.status.value}, not Pending"
            )
        if status == ShareStatus.PENDING:
            raise InvalidStateError("Pending is not a target state")
        self.status = status
        self.decided_at = now
        if response_message is not None:
            self.response_message = response_message


class Notification(BaseModel):
    """Normalized user-facing alert handed to the notification channel."""

    recipient_id: str
    kind: str
    subject_image_id: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class DerivedAssets(BaseModel):
    """Output of deriving a thumbnail and blurred preview from an original."""

    thumbnail: bytes
    preview: bytes
    width: int
    height: int
    source_format: str = "unknown"


class ImageQuery(BaseModel):
    """One page of an image listing, with sort and keyword filter."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=50)
    sort_by: ImageSortField = ImageSortField.UPLOAD_DATE
    sort_order: SortOrder = SortOrder.DESCENDING
    keyword: Optional[str] = Field(default=None, max_length=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def build(cls, **options: Any) -> "ImageQuery":
        """
        Validate listing options, ignoring those left as None.

        Raises:
            ValidationError: If a page, size, sort or keyword is out of range
        """
        try:
            return cls(**{k: v for k, v in options.items() if v is not None})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid listing options: {e}") from e


class ImagePage(BaseModel):
    items: List[Image]
    page: int
    page_size: int
    total_items: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.page_size)

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1
