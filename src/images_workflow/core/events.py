"""Bus-carried events.

Every topic has exactly one frozen event model whose ``kind`` equals the
topic name. ``event_id`` identifies the logical event across redeliveries
and re-publications.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .models import new_id, utc_now

IMAGE_UPLOADED = "ImageUploaded"
IMAGE_PROCESSED = "ImageProcessed"
SHARE_REQUESTED = "ShareRequested"
SHARE_APPROVED = "ShareApproved"
SHARE_REJECTED = "ShareRejected"

ALL_TOPICS = (
    IMAGE_UPLOADED,
    IMAGE_PROCESSED,
    SHARE_REQUESTED,
    SHARE_APPROVED,
    SHARE_REJECTED,
)


class BaseEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    occurred_at: datetime = Field(default_factory=utc_now)


class ImageUploaded(BaseEvent):
    kind: Literal["ImageUploaded"] = IMAGE_UPLOADED
    image_id: str
    owner_id: str
    blob_path: str
    size: int
    content_type: str


class ImageProcessed(BaseEvent):
    kind: Literal["ImageProcessed"] = IMAGE_PROCESSED
    image_id: str
    success: bool
    thumbnail_path: Optional[str] = None
    preview_path: Optional[str] = None
    reason: Optional[str] = None


class ShareRequested(BaseEvent):
    kind: Literal["ShareRequested"] = SHARE_REQUESTED
    share_request_id: str
    image_id: str
    requester_id: str
    owner_id: str
    message: Optional[str] = None


class ShareApproved(BaseEvent):
    kind: Literal["ShareApproved"] = SHARE_APPROVED
    share_request_id: str
    image_id: str
    requester_id: str
    owner_id: str


class ShareRejected(BaseEvent):
    kind: Literal["ShareRejected"] = SHARE_REJECTED
    share_request_id: str
    image_id: str
    requester_id: str
    owner_id: str


Event = Annotated[
    Union[ImageUploaded, ImageProcessed, ShareRequested, ShareApproved, ShareRejected],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(Event)


def parse_event(payload: Union[str, bytes]) -> BaseEvent:
    """Decode a serialized event; unknown kinds raise pydantic.ValidationError."""
    return _event_adapter.validate_json(payload)


def serialize_event(event: BaseEvent) -> str:
    return event.model_dump_json()
