"""Protocol definitions for dependency injection and testability."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .models import (
    Image,
    ImageQuery,
    ImageStatus,
    Notification,
    ShareRequest,
    ShareStatus,
)


class S3ClientProtocol(Protocol):
    """Protocol for the subset of the S3 client the blob store uses."""

    def get_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        ...

    def put_object(
        self, Bucket: str, Key: str, Body: bytes, ContentType: str
    ) -> Dict[str, Any]:
        ...

    def delete_object(self, Bucket: str, Key: str) -> Dict[str, Any]:
        ...


class SqsClientProtocol(Protocol):
    """Protocol for the subset of the SQS client the message bus uses."""

    def get_queue_url(self, QueueName: str) -> Dict[str, Any]:
        ...

    def create_queue(self, QueueName: str) -> Dict[str, Any]:
        ...

    def send_message(self, **kwargs: Any) -> Dict[str, Any]:
        ...

    def receive_message(self, **kwargs: Any) -> Dict[str, Any]:
        ...

    def delete_message(self, QueueUrl: str, ReceiptHandle: str) -> Dict[str, Any]:
        ...


class SnsClientProtocol(Protocol):
    """Protocol for the subset of the SNS client the notification channel uses."""

    def publish(self, TopicArn: str, Message: str, **kwargs: Any) -> Dict[str, Any]:
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        ...


class BlobStoreProtocol(Protocol):
    """Durable byte storage addressed by path."""

    def put(self, path: str, data: bytes, content_type: str) -> None:
        """Store bytes; raises StorageError."""
        ...

    def get(self, path: str) -> bytes:
        """Load bytes; raises BlobNotFoundError or StorageError."""
        ...

    def delete(self, path: str) -> None:
        """Remove bytes if present; raises StorageError."""
        ...


class NotificationChannelProtocol(Protocol):
    """Final delivery of a user-facing alert."""

    def deliver(self, notification: Notification) -> None:
        """Deliver the alert; raises UnavailableError."""
        ...


class AudiencePolicy(Protocol):
    """Decides who may ask an owner for access to a private image."""

    def allows(self, owner_id: str, requester_id: str) -> bool:
        ...


class ImageRepository(ABC):
    """Image table keyed by id."""

    @abstractmethod
    def add(self, image: Image) -> None:
        ...

    @abstractmethod
    def get(self, image_id: str) -> Optional[Image]:
        ...

    @abstractmethod
    def save_processing_state(self, image: Image) -> None:
        """Persist status, derived paths, dimensions, retry count and error."""
        ...

    @abstractmethod
    def save_metadata(self, image: Image) -> None:
        """Persist owner-editable fields only."""
        ...

    @abstractmethod
    def search(
        self,
        query: ImageQuery,
        owner_id: Optional[str] = None,
        image_ids: Optional[Iterable[str]] = None,
    ) -> Tuple[List[Image], int]:
        """One page of matching images and the total number of matches."""
        ...

    @abstractmethod
    def delete(self, image_id: str) -> bool:
        """Remove the record; False if it did not exist."""
        ...

    @abstractmethod
    def list_stale(
        self, statuses: Iterable[ImageStatus], updated_before: datetime
    ) -> List[Image]:
        ...


class ShareRequestRepository(ABC):
    """Share request table keyed by id, unique Pending per (image, requester)."""

    @abstractmethod
    def add(self, request: ShareRequest) -> None:
        """Insert a request; raises ConflictError if a Pending one exists."""
        ...

    @abstractmethod
    def get(self, request_id: str) -> Optional[ShareRequest]:
        ...

    @abstractmethod
    def save_transition(self, request: ShareRequest) -> bool:
        """Persist a transition out of Pending; False if no longer Pending."""
        ...

    @abstractmethod
    def find_pending(self, image_id: str, requester_id: str) -> Optional[ShareRequest]:
        ...

    @abstractmethod
    def list_pending_created_before(self, cutoff: datetime) -> List[ShareRequest]:
        ...

    @abstractmethod
    def list_for_owner(
        self, owner_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        ...

    @abstractmethod
    def list_for_requester(
        self, requester_id: str, status: Optional[ShareStatus] = None
    ) -> List[ShareRequest]:
        ...

    @abstractmethod
    def has_approved(self, image_id: str, viewer_id: str) -> bool:
        ...

    @abstractmethod
    def approved_image_ids(self, viewer_id: str) -> List[str]:
        ...
