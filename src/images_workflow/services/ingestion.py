"""Ingestion coordinator: validate, persist and announce uploads."""

import posixpath
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from ..bus.base import MessageBus
from ..core.config import EngineConfig
from ..core.error_handling import BatchOperationContextManager
from ..core.events import IMAGE_UPLOADED, ImageUploaded
from ..core.exceptions import InvalidFormatError, TooLargeError, TransientError, ValidationError
from ..core.image_utils import file_extension, guess_content_type, original_blob_path
from ..core.models import Image, ImageStatus, IngestMetadata, new_id, utc_now
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import BlobStoreProtocol, ImageRepository, LoggerProtocol


class IngestionCoordinator:
    """
    Entry point for new uploads.

    The original blob is written before the Image record is created, so a
    storage failure leaves nothing behind. A failed publish leaves the image
    Uploaded for ``reconcile_stuck`` to pick up.
    """

    def __init__(
        self,
        config: EngineConfig,
        blob_store: BlobStoreProtocol,
        images: ImageRepository,
        bus: MessageBus,
        logger: Optional[LoggerProtocol] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._blob_store = blob_store
        self._images = images
        self._bus = bus
        self._logger = logger or StructuredLogger("ingestion")
        self._clock = clock

    def ingest(
        self,
        owner_id: str,
        file_bytes: bytes,
        file_name: str,
        metadata: Optional[IngestMetadata] = None,
    ) -> Image:
        """
        Store an upload and create its Image record.

        Args:
            owner_id: Authenticated uploader
            file_bytes: Raw file contents
            file_name: Client-supplied file name, used for the extension
            metadata: Title, description, tags, visibility and declared type

        Returns:
            The created Image, status Uploaded

        Raises:
            InvalidFormatError: Empty payload, or extension/content type not allowed
            TooLargeError: Payload exceeds max_upload_bytes
            StorageError: The original could not be written
        """
        metadata = metadata or IngestMetadata()
        context = LogContext(
            operation="ingest", component="ingestion", actor_id=owner_id
        ).with_metadata(file_name=file_name, size=len(file_bytes))

        if not owner_id:
            raise ValidationError("owner_id is required")
        extension, content_type = self._validate(file_bytes, file_name, metadata)

        image_id = new_id()
        blob_path = original_blob_path(
            self._config.originals_prefix, owner_id, image_id, extension
        )
        self._logger.debug(f"Writing original to {blob_path}", context)
        self._blob_store.put(blob_path, file_bytes, content_type)

        now = self._clock()
        image = Image(
            id=image_id,
            owner_id=owner_id,
            original_path=blob_path,
            original_filename=file_name,
            content_type=content_type,
            size_bytes=len(file_bytes),
            title=metadata.title or posixpath.splitext(posixpath.basename(file_name))[0],
            description=metadata.description,
            tags=list(metadata.tags),
            visibility=metadata.visibility,
            status=ImageStatus.UPLOADED,
            created_at=now,
            updated_at=now,
        )
        self._images.add(image)
        self._logger.info("Image created", context, image_id=image_id)

        try:
            self._publish_uploaded(image)
        except TransientError as e:
            self._logger.warning(
                "Upload event not published; image left for reconciliation",
                context,
                image_id=image_id,
                error=str(e),
            )
        return image

    def reconcile_stuck(self, now: Optional[datetime] = None) -> int:
        """
        Re-publish ImageUploaded for images that stopped making progress.

        Covers images still Uploaded (publish lost) or Processing (worker
        died) whose last update is older than reconcile_after_seconds.

        Returns:
            Number of events re-published
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.reconcile_after_seconds)
        stale = self._images.list_stale(
            [ImageStatus.UPLOADED, ImageStatus.PROCESSING], cutoff
        )

        with BatchOperationContextManager("Reconcile stuck images") as batch:
            for image in stale:
                try:
                    self._publish_uploaded(image)
                    batch.mark_processed()
                except TransientError as e:
                    batch.add_error(str(e), image.id)

        self._logger.info(
            "Reconciliation sweep finished",
            LogContext(operation="reconcile_stuck", component="ingestion"),
            stale=len(stale),
            republished=batch.processed,
            failed=len(batch.errors),
        )
        return batch.processed

    def _validate(
        self, file_bytes: bytes, file_name: str, metadata: IngestMetadata
    ) -> Tuple[str, str]:
        if not file_bytes:
            raise InvalidFormatError("Uploaded file is empty")

        extension = file_extension(file_name or "")
        if extension not in self._config.allowed_extensions:
            raise InvalidFormatError(f"File extension {extension or '(none)'} is not allowed")

        content_type = (metadata.content_type or guess_content_type(file_name) or "").lower()
        if content_type not in self._config.allowed_content_types:
            raise InvalidFormatError(f"Content type {content_type or '(unknown)'} is not allowed")

        if len(file_bytes) > self._config.max_upload_bytes:
            raise TooLargeError(
                f"File is {len(file_bytes)} bytes; the limit is {self._config.max_upload_bytes}"
            )
        return extension, content_type

    def _publish_uploaded(self, image: Image) -> None:
        self._bus.publish(
            IMAGE_UPLOADED,
            ImageUploaded(
                image_id=image.id,
                owner_id=image.owner_id,
                blob_path=image.original_path,
                size=image.size_bytes,
                content_type=image.content_type,
            ),
        )
