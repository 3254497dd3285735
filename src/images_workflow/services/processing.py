"""Processing worker pool: derive thumbnails and blurred previews."""

import threading
import time
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Callable, Iterator, Optional, Set

from ..bus.base import MessageBus
from ..core.config import EngineConfig
from ..core.error_handling import compute_backoff
from ..core.events import IMAGE_PROCESSED, IMAGE_UPLOADED, BaseEvent, ImageProcessed, ImageUploaded
from ..core.exceptions import (
    BlobNotFoundError,
    ImageProcessingError,
    TransientError,
    UnavailableError,
)
from ..core.image_utils import (
    DECODE_ERRORS,
    DERIVED_CONTENT_TYPE,
    derived_asset_paths,
    encode_jpeg,
    extract_image_info,
    load_image,
    make_blurred_preview,
    make_thumbnail,
)
from ..core.models import DerivedAssets, Image, utc_now
from ..core.observability import LogContext, MetricsCollector, PerformanceMetrics, StructuredLogger
from ..core.protocols import BlobStoreProtocol, ImageRepository, LoggerProtocol


class ProcessingOutcome(str, Enum):
    """What a single delivery of ImageUploaded did."""

    READY = "ready"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED_TERMINAL = "skipped_terminal"
    SKIPPED_IN_FLIGHT = "skipped_in_flight"
    SKIPPED_MISSING = "skipped_missing"


class ImageDeriver:
    """Pure image transformation with no I/O dependencies."""

    def __init__(
        self,
        thumbnail_max_dimension: int = 200,
        preview_max_dimension: int = 400,
        preview_blur_radius: float = 10.0,
        thumbnail_quality: int = 85,
        preview_quality: int = 60,
    ):
        self.thumbnail_max_dimension = thumbnail_max_dimension
        self.preview_max_dimension = preview_max_dimension
        self.preview_blur_radius = preview_blur_radius
        self.thumbnail_quality = thumbnail_quality
        self.preview_quality = preview_quality

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ImageDeriver":
        return cls(
            thumbnail_max_dimension=config.thumbnail_max_dimension,
            preview_max_dimension=config.preview_max_dimension,
            preview_blur_radius=config.preview_blur_radius,
            thumbnail_quality=config.thumbnail_quality,
            preview_quality=config.preview_quality,
        )

    def derive(self, original_bytes: bytes) -> DerivedAssets:
        """
        Build the thumbnail and blurred preview for an original.

        Raises:
            ImageProcessingError: If the payload cannot be decoded
        """
        try:
            image = load_image(original_bytes)
            info = extract_image_info(image)
            thumbnail = make_thumbnail(image, self.thumbnail_max_dimension)
            preview = make_blurred_preview(
                image, self.preview_max_dimension, self.preview_blur_radius
            )
            return DerivedAssets(
                thumbnail=encode_jpeg(thumbnail, self.thumbnail_quality),
                preview=encode_jpeg(preview, self.preview_quality),
                width=info["width"],
                height=info["height"],
                source_format=info["format"],
            )
        except DECODE_ERRORS as e:
            raise ImageProcessingError(f"Cannot decode image payload: {e}") from e


class ImageLockRegistry:
    """Per-image mutual exclusion for processing attempts within one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: Set[str] = set()

    def try_acquire(self, image_id: str) -> bool:
        with self._lock:
            if image_id in self._held:
                return False
            self._held.add(image_id)
            return True

    def release(self, image_id: str) -> None:
        with self._lock:
            self._held.discard(image_id)

    def is_held(self, image_id: str) -> bool:
        with self._lock:
            return image_id in self._held

    @contextmanager
    def hold(self, image_id: str) -> Iterator[bool]:
        """Yield True if the lock was taken; never blocks."""
        acquired = self.try_acquire(image_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(image_id)


class ProcessingWorker:
    """
    Handles one ImageUploaded delivery end to end.

    The worker is the only writer of an Image's processing fields and of
    derived-asset blobs. Every delivery is idempotent: terminal images are
    skipped and derived paths depend only on the image id.
    """

    def __init__(
        self,
        config: EngineConfig,
        blob_store: BlobStoreProtocol,
        images: ImageRepository,
        bus: MessageBus,
        deriver: Optional[ImageDeriver] = None,
        locks: Optional[ImageLockRegistry] = None,
        logger: Optional[LoggerProtocol] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._config = config
        self._blob_store = blob_store
        self._images = images
        self._bus = bus
        self._deriver = deriver or ImageDeriver.from_config(config)
        self._locks = locks or ImageLockRegistry()
        self._logger = logger or StructuredLogger("processing")
        self._metrics = metrics or MetricsCollector()
        self._clock = clock

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def locks(self) -> ImageLockRegistry:
        return self._locks

    def handle(self, event: ImageUploaded) -> ProcessingOutcome:
        """
        Process one delivery.

        Returns normally to acknowledge. Raises only when the outcome could
        not be recorded durably, so the bus delivers the event again.
        """
        context = LogContext(
            operation="process_image", component="processing_worker"
        ).with_metadata(image_id=event.image_id, event_id=event.event_id)

        with self._locks.hold(event.image_id) as acquired:
            if not acquired:
                self._logger.info("Attempt already in flight; skipping duplicate", context)
                return ProcessingOutcome.SKIPPED_IN_FLIGHT

            start_time = time.time()
            error_message = None
            try:
                outcome = self._process_locked(event, context)
            except Exception as e:
                error_message = str(e)
                self._record_metric(event, "error", start_time, error_message)
                raise
            self._record_metric(event, outcome.value, start_time, error_message)
            return outcome

    def _process_locked(self, event: ImageUploaded, context: LogContext) -> ProcessingOutcome:
        image = self._images.get(event.image_id)
        if image is None:
            self._logger.warning("Image record not found; acknowledging", context)
            return ProcessingOutcome.SKIPPED_MISSING
        if image.is_terminal:
            self._logger.info(f"Image already {image.status.value}; skipping", context)
            return ProcessingOutcome.SKIPPED_TERMINAL

        image.mark_processing(self._clock())
        self._images.save_processing_state(image)

        thumbnail_path, preview_path = derived_asset_paths(
            self._config.derived_prefix, image.id
        )
        try:
            self._logger.debug("Loading original", context, path=image.original_path)
            original = self._blob_store.get(image.original_path)
            assets = self._deriver.derive(original)
            self._blob_store.put(thumbnail_path, assets.thumbnail, DERIVED_CONTENT_TYPE)
            self._blob_store.put(preview_path, assets.preview, DERIVED_CONTENT_TYPE)
        except (ImageProcessingError, BlobNotFoundError) as e:
            return self._fail(image, str(e), context)
        except (TransientError, TimeoutError) as e:
            return self._retry_or_fail(event, image, str(e), context)

        image.mark_ready(
            thumbnail_path, preview_path, assets.width, assets.height, self._clock()
        )
        self._images.save_processing_state(image)
        self._logger.info(
            "Image ready", context, width=assets.width, height=assets.height
        )
        self._announce(
            ImageProcessed(
                image_id=image.id,
                success=True,
                thumbnail_path=thumbnail_path,
                preview_path=preview_path,
            ),
            context,
        )
        return ProcessingOutcome.READY

    def _retry_or_fail(
        self, event: ImageUploaded, image: Image, reason: str, context: LogContext
    ) -> ProcessingOutcome:
        attempts = image.record_retry(reason, self._clock())
        if attempts >= self._config.max_retries:
            return self._fail(image, reason, context)

        self._images.save_processing_state(image)
        delay = compute_backoff(
            attempts - 1, self._config.retry_base_delay, self._config.retry_max_delay
        )
        self._logger.warning(
            f"Recoverable failure; retry {attempts}/{self._config.max_retries} in {delay:.1f}s",
            context,
            error=reason,
        )
        # Raising on a failed re-publish leaves the original delivery unacked.
        self._bus.publish(IMAGE_UPLOADED, event, delay_seconds=delay)
        return ProcessingOutcome.RETRY_SCHEDULED

    def _fail(self, image: Image, reason: str, context: LogContext) -> ProcessingOutcome:
        image.mark_failed(reason, self._clock())
        self._images.save_processing_state(image)
        self._logger.error(
            "Image processing failed", context, retry_count=image.retry_count, error=reason
        )
        self._announce(ImageProcessed(image_id=image.id, success=False, reason=reason), context)
        return ProcessingOutcome.FAILED

    def _announce(self, event: ImageProcessed, context: LogContext) -> None:
        try:
            self._bus.publish(IMAGE_PROCESSED, event)
        except UnavailableError as e:
            self._logger.warning(
                "ImageProcessed not published; image state is already recorded",
                context,
                error=str(e),
            )

    def _record_metric(
        self,
        event: ImageUploaded,
        outcome: str,
        start_time: float,
        error_message: Optional[str],
    ) -> None:
        self._metrics.record_metric(
            PerformanceMetrics(
                operation="process_image",
                start_time=start_time,
                end_time=time.time(),
                outcome="success" if outcome == ProcessingOutcome.READY.value else outcome,
                error_message=error_message,
                metadata={"image_id": event.image_id},
            )
        )


class ProcessingWorkerPool:
    """Subscribes ProcessingWorker to ImageUploaded with worker_count consumers."""

    def __init__(self, worker: ProcessingWorker, bus: MessageBus, worker_count: int = 4):
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        self._worker = worker
        self._bus = bus
        self._worker_count = worker_count
        self._started = False

    @property
    def worker(self) -> ProcessingWorker:
        return self._worker

    def start(self) -> None:
        if self._started:
            return
        self._bus.subscribe(IMAGE_UPLOADED, self.process, concurrency=self._worker_count)
        self._started = True

    def process(self, event: BaseEvent) -> ProcessingOutcome:
        if not isinstance(event, ImageUploaded):
            raise TypeError(f"Expected ImageUploaded, got {type(event).__name__}")
        return self._worker.handle(event)
