"""Core utilities and shared components for the images workflow engine."""

from .config import EngineConfig
from .error_handling import (
    BatchOperationContextManager,
    compute_backoff,
    retry_storage_operation,
    with_error_handling,
)
from .exceptions import (
    AccessError,
    BlobNotFoundError,
    ConfigurationError,
    ConflictError,
    DatabaseLockedError,
    ForbiddenError,
    ImageProcessingError,
    ImagesWorkflowError,
    InvalidFormatError,
    InvalidStateError,
    NotFoundError,
    SelfShareError,
    StorageError,
    TooLargeError,
    TransientError,
    UnavailableError,
    ValidationError,
    WorkflowStateError,
)
from .logging_config import configure_logging, get_logger, set_debug_logging, setup_logger
from .models import (
    AssetVariant,
    Decision,
    DerivedAssets,
    Image,
    ImagePage,
    ImageQuery,
    ImageSortField,
    ImageStatus,
    IngestMetadata,
    Notification,
    ShareRequest,
    ShareStatus,
    SortOrder,
    Visibility,
)

__all__ = [
    "EngineConfig",
    "BatchOperationContextManager",
    "compute_backoff",
    "retry_storage_operation",
    "with_error_handling",
    "AccessError",
    "BlobNotFoundError",
    "ConfigurationError",
    "ConflictError",
    "DatabaseLockedError",
    "ForbiddenError",
    "ImageProcessingError",
    "ImagesWorkflowError",
    "InvalidFormatError",
    "InvalidStateError",
    "NotFoundError",
    "SelfShareError",
    "StorageError",
    "TooLargeError",
    "TransientError",
    "UnavailableError",
    "ValidationError",
    "WorkflowStateError",
    "configure_logging",
    "get_logger",
    "set_debug_logging",
    "setup_logger",
    "AssetVariant",
    "Decision",
    "DerivedAssets",
    "Image",
    "ImagePage",
    "ImageQuery",
    "ImageSortField",
    "ImageStatus",
    "IngestMetadata",
    "Notification",
    "ShareRequest",
    "ShareStatus",
    "SortOrder",
    "Visibility",
]
