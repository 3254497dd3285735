"""Exception taxonomy for the images workflow engine.

Validation errors are caller-fixable, transient errors are retried with
backoff, access errors never leak the existence of a private image, and
workflow state errors are deterministic.
"""

from __future__ import annotations


class ImagesWorkflowError(Exception):
    """Base exception for all images workflow errors."""

    retryable = False


class ConfigurationError(ImagesWorkflowError):
    """Error raised for invalid configuration options."""


class ValidationError(ImagesWorkflowError):
    """Caller-fixable input error, returned synchronously and never retried."""


class InvalidFormatError(ValidationError):
    """File extension or content type is not an allowed raster format."""


class TooLargeError(ValidationError):
    """Upload exceeds the configured size cap."""


class TransientError(ImagesWorkflowError):
    """Infrastructure failure that may succeed when retried."""

    retryable = True


class StorageError(TransientError):
    """Blob store read or write failed."""


class UnavailableError(TransientError):
    """A bus or notification channel is unreachable."""


class AccessError(ImagesWorkflowError):
    """Authorization failure."""


class NotFoundError(AccessError):
    """The entity does not exist, or the caller may not know it exists."""


class ForbiddenError(AccessError):
    """The caller is known to the entity but may not perform the action."""


class WorkflowStateError(ImagesWorkflowError):
    """A state machine rule was violated."""


class InvalidStateError(WorkflowStateError):
    """The transition is not allowed from the current status."""


class ConflictError(WorkflowStateError):
    """A pending share request already exists for this image and requester."""


class SelfShareError(WorkflowStateError):
    """The requester owns the image."""


class ImageProcessingError(ImagesWorkflowError):
    """The image payload is corrupt or cannot be decoded."""


class BlobNotFoundError(ImagesWorkflowError):
    """No blob is stored under the requested path."""


class DatabaseLockedError(ImagesWorkflowError):
    """The database file is held open for writing by another process."""
