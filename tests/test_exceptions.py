import pytest

from images_workflow.core.exceptions import (
    AccessError,
    BlobNotFoundError,
    ConflictError,
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


@pytest.mark.parametrize(
    "exc_type, parent",
    [
        (InvalidFormatError, ValidationError),
        (TooLargeError, ValidationError),
        (StorageError, TransientError),
        (UnavailableError, TransientError),
        (NotFoundError, AccessError),
        (ForbiddenError, AccessError),
        (InvalidStateError, WorkflowStateError),
        (ConflictError, WorkflowStateError),
        (SelfShareError, WorkflowStateError),
        (ImageProcessingError, ImagesWorkflowError),
        (BlobNotFoundError, ImagesWorkflowError),
    ],
)
def test_exception_hierarchy(exc_type, parent) -> None:
    assert issubclass(exc_type, parent)
    assert issubclass(exc_type, ImagesWorkflowError)


def test_only_transient_errors_are_retryable() -> None:
    assert StorageError("disk").retryable is True
    assert UnavailableError("bus").retryable is True
    assert TooLargeError("big").retryable is False
    assert ImageProcessingError("corrupt").retryable is False
    assert ConflictError("dup").retryable is False
    assert NotFoundError("nope").retryable is False


def test_blob_not_found_is_not_transient() -> None:
    assert not issubclass(BlobNotFoundError, TransientError)
