# src/images_workflow/core/error_handling.py

import functools
import logging
import time

from botocore.exceptions import BotoCoreError, ClientError
from PIL import Image as PILImage
from PIL import UnidentifiedImageError

from .exceptions import (
    BlobNotFoundError,
    ImageProcessingError,
    ImagesWorkflowError,
    StorageError,
    TransientError,
)

MISSING_OBJECT_ERROR_CODES = ("NoSuchKey", "404", "NotFound")


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Exponential backoff delay for a zero-based attempt number.

    Returns base_delay * 2**attempt, capped at max_delay.
    """
    if attempt < 0:
        attempt = 0
    return min(base_delay * (2 ** attempt), max_delay)


def translate_exception(exc: Exception, operation: str) -> Exception:
    """Map a third-party exception onto the workflow taxonomy."""
    if isinstance(exc, ImagesWorkflowError):
        return exc
    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in MISSING_OBJECT_ERROR_CODES:
            return BlobNotFoundError(f"Object not found in {operation}: {exc}")
        return StorageError(f"Storage operation failed in {operation}: {exc}")
    if isinstance(exc, BotoCoreError):
        return StorageError(f"Storage connection failed in {operation}: {exc}")
    if isinstance(exc, (UnidentifiedImageError, PILImage.DecompressionBombError)):
        return ImageProcessingError(f"Failed to identify image in {operation}: {exc}")
    return exc


def with_error_handling(func):
    """
    A decorator to wrap functions with standardized error handling.

    botocore and Pillow failures are logged with their traceback and
    re-raised as workflow exceptions; anything else propagates unchanged.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__ + '.' + func.__name__)
        try:
            return func(*args, **kwargs)
        except ImagesWorkflowError:
            raise
        except Exception as e:
            translated = translate_exception(e, func.__name__)
            if isinstance(translated, BlobNotFoundError):
                logger.debug(f"'{func.__name__}' found no object: {e}")
            else:
                logger.error(f"Error in '{func.__name__}': {e}", exc_info=True)
            if translated is e:
                raise
            raise translated from e
    return wrapper


def retry_storage_operation(max_attempts=3, initial_delay=0.5, backoff_factor=2):
    """
    Decorator to retry transient storage operations with exponential backoff.

    Only TransientError subclasses are retried; the last one is re-raised
    once max_attempts is exhausted.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__ + '.' + func.__name__)
            attempts = 0
            delay = initial_delay
            while True:
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    attempts += 1
                    if attempts >= max_attempts:
                        logger.error(
                            f"Storage operation '{func.__name__}' failed after {max_attempts} attempts. Error: {e}"
                        )
                        raise
                    logger.info(
                        f"Storage operation '{func.__name__}' failed. Attempt {attempts}/{max_attempts}. "
                        f"Retrying in {delay:.2f}s. Error: {e}"
                    )
                    time.sleep(delay)
                    delay *= backoff_factor
        return wrapper
    return decorator


class BatchOperationContextManager:
    """
    Context manager for sweep operations to collect and summarize errors.
    """
    def __init__(self, operation_name="Batch Operation"):
        self.operation_name = operation_name
        self.errors = []
        self.processed = 0
        self.logger = logging.getLogger(self.__class__.__module__ + '.' + self.__class__.__name__)

    def __enter__(self):
        self.logger.info(f"Starting {self.operation_name}.")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type:
            self.logger.error(
                f"{self.operation_name} failed due to an unhandled exception: {exc_val}",
                exc_info=(exc_type, exc_val, exc_tb)
            )
        elif self.errors:
            self.logger.warning(
                f"{self.operation_name} completed with {len(self.errors)} error(s) "
                f"and {self.processed} item(s) processed."
            )
            for i, error_detail in enumerate(self.errors):
                self.logger.error(
                    f"  Error {i+1}/{len(self.errors)} for item '{error_detail['item']}': {error_detail['error']}"
                )
        else:
            self.logger.info(f"{self.operation_name} completed: {self.processed} item(s) processed.")
        return False

    def mark_processed(self, count: int = 1):
        self.processed += count

    def add_error(self, error_message: str, item_identifier: str = "Unknown item"):
        """
        Report an error for a specific item without aborting the sweep.

        Args:
            error_message (str): The error message or exception string.
            item_identifier (str): A string identifying the item that failed.
        """
        self.errors.append({"item": item_identifier, "error": str(error_message)})
        self.logger.debug(f"Error added for item '{item_identifier}' in {self.operation_name}: {error_message}")
