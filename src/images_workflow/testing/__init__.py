"""Testing utilities and fakes for the images workflow engine."""

from .fakes import (
    FakeLogger,
    FakeNotificationChannel,
    FakeS3Client,
    FakeSnsClient,
    FakeSqsClient,
    FrozenClock,
    S3Bucket,
    S3Object,
    WorkflowEnvironment,
    create_broken_png,
    create_test_image,
    setup_test_environment,
)

__all__ = [
    "FakeLogger",
    "FakeNotificationChannel",
    "FakeS3Client",
    "FakeSnsClient",
    "FakeSqsClient",
    "FrozenClock",
    "S3Bucket",
    "S3Object",
    "WorkflowEnvironment",
    "create_broken_png",
    "create_test_image",
    "setup_test_environment",
]
