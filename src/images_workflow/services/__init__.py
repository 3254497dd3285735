"""Workflow services: ingestion, processing, sharing, catalog, notifications and sweeps."""

from .catalog import ImageCatalog
from .ingestion import IngestionCoordinator
from .maintenance import MaintenanceScheduler, SweepTask
from .notifications import (
    LoggingNotificationChannel,
    NotificationDispatcher,
    SnsNotificationChannel,
)
from .processing import (
    ImageDeriver,
    ImageLockRegistry,
    ProcessingOutcome,
    ProcessingWorker,
    ProcessingWorkerPool,
)
from .sharing import OpenAudience, ShareWorkflowEngine

__all__ = [
    "ImageCatalog",
    "IngestionCoordinator",
    "MaintenanceScheduler",
    "SweepTask",
    "LoggingNotificationChannel",
    "NotificationDispatcher",
    "SnsNotificationChannel",
    "ImageDeriver",
    "ImageLockRegistry",
    "ProcessingOutcome",
    "ProcessingWorker",
    "ProcessingWorkerPool",
    "OpenAudience",
    "ShareWorkflowEngine",
]
