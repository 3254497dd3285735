"""Factory classes for creating configured engine instances."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import boto3

from ..bus.base import MessageBus
from ..bus.sqs import SqsMessageBus
from ..services.catalog import ImageCatalog
from ..services.ingestion import IngestionCoordinator
from ..services.maintenance import MaintenanceScheduler
from ..services.notifications import (
    LoggingNotificationChannel,
    NotificationDispatcher,
    SnsNotificationChannel,
)
from ..services.processing import ImageDeriver, ProcessingWorker, ProcessingWorkerPool
from ..services.sharing import ShareWorkflowEngine
from ..storage.blob_store import S3BlobStore
from ..storage.database import Database, connect
from ..storage.repositories import DuckDBImageRepository, DuckDBShareRequestRepository
from .config import EngineConfig
from .logging_config import set_debug_logging
from .models import utc_now
from .observability import MetricsCollector
from .protocols import (
    AudiencePolicy,
    LoggerProtocol,
    NotificationChannelProtocol,
    S3ClientProtocol,
    SnsClientProtocol,
    SqsClientProtocol,
)


class S3ClientFactory:
    """Factory for creating S3 client instances."""

    @staticmethod
    def create_s3_client(**kwargs: Any) -> S3ClientProtocol:
        """Create S3 client with optional configuration."""
        session = boto3.Session()
        return session.client("s3", **kwargs)  # type: ignore


class SqsClientFactory:
    """Factory for creating SQS client instances."""

    @staticmethod
    def create_sqs_client(**kwargs: Any) -> SqsClientProtocol:
        session = boto3.Session()
        return session.client("sqs", **kwargs)  # type: ignore


class SnsClientFactory:
    """Factory for creating SNS client instances."""

    @staticmethod
    def create_sns_client(**kwargs: Any) -> SnsClientProtocol:
        session = boto3.Session()
        return session.client("sns", **kwargs)  # type: ignore


@dataclass
class Engine:
    """Every component of a running engine, wired to shared infrastructure."""

    config: EngineConfig
    database: Database
    blob_store: S3BlobStore
    images: DuckDBImageRepository
    share_requests: DuckDBShareRequestRepository
    bus: MessageBus
    ingestion: IngestionCoordinator
    worker_pool: ProcessingWorkerPool
    sharing: ShareWorkflowEngine
    catalog: ImageCatalog
    dispatcher: NotificationDispatcher
    metrics: MetricsCollector
    maintenance: MaintenanceScheduler

    def start(self) -> None:
        """Subscribe the consumers and start delivering messages."""
        self.worker_pool.start()
        self.dispatcher.start(self.bus)
        self.bus.start()

    def start_maintenance(self) -> None:
        """Run the expiry and reconciliation sweeps on their intervals."""
        self.maintenance.start()

    def stop(self) -> None:
        self.maintenance.stop()
        self.bus.stop()

    def close(self) -> None:
        self.stop()
        self.database.close()


class EngineFactory:
    """Factory for creating the complete workflow engine."""

    @staticmethod
    def create_engine(
        config: Optional[EngineConfig] = None,
        s3_client: Optional[S3ClientProtocol] = None,
        bus: Optional[MessageBus] = None,
        channel: Optional[NotificationChannelProtocol] = None,
        database: Optional[Database] = None,
        audience: Optional[AudiencePolicy] = None,
        logger: Optional[LoggerProtocol] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> Engine:
        """
        Create a fully configured engine.

        Anything not supplied is built from the config: boto3 S3 and SQS
        clients, a DuckDB database at config.database_path, and an SNS
        channel when notification_topic_arn is set (log output otherwise).
        """
        config = config or EngineConfig.from_env()
        if config.debug:
            set_debug_logging()

        # Create default dependencies if not provided
        if s3_client is None:
            s3_client = S3ClientFactory.create_s3_client()
        if bus is None:
            bus = SqsMessageBus(
                client_factory=SqsClientFactory.create_sqs_client,
                queue_prefix=config.queue_prefix,
            )
        if channel is None:
            if config.notification_topic_arn:
                channel = SnsNotificationChannel(
                    SnsClientFactory.create_sns_client(), config.notification_topic_arn
                )
            else:
                channel = LoggingNotificationChannel(logger)
        if database is None:
            database = connect(config.database_path)

        blob_store = S3BlobStore(s3_client, config.bucket)
        images = DuckDBImageRepository(database)
        share_requests = DuckDBShareRequestRepository(database)
        metrics = MetricsCollector(config.metrics_history_size)

        ingestion = IngestionCoordinator(
            config, blob_store, images, bus, logger=logger, clock=clock
        )
        worker = ProcessingWorker(
            config,
            blob_store,
            images,
            bus,
            deriver=ImageDeriver.from_config(config),
            logger=logger,
            metrics=metrics,
            clock=clock,
        )
        sharing = ShareWorkflowEngine(
            config, images, share_requests, bus, audience=audience, logger=logger, clock=clock
        )

        return Engine(
            config=config,
            database=database,
            blob_store=blob_store,
            images=images,
            share_requests=share_requests,
            bus=bus,
            ingestion=ingestion,
            worker_pool=ProcessingWorkerPool(worker, bus, config.worker_count),
            sharing=sharing,
            catalog=ImageCatalog(
                images, blob_store, sharing, logger=logger, derived_prefix=config.derived_prefix
            ),
            dispatcher=NotificationDispatcher(channel, logger=logger, clock=clock),
            metrics=metrics,
            maintenance=MaintenanceScheduler.for_engine(
                config, sharing.expire_stale, ingestion.reconcile_stuck, logger=logger
            ),
        )
