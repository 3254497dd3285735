"""Notification dispatcher and delivery channels."""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..bus.base import MessageBus
from ..core.events import SHARE_APPROVED, SHARE_REQUESTED, BaseEvent, ShareApproved, ShareRequested
from ..core.exceptions import UnavailableError
from ..core.models import Notification, utc_now
from ..core.observability import LogContext, StructuredLogger
from ..core.protocols import LoggerProtocol, NotificationChannelProtocol, SnsClientProtocol

SHARE_REQUESTED_KIND = "share_requested"
SHARE_APPROVED_KIND = "share_approved"


class LoggingNotificationChannel:
    """Writes notifications to the log. Used when no SNS topic is configured."""

    def __init__(self, logger: Optional[LoggerProtocol] = None):
        self._logger = logger or StructuredLogger("notifications.channel")

    def deliver(self, notification: Notification) -> None:
        self._logger.info(
            f"Notify {notification.recipient_id}: {notification.message}",
            kind=notification.kind,
            image_id=notification.subject_image_id,
        )


class SnsNotificationChannel:
    """Publishes notifications as JSON to an SNS topic."""

    def __init__(self, sns_client: SnsClientProtocol, topic_arn: str):
        self._sns_client = sns_client
        self._topic_arn = topic_arn

    def deliver(self, notification: Notification) -> None:
        try:
            self._sns_client.publish(
                TopicArn=self._topic_arn,
                Message=notification.model_dump_json(),
                MessageAttributes={
                    "recipient_id": {"DataType": "String", "StringValue": notification.recipient_id},
                    "kind": {"DataType": "String", "StringValue": notification.kind},
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise UnavailableError(f"SNS publish failed: {e}") from e


class NotificationDispatcher:
    """
    Turns share events into user notifications.

    Channel failures are logged and counted; the bus message is still
    acknowledged. Events whose id was handled recently are ignored.
    """

    def __init__(
        self,
        channel: NotificationChannelProtocol,
        logger: Optional[LoggerProtocol] = None,
        clock: Callable[[], datetime] = utc_now,
        dedup_capacity: int = 10000,
    ):
        self._channel = channel
        self._logger = logger or StructuredLogger("notifications")
        self._clock = clock
        self._dedup_capacity = dedup_capacity
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self.delivered = 0
        self.failed = 0

    def start(self, bus: MessageBus) -> None:
        bus.subscribe(SHARE_REQUESTED, self.handle)
        bus.subscribe(SHARE_APPROVED, self.handle)

    def handle(self, event: BaseEvent) -> Optional[Notification]:
        """
        Forward one event to the channel.

        Returns:
            The notification sent, or None for duplicates and other kinds
        """
        if not self._remember(event.event_id):
            self._logger.debug(f"Ignoring duplicate event {event.event_id}")
            return None

        notification = self.build_notification(event)
        if notification is None:
            return None

        context = LogContext(operation="dispatch", component="notifications").with_metadata(
            event_id=event.event_id,
            kind=notification.kind,
            recipient_id=notification.recipient_id,
        )
        try:
            self._channel.deliver(notification)
        except Exception as e:
            with self._lock:
                self.failed += 1
            self._logger.error("Notification delivery failed", context, error=str(e))
            return notification

        with self._lock:
            self.delivered += 1
        self._logger.info("Notification delivered", context)
        return notification

    def build_notification(self, event: BaseEvent) -> Optional[Notification]:
        if isinstance(event, ShareRequested):
            text = f"User {event.requester_id} asked to view image {event.image_id}"
            if event.message:
                text = f"{text}: {event.message}"
            return Notification(
                recipient_id=event.owner_id,
                kind=SHARE_REQUESTED_KIND,
                subject_image_id=event.image_id,
                message=text,
                timestamp=self._clock(),
            )
        if isinstance(event, ShareApproved):
            return Notification(
                recipient_id=event.requester_id,
                kind=SHARE_APPROVED_KIND,
                subject_image_id=event.image_id,
                message=f"Your request to view image {event.image_id} was approved",
                timestamp=self._clock(),
            )
        return None

    def _remember(self, event_id: str) -> bool:
        """Record an event id; False if it was already recorded."""
        with self._lock:
            if event_id in self._seen:
                self._seen.move_to_end(event_id)
                return False
            self._seen[event_id] = None
            if len(self._seen) > self._dedup_capacity:
                self._seen.popitem(last=False)
            return True
