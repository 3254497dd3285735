"""Amazon SQS message bus: one queue per topic."""

import math
import threading
from typing import Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError as PydanticValidationError

from ..core.error_handling import compute_backoff
from ..core.events import BaseEvent, parse_event, serialize_event
from ..core.exceptions import UnavailableError
from ..core.logging_config import get_logger
from ..core.protocols import SqsClientProtocol
from .base import EventHandler, MessageBus

MAX_DELAY_SECONDS = 900
MISSING_QUEUE_ERROR_CODES = (
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
)


class SqsMessageBus(MessageBus):
    """
    Message bus over SQS queues named ``<queue_prefix><topic>``.

    Each received message is handed to every local handler of its topic and
    deleted only when all of them succeed; otherwise SQS makes it visible
    again after the queue's visibility timeout. A connection failure marks
    the bus disconnected. Reconnecting re-creates the client and resolves
    every subscribed queue again. While pollers run they reconnect with
    backoff and publish fails immediately; without pollers, publish tries
    to reconnect itself.
    """

    def __init__(
        self,
        client_factory: Callable[[], SqsClientProtocol],
        queue_prefix: str = "images-workflow-",
        wait_time_seconds: int = 10,
        max_messages: int = 10,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ):
        super().__init__()
        self._client_factory = client_factory
        self._queue_prefix = queue_prefix
        self._wait_time_seconds = wait_time_seconds
        self._max_messages = max_messages
        self._reconnect_base_delay = reconnect_base_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._client: Optional[SqsClientProtocol] = None
        self._queue_urls: Dict[str, str] = {}
        self._concurrency: Dict[str, int] = {}
        self._connected = False
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._logger = get_logger("bus.sqs")

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def _pollers_running(self) -> bool:
        return bool(self._threads) and not self._stop_event.is_set()

    def queue_name(self, topic: str) -> str:
        return f"{self._queue_prefix}{topic}"

    def connect(self) -> bool:
        """
        Create a client and resolve every subscribed queue.

        Returns:
            True if the bus is connected afterwards
        """
        with self._lock:
            if self._connected:
                return True
            try:
                client = self._client_factory()
                urls = {topic: self._resolve_queue_url(client, topic) for topic in self._handlers}
            except (BotoCoreError, ClientError) as e:
                self._logger.warning(f"Could not connect to SQS: {e}")
                return False
            self._client = client
            self._queue_urls = urls
            self._connected = True
        self._logger.info(f"Connected to SQS; subscribed to {len(urls)} queue(s)")
        return True

    def publish(self, topic: str, event: BaseEvent, delay_seconds: float = 0) -> None:
        self.check_topic(topic, event)
        if not self._connected:
            if self._pollers_running or not self.connect():
                raise UnavailableError(f"Message bus is disconnected; cannot publish {topic}")
        delay = min(MAX_DELAY_SECONDS, max(0, int(math.ceil(delay_seconds))))
        try:
            client, queue_url = self._client_and_url(topic)
            client.send_message(
                QueueUrl=queue_url,
                MessageBody=serialize_event(event),
                DelaySeconds=delay,
                MessageAttributes={
                    "kind": {"DataType": "String", "StringValue": topic},
                    "event_id": {"DataType": "String", "StringValue": event.event_id},
                },
            )
        except BotoCoreError as e:
            self._mark_disconnected(e)
            raise UnavailableError(f"Failed to publish {topic}: {e}") from e
        except ClientError as e:
            raise UnavailableError(f"Failed to publish {topic}: {e}") from e
        self._logger.debug(f"Published {topic} event {event.event_id} (delay={delay}s)")

    def subscribe(self, topic: str, handler: EventHandler, concurrency: int = 1) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        with self._lock:
            self._handlers.setdefault(topic, []).append(handler)
            self._concurrency[topic] = max(self._concurrency.get(topic, 0), concurrency)
        self._logger.info(f"Subscribed to {self.queue_name(topic)} with concurrency {concurrency}")

    def start(self) -> None:
        self._stop_event.clear()
        self.connect()
        with self._lock:
            for topic, concurrency in self._concurrency.items():
                for index in range(concurrency):
                    thread = threading.Thread(
                        target=self._consume,
                        args=(topic,),
                        name=f"{topic}-poller-{index}",
                        daemon=True,
                    )
                    self._threads.append(thread)
                    thread.start()
        self._logger.info(f"SQS message bus started with {len(self._threads)} poller(s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if timeout is None:
            timeout = self._wait_time_seconds + 5
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self._logger.info("SQS message bus stopped")

    def poll_once(self, topic: str) -> int:
        """
        Receive one batch from a topic's queue and dispatch it.

        Returns:
            Number of messages received

        Raises:
            UnavailableError: If the bus is disconnected or SQS is unreachable
        """
        if not self._connected and not self.connect():
            raise UnavailableError(f"Message bus is disconnected; cannot poll {topic}")
        try:
            client, queue_url = self._client_and_url(topic)
            response = client.receive_message(
                QueueUrl=queue_url,
                MaxNumberOfMessages=self._max_messages,
                WaitTimeSeconds=self._wait_time_seconds,
                AttributeNames=["ApproximateReceiveCount"],
                MessageAttributeNames=["All"],
            )
        except BotoCoreError as e:
            self._mark_disconnected(e)
            raise UnavailableError(f"Failed to receive from {topic}: {e}") from e
        except ClientError as e:
            raise UnavailableError(f"Failed to receive from {topic}: {e}") from e

        messages = response.get("Messages", [])
        for message in messages:
            self._dispatch(topic, client, queue_url, message)
        return len(messages)

    def _dispatch(self, topic: str, client: SqsClientProtocol, queue_url: str, message: dict) -> None:
        receipt_handle = message["ReceiptHandle"]
        try:
            event = parse_event(message["Body"])
        except PydanticValidationError as e:
            self._logger.error(f"Dropping undecodable message {message.get('MessageId')} on {topic}: {e}")
            client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
            return

        acknowledged = True
        for handler in self.handlers_for(topic):
            try:
                handler(event)
            except Exception as e:
                acknowledged = False
                receive_count = message.get("Attributes", {}).get("ApproximateReceiveCount", "?")
                self._logger.warning(
                    f"Handler {getattr(handler, '__qualname__', handler)} failed on {topic} "
                    f"event {event.event_id} (receive {receive_count}): {e}"
                )

        if acknowledged:
            try:
                client.delete_message(QueueUrl=queue_url, ReceiptHandle=receipt_handle)
            except BotoCoreError as e:
                self._mark_disconnected(e)
                raise UnavailableError(f"Failed to acknowledge {topic} message: {e}") from e
            except ClientError as e:
                raise UnavailableError(f"Failed to acknowledge {topic} message: {e}") from e

    def _consume(self, topic: str) -> None:
        attempt = 0
        while not self._stop_event.is_set():
            try:
                self.poll_once(topic)
                attempt = 0
            except UnavailableError as e:
                delay = compute_backoff(attempt, self._reconnect_base_delay, self._reconnect_max_delay)
                self._logger.warning(f"Polling {topic} failed, retrying in {delay:.1f}s: {e}")
                attempt += 1
                self._stop_event.wait(delay)

    def _client_and_url(self, topic: str):
        with self._lock:
            client = self._client
            if client is None:
                raise UnavailableError("Message bus has no SQS client")
            queue_url = self._queue_urls.get(topic)
            if queue_url is None:
                queue_url = self._resolve_queue_url(client, topic)
                self._queue_urls[topic] = queue_url
            return client, queue_url

    def _resolve_queue_url(self, client: SqsClientProtocol, topic: str) -> str:
        name = self.queue_name(topic)
        try:
            return client.get_queue_url(QueueName=name)["QueueUrl"]
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in MISSING_QUEUE_ERROR_CODES:
                raise
        self._logger.info(f"Creating queue {name}")
        return client.create_queue(QueueName=name)["QueueUrl"]

    def _mark_disconnected(self, error: Exception) -> None:
        with self._lock:
            if not self._connected:
                return
            self._connected = False
            self._client = None
            self._queue_urls = {}
        self._logger.warning(f"Lost connection to SQS: {error}")
