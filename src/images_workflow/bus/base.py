"""Message bus contract shared by the in-memory and SQS transports."""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List

from ..core.events import BaseEvent

EventHandler = Callable[[BaseEvent], None]


class MessageBus(ABC):
    """
    Publish/subscribe transport with at-least-once delivery.

    A handler that returns normally acknowledges the message. A handler that
    raises leaves the message for redelivery, so handlers must tolerate
    seeing the same event_id more than once.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    @abstractmethod
    def publish(self, topic: str, event: BaseEvent, delay_seconds: float = 0) -> None:
        """
        Enqueue an event for every subscriber of a topic.

        Raises:
            ValueError: If the event kind does not match the topic
            UnavailableError: If the bus is disconnected
        """

    @abstractmethod
    def subscribe(self, topic: str, handler: EventHandler, concurrency: int = 1) -> None:
        """Register a handler; concurrency consumers compete for its messages."""

    @abstractmethod
    def start(self) -> None:
        """Begin delivering messages on background consumers."""

    @abstractmethod
    def stop(self) -> None:
        """Stop background consumers; undelivered messages stay queued."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    def handlers_for(self, topic: str) -> List[EventHandler]:
        return list(self._handlers.get(topic, []))

    @staticmethod
    def check_topic(topic: str, event: BaseEvent) -> None:
        kind = getattr(event, "kind", None)
        if kind != topic:
            raise ValueError(f"Event kind {kind!r} cannot be published on topic {topic!r}")
