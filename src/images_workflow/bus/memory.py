"""In-process message bus with per-subscription queues."""

import heapq
import itertools
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..core.events import BaseEvent, parse_event, serialize_event
from ..core.exceptions import UnavailableError
from ..core.logging_config import get_logger
from .base import EventHandler, MessageBus


@dataclass
class DeadLetter:
    """A message that exhausted its delivery attempts."""

    topic: str
    event: BaseEvent
    deliveries: int
    error: str


@dataclass
class _Envelope:
    payload: str
    available_at: float
    deliveries: int = 0


@dataclass
class _Subscription:
    topic: str
    handler: EventHandler
    concurrency: int
    queue: List[Tuple[float, int, _Envelope]] = field(default_factory=list)
    threads: List[threading.Thread] = field(default_factory=list)

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))


class InMemoryMessageBus(MessageBus):
    """
    Message bus for a single process.

    Every subscription gets its own copy of each message; consumers of one
    subscription compete for its messages. A failed delivery is retried
    after ``redelivery_delay`` seconds until ``max_deliveries`` is reached,
    after which the message moves to ``dead_letters``. Messages published
    before anyone subscribes to a topic are held for its first subscriber.

    Tests drive delivery with ``run_pending()``; services call ``start()``
    to consume on background threads.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_deliveries: int = 10,
        redelivery_delay: float = 0.0,
        poll_interval: float = 0.05,
    ):
        super().__init__()
        if max_deliveries <= 0:
            raise ValueError("max_deliveries must be positive")
        self._clock = clock
        self._max_deliveries = max_deliveries
        self._redelivery_delay = redelivery_delay
        self._poll_interval = poll_interval
        self._cond = threading.Condition()
        self._sequence = itertools.count()
        self._subscriptions: Dict[str, List[_Subscription]] = defaultdict(list)
        self._retained: Dict[str, List[_Envelope]] = defaultdict(list)
        self._connected = True
        self._running = False
        self._inflight = 0
        self.dead_letters: List[DeadLetter] = []
        self._logger = get_logger("bus.memory")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def publish(self, topic: str, event: BaseEvent, delay_seconds: float = 0) -> None:
        self.check_topic(topic, event)
        with self._cond:
            if not self._connected:
                raise UnavailableError(f"Message bus is disconnected; cannot publish {topic}")
            available_at = self._clock() + max(0.0, delay_seconds)
            payload = serialize_event(event)
            subscriptions = self._subscriptions.get(topic)
            if not subscriptions:
                self._retained[topic].append(_Envelope(payload, available_at))
            else:
                for subscription in subscriptions:
                    self._push(subscription, _Envelope(payload, available_at))
            self._cond.notify_all()
        self._logger.debug(
            f"Published {topic} event {event.event_id} (delay={delay_seconds}s)"
        )

    def subscribe(self, topic: str, handler: EventHandler, concurrency: int = 1) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        subscription = _Subscription(topic=topic, handler=handler, concurrency=concurrency)
        with self._cond:
            self._handlers.setdefault(topic, []).append(handler)
            self._subscriptions[topic].append(subscription)
            for envelope in self._retained.pop(topic, []):
                self._push(subscription, envelope)
            if self._running:
                self._spawn_consumers(subscription)
            self._cond.notify_all()
        self._logger.info(
            f"Subscribed {subscription.name} to {topic} with concurrency {concurrency}"
        )

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    self._spawn_consumers(subscription)
        self._logger.info("In-memory message bus started")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._cond:
            self._running = False
            threads = [
                thread
                for subscriptions in self._subscriptions.values()
                for subscription in subscriptions
                for thread in subscription.threads
            ]
            for subscriptions in self._subscriptions.values():
                for subscription in subscriptions:
                    subscription.threads = []
            self._cond.notify_all()
        for thread in threads:
            thread.join(timeout)
        self._logger.info("In-memory message bus stopped")

    def disconnect(self) -> None:
        """Simulate losing the connection: publishes fail, delivery pauses."""
        with self._cond:
            self._connected = False
        self._logger.warning("Message bus connection lost")

    def reconnect(self) -> None:
        """Restore the connection; existing subscriptions resume."""
        with self._cond:
            self._connected = True
            topics = sorted(self._subscriptions)
            self._cond.notify_all()
        self._logger.info(f"Message bus reconnected; resubscribed to {len(topics)} topic(s)")

    def pending_count(self, topic: Optional[str] = None) -> int:
        """Messages queued (including delayed and retained ones) and not yet acked."""
        with self._cond:
            total = sum(
                len(subscription.queue)
                for name, subscriptions in self._subscriptions.items()
                if topic is None or name == topic
                for subscription in subscriptions
            )
            total += sum(
                len(envelopes)
                for name, envelopes in self._retained.items()
                if topic is None or name == topic
            )
            return total

    def run_pending(self) -> int:
        """
        Deliver every message that is due, in the calling thread.

        Messages published by handlers during the drain are delivered too.
        Delayed messages stay queued until the clock reaches them.

        Returns:
            Number of delivery attempts made
        """
        attempts = 0
        while True:
            with self._cond:
                item = self._take_earliest_due()
            if item is None:
                return attempts
            self._deliver(*item)
            attempts += 1

    def wait_until_idle(self, timeout: float = 5.0) -> bool:
        """Block until no due message is queued or being handled."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while self._inflight or self._has_due_messages():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(min(remaining, self._poll_interval))
            return True

    def _push(self, subscription: _Subscription, envelope: _Envelope) -> None:
        heapq.heappush(
            subscription.queue, (envelope.available_at, next(self._sequence), envelope)
        )

    def _take_due(self, subscription: _Subscription) -> Optional[_Envelope]:
        if not self._connected or not subscription.queue:
            return None
        available_at, _, envelope = subscription.queue[0]
        if available_at > self._clock():
            return None
        heapq.heappop(subscription.queue)
        self._inflight += 1
        return envelope

    def _take_earliest_due(self) -> Optional[Tuple[_Subscription, _Envelope]]:
        if not self._connected:
            return None
        now = self._clock()
        best: Optional[_Subscription] = None
        for subscriptions in self._subscriptions.values():
            for subscription in subscriptions:
                if not subscription.queue or subscription.queue[0][0] > now:
                    continue
                if best is None or subscription.queue[0][:2] < best.queue[0][:2]:
                    best = subscription
        if best is None:
            return None
        envelope = self._take_due(best)
        return (best, envelope) if envelope is not None else None

    def _has_due_messages(self) -> bool:
        if not self._connected:
            return False
        now = self._clock()
        return any(
            subscription.queue and subscription.queue[0][0] <= now
            for subscriptions in self._subscriptions.values()
            for subscription in subscriptions
        )

    def _deliver(self, subscription: _Subscription, envelope: _Envelope) -> None:
        envelope.deliveries += 1
        event = parse_event(envelope.payload)
        try:
            subscription.handler(event)
        except Exception as exc:
            self._logger.warning(
                f"Handler {subscription.name} failed on {subscription.topic} event "
                f"{event.event_id} (delivery {envelope.deliveries}): {exc}"
            )
            with self._cond:
                self._inflight -= 1
                if envelope.deliveries >= self._max_deliveries:
                    self.dead_letters.append(
                        DeadLetter(
                            topic=subscription.topic,
                            event=event,
                            deliveries=envelope.deliveries,
                            error=str(exc),
                        )
                    )
                    self._logger.error(
                        f"Dead-lettered {subscription.topic} event {event.event_id} "
                        f"after {envelope.deliveries} deliveries"
                    )
                else:
                    envelope.available_at = self._clock() + self._redelivery_delay
                    self._push(subscription, envelope)
                self._cond.notify_all()
            return
        with self._cond:
            self._inflight -= 1
            self._cond.notify_all()

    def _spawn_consumers(self, subscription: _Subscription) -> None:
        for index in range(subscription.concurrency):
            thread = threading.Thread(
                target=self._consume,
                args=(subscription,),
                name=f"{subscription.topic}-consumer-{index}",
                daemon=True,
            )
            subscription.threads.append(thread)
            thread.start()

    def _consume(self, subscription: _Subscription) -> None:
        while True:
            with self._cond:
                if not self._running:
                    return
                envelope = self._take_due(subscription)
                if envelope is None:
                    self._cond.wait(self._poll_interval)
                    continue
            self._deliver(subscription, envelope)
