"""Unit tests for InMemoryMessageBus."""

import threading

import pytest

from images_workflow.bus.memory import InMemoryMessageBus
from images_workflow.core.events import (
    IMAGE_PROCESSED,
    IMAGE_UPLOADED,
    ImageProcessed,
    ImageUploaded,
)
from images_workflow.core.exceptions import UnavailableError
from images_workflow.testing.fakes import FrozenClock


def uploaded(image_id="img-1") -> ImageUploaded:
    return ImageUploaded(
        image_id=image_id,
        owner_id="u1",
        blob_path=f"originals/u1/{image_id}.jpg",
        size=10,
        content_type="image/jpeg",
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def bus(clock):
    return InMemoryMessageBus(clock=clock.monotonic, max_deliveries=3)


class TestPublishSubscribe:
    """Tests for basic delivery."""

    def test_delivers_to_every_subscription(self, bus):
        first, second = [], []
        bus.subscribe(IMAGE_UPLOADED, first.append)
        bus.subscribe(IMAGE_UPLOADED, second.append)

        event = uploaded()
        bus.publish(IMAGE_UPLOADED, event)

        assert bus.run_pending() == 2
        assert first == [event]
        assert second == [event]

    def test_delivered_event_keeps_identity(self, bus):
        received = []
        bus.subscribe(IMAGE_UPLOADED, received.append)
        event = uploaded()
        bus.publish(IMAGE_UPLOADED, event)
        bus.run_pending()
        assert received[0].event_id == event.event_id
        assert isinstance(received[0], ImageUploaded)

    def test_topics_are_isolated(self, bus):
        received = []
        bus.subscribe(IMAGE_PROCESSED, received.append)
        bus.subscribe(IMAGE_UPLOADED, lambda event: None)
        bus.publish(IMAGE_UPLOADED, uploaded())
        bus.run_pending()
        assert received == []

    def test_kind_must_match_topic(self, bus):
        with pytest.raises(ValueError):
            bus.publish(IMAGE_PROCESSED, uploaded())

    def test_messages_wait_for_first_subscriber(self, bus):
        bus.publish(IMAGE_UPLOADED, uploaded("early"))
        assert bus.pending_count(IMAGE_UPLOADED) == 1

        received = []
        bus.subscribe(IMAGE_UPLOADED, received.append)
        bus.run_pending()

        assert [e.image_id for e in received] == ["early"]
        assert bus.pending_count() == 0

    def test_handlers_may_publish_during_drain(self, bus):
        processed = []

        def on_upload(event):
            bus.publish(IMAGE_PROCESSED, ImageProcessed(image_id=event.image_id, success=True))

        bus.subscribe(IMAGE_UPLOADED, on_upload)
        bus.subscribe(IMAGE_PROCESSED, processed.append)
        bus.publish(IMAGE_UPLOADED, uploaded())

        assert bus.run_pending() == 2
        assert processed[0].image_id == "img-1"


class TestDelayAndRedelivery:
    """Tests for delayed delivery and at-least-once semantics."""

    def test_delayed_message_waits_for_clock(self, bus, clock):
        received = []
        bus.subscribe(IMAGE_UPLOADED, received.append)
        bus.publish(IMAGE_UPLOADED, uploaded(), delay_seconds=4)

        assert bus.run_pending() == 0
        clock.advance(3)
        assert bus.run_pending() == 0
        clock.advance(1)
        assert bus.run_pending() == 1
        assert len(received) == 1

    def test_failed_handler_gets_redelivery(self, bus):
        attempts = []

        def flaky(event):
            attempts.append(event.event_id)
            if len(attempts) < 2:
                raise RuntimeError("transient")

        bus.subscribe(IMAGE_UPLOADED, flaky)
        bus.publish(IMAGE_UPLOADED, uploaded())

        assert bus.run_pending() == 2
        assert len(set(attempts)) == 1
        assert bus.dead_letters == []

    def test_exhausted_message_is_dead_lettered(self, bus):
        def always_fails(event):
            raise RuntimeError("broken handler")

        bus.subscribe(IMAGE_UPLOADED, always_fails)
        bus.publish(IMAGE_UPLOADED, uploaded())

        assert bus.run_pending() == 3
        assert len(bus.dead_letters) == 1
        assert bus.dead_letters[0].deliveries == 3
        assert bus.dead_letters[0].error == "broken handler"
        assert bus.pending_count() == 0

    def test_failure_in_one_subscription_does_not_redeliver_to_others(self, bus):
        healthy = []
        calls = {"flaky": 0}

        def flaky(event):
            calls["flaky"] += 1
            if calls["flaky"] == 1:
                raise RuntimeError("once")

        bus.subscribe(IMAGE_UPLOADED, healthy.append)
        bus.subscribe(IMAGE_UPLOADED, flaky)
        bus.publish(IMAGE_UPLOADED, uploaded())
        bus.run_pending()

        assert len(healthy) == 1
        assert calls["flaky"] == 2


class TestConnection:
    """Tests for disconnect and reconnect."""

    def test_publish_fails_fast_when_disconnected(self, bus):
        bus.disconnect()
        assert not bus.is_connected
        with pytest.raises(UnavailableError):
            bus.publish(IMAGE_UPLOADED, uploaded())

    def test_delivery_pauses_and_resumes(self, bus):
        received = []
        bus.subscribe(IMAGE_UPLOADED, received.append)
        bus.publish(IMAGE_UPLOADED, uploaded())

        bus.disconnect()
        assert bus.run_pending() == 0

        bus.reconnect()
        assert bus.run_pending() == 1
        assert len(received) == 1


class TestBackgroundConsumers:
    """Tests for threaded consumption."""

    def test_competing_consumers_share_one_subscription(self):
        bus = InMemoryMessageBus(poll_interval=0.01)
        seen = []
        lock = threading.Lock()

        def handler(event):
            with lock:
                seen.append(event.image_id)

        bus.subscribe(IMAGE_UPLOADED, handler, concurrency=3)
        bus.start()
        try:
            for index in range(20):
                bus.publish(IMAGE_UPLOADED, uploaded(f"img-{index}"))
            assert bus.wait_until_idle(timeout=5.0)
        finally:
            bus.stop()

        assert sorted(seen) == sorted(f"img-{index}" for index in range(20))

    def test_invalid_concurrency(self, bus):
        with pytest.raises(ValueError):
            bus.subscribe(IMAGE_UPLOADED, lambda event: None, concurrency=0)
