"""Integration tests for the complete upload and sharing workflow."""

from unittest import mock

import pytest

from images_workflow.core.config import EngineConfig
from images_workflow.core.events import IMAGE_UPLOADED, ImageUploaded
from images_workflow.core.exceptions import InvalidStateError, NotFoundError
from images_workflow.core.models import AssetVariant, Decision, ImageStatus, ShareStatus
from images_workflow.services.notifications import SHARE_APPROVED_KIND, SHARE_REQUESTED_KIND
from images_workflow.testing.fakes import (
    create_broken_png,
    create_test_image,
    setup_test_environment,
)


@pytest.fixture
def env():
    environment = setup_test_environment()
    yield environment
    environment.database.close()


@pytest.fixture
def mock_sleep():
    with mock.patch("images_workflow.core.error_handling.time.sleep") as mocked:
        yield mocked


class TestUploadWorkflow:
    """Integration tests for ingestion and processing."""

    def test_upload_becomes_ready(self, env):
        """Test an upload is processed into thumbnail and preview."""
        # Upload
        image = env.engine.ingestion.ingest("alice", create_test_image(1024, 768), "trip.jpg")
        assert image.status == ImageStatus.UPLOADED

        # Deliver ImageUploaded to the worker pool
        env.drain()

        # Verify
        stored = env.engine.images.get(image.id)
        assert stored.status == ImageStatus.READY
        assert (stored.width, stored.height) == (1024, 768)
        thumbnail = env.engine.catalog.read_asset("alice", image.id, AssetVariant.THUMBNAIL)
        assert thumbnail[:2] == b"\xff\xd8"

    def test_duplicate_delivery_keeps_one_set_of_assets(self, env):
        """Test a redelivered upload event leaves the image unchanged."""
        image = env.engine.ingestion.ingest("alice", create_test_image(200, 200), "a.jpg")
        env.drain()
        first = env.engine.images.get(image.id)

        env.bus.publish(
            IMAGE_UPLOADED,
            ImageUploaded(
                image_id=image.id,
                owner_id="alice",
                blob_path=image.original_path,
                size=image.size_bytes,
                content_type=image.content_type,
            ),
        )
        env.drain()

        second = env.engine.images.get(image.id)
        assert second.thumbnail_path == first.thumbnail_path
        assert second.updated_at == first.updated_at
        assert env.bucket.list_keys("derived/") == [
            f"derived/{image.id}/preview.jpg",
            f"derived/{image.id}/thumbnail.jpg",
        ]

    def test_transient_outage_is_retried_after_backoff(self, env, mock_sleep):
        """Test a storage outage during processing delays, then completes, the image."""
        env.bus.disconnect()
        image = env.engine.ingestion.ingest("alice", create_test_image(100, 100), "a.jpg")
        env.bus.reconnect()
        env.clock.advance(seconds=env.engine.config.reconcile_after_seconds + 1)
        env.engine.ingestion.reconcile_stuck()

        env.s3_client.set_failure_mode(True, times=3)
        env.drain()
        stored = env.engine.images.get(image.id)
        assert stored.status == ImageStatus.PROCESSING
        assert stored.retry_count == 1

        env.clock.advance(seconds=env.engine.config.retry_base_delay)
        env.drain()
        assert env.engine.images.get(image.id).status == ImageStatus.READY

    def test_corrupt_upload_fails(self, env):
        image = env.engine.ingestion.ingest("alice", b"GIF89a but broken", "broken.gif")
        env.drain()

        stored = env.engine.images.get(image.id)
        assert stored.status == ImageStatus.FAILED
        with pytest.raises(NotFoundError):
            env.engine.catalog.read_asset("alice", image.id, AssetVariant.PREVIEW)

    def test_corrupt_png_chunk_fails_instead_of_redelivering(self, env):
        image = env.engine.ingestion.ingest("alice", create_broken_png(), "broken.png")
        env.drain()

        stored = env.engine.images.get(image.id)
        assert stored.status == ImageStatus.FAILED
        assert env.bus.dead_letters == []
        env.clock.advance(seconds=env.engine.config.reconcile_after_seconds + 1)
        assert env.engine.ingestion.reconcile_stuck() == 0

    def test_crash_mid_processing_is_recovered_by_reconciliation(self, env):
        """Test an image left Processing by a dead worker is finished later."""
        env.bus.disconnect()
        image = env.engine.ingestion.ingest("alice", create_test_image(100, 100), "a.jpg")
        stuck = env.engine.images.get(image.id)
        stuck.mark_processing(env.clock.now())
        env.engine.images.save_processing_state(stuck)
        env.bus.reconnect()

        env.clock.advance(seconds=env.engine.config.reconcile_after_seconds + 1)
        assert env.engine.ingestion.reconcile_stuck() == 1
        env.drain()

        assert env.engine.images.get(image.id).status == ImageStatus.READY

    def test_background_workers_process_concurrently(self):
        env = setup_test_environment(
            EngineConfig(bucket="test-images", worker_count=3), subscribe=False
        )
        env.engine.start()
        try:
            images = [
                env.engine.ingestion.ingest("alice", create_test_image(120, 90), f"p{i}.jpg")
                for i in range(6)
            ]
            assert env.bus.wait_until_idle(timeout=20.0)
            statuses = {env.engine.images.get(image.id).status for image in images}
        finally:
            env.engine.close()

        assert statuses == {ImageStatus.READY}
        assert env.bus.dead_letters == []
        assert env.engine.metrics.get_summary("process_image")["successful_operations"] == 6


class TestShareWorkflow:
    """Integration tests for cross-user access."""

    def upload_ready(self, env, owner_id="alice"):
        image = env.engine.ingestion.ingest(owner_id, create_test_image(300, 300), "pic.jpg")
        env.drain()
        return image

    def test_request_and_approve(self, env):
        """Test the owner is notified, approves, and the requester gains access."""
        image = self.upload_ready(env)
        assert not env.engine.sharing.can_view("bob", image.id)

        request = env.engine.sharing.request_share("bob", image.id, "for the album")
        env.drain()

        owner_notes = env.channel.for_recipient("alice")
        assert [n.kind for n in owner_notes] == [SHARE_REQUESTED_KIND]
        assert "for the album" in owner_notes[0].message

        env.engine.sharing.decide("alice", request.id, Decision.APPROVE)
        env.drain()

        assert [n.kind for n in env.channel.for_recipient("bob")] == [SHARE_APPROVED_KIND]
        assert env.engine.sharing.can_view("bob", image.id)
        assert env.engine.catalog.read_asset("bob", image.id, AssetVariant.PREVIEW)
        assert [i.id for i in env.engine.sharing.list_shared_with("bob").items] == [image.id]

    def test_reject_then_request_again(self, env):
        image = self.upload_ready(env)
        request = env.engine.sharing.request_share("bob", image.id)
        env.engine.sharing.decide("alice", request.id, Decision.REJECT)
        env.drain()

        assert not env.engine.sharing.can_view("bob", image.id)
        assert env.channel.for_recipient("bob") == []

        again = env.engine.sharing.request_share("bob", image.id)
        assert again.status == ShareStatus.PENDING
        env.drain()
        assert len(env.channel.for_recipient("alice")) == 2

    def test_request_expires_after_ttl(self, env):
        image = self.upload_ready(env)
        request = env.engine.sharing.request_share("bob", image.id)

        env.clock.advance(days=env.engine.config.share_ttl_days)

        with pytest.raises(InvalidStateError):
            env.engine.sharing.decide("alice", request.id, Decision.APPROVE)
        assert env.engine.sharing.get_request("bob", request.id).status == ShareStatus.EXPIRED
        assert not env.engine.sharing.can_view("bob", image.id)

    def test_expiry_sweep(self, env):
        image = self.upload_ready(env)
        env.engine.sharing.request_share("bob", image.id)
        env.engine.sharing.request_share("carol", image.id)
        env.clock.advance(days=31)

        assert env.engine.sharing.expire_stale() == 2
        assert env.engine.sharing.list_incoming("alice", ShareStatus.PENDING) == []

    def test_notification_outage_does_not_block_workflow(self, env):
        image = self.upload_ready(env)
        env.channel.should_fail = True

        request = env.engine.sharing.request_share("bob", image.id)
        env.drain()

        assert env.engine.dispatcher.failed == 1
        assert env.bus.pending_count("ShareRequested") == 0
        assert env.engine.sharing.get_request("alice", request.id).is_pending
