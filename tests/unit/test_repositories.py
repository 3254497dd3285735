"""Unit tests for the DuckDB repositories."""

from datetime import datetime, timedelta, timezone
from unittest import mock

import duckdb
import pytest

from images_workflow.core.exceptions import ConflictError, DatabaseLockedError
from images_workflow.core.models import (
    Image,
    ImageQuery,
    ImageSortField,
    ImageStatus,
    ShareRequest,
    ShareStatus,
    SortOrder,
    Visibility,
)
from images_workflow.storage.database import connect
from images_workflow.storage.repositories import (
    DuckDBImageRepository,
    DuckDBShareRequestRepository,
)

NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def db():
    database = connect(":memory:")
    yield database
    database.close()


@pytest.fixture
def images(db):
    return DuckDBImageRepository(db)


@pytest.fixture
def requests(db):
    return DuckDBShareRequestRepository(db)


def make_image(owner_id="u1", **overrides) -> Image:
    values = dict(
        owner_id=owner_id,
        original_path=f"originals/{owner_id}/x.jpg",
        original_filename="x.jpg",
        content_type="image/jpeg",
        size_bytes=100,
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return Image(**values)


def make_request(image_id="img-1", requester_id="u2", created_at=NOW, **overrides) -> ShareRequest:
    values = dict(
        image_id=image_id,
        requester_id=requester_id,
        owner_id="u1",
        created_at=created_at,
        expires_at=created_at + timedelta(days=30),
    )
    values.update(overrides)
    return ShareRequest(**values)


class TestImageRepository:
    """Tests for DuckDBImageRepository."""

    def test_add_and_get_round_trip(self, images):
        image = make_image(
            title="Sunset",
            description="Beach",
            tags=["sea", "evening"],
            visibility=Visibility.PUBLIC,
        )
        images.add(image)

        loaded = images.get(image.id)

        assert loaded == image
        assert loaded.created_at.tzinfo is not None

    def test_get_missing_returns_none(self, images):
        assert images.get("missing") is None

    def test_save_processing_state_leaves_metadata_alone(self, images):
        image = make_image(title="Original title")
        images.add(image)

        edited = images.get(image.id)
        edited.title = "Edited by owner"
        images.save_metadata(edited)

        image.mark_processing(NOW)
        image.mark_ready("t.jpg", "p.jpg", 10, 20, NOW + timedelta(seconds=5))
        images.save_processing_state(image)

        loaded = images.get(image.id)
        assert loaded.status == ImageStatus.READY
        assert loaded.thumbnail_path == "t.jpg"
        assert (loaded.width, loaded.height) == (10, 20)
        assert loaded.title == "Edited by owner"

    def test_save_metadata_leaves_status_alone(self, images):
        image = make_image()
        images.add(image)

        stale_copy = images.get(image.id)
        image.mark_processing(NOW)
        images.save_processing_state(image)

        stale_copy.tags = ["new"]
        stale_copy.visibility = Visibility.PUBLIC
        images.save_metadata(stale_copy)

        loaded = images.get(image.id)
        assert loaded.status == ImageStatus.PROCESSING
        assert loaded.tags == ["new"]
        assert loaded.is_public

    def test_search_owner_newest_first(self, images):
        older = make_image(created_at=NOW - timedelta(hours=1))
        newer = make_image()
        other = make_image(owner_id="u9")
        for image in (older, newer, other):
            images.add(image)

        items, total = images.search(ImageQuery(), owner_id="u1")
        assert [i.id for i in items] == [newer.id, older.id]
        assert total == 2

    def test_search_by_ids_ignores_duplicates(self, images):
        first, second, third = make_image(), make_image(), make_image()
        for image in (first, second, third):
            images.add(image)

        items, total = images.search(ImageQuery(), image_ids=[first.id, second.id, first.id])
        assert {i.id for i in items} == {first.id, second.id}
        assert total == 2
        assert images.search(ImageQuery(), image_ids=[]) == ([], 0)

    def test_search_pages_with_total(self, images):
        created = [make_image(created_at=NOW - timedelta(minutes=n)) for n in range(5)]
        for image in created:
            images.add(image)

        items, total = images.search(ImageQuery(page=2, page_size=2), owner_id="u1")
        assert [i.id for i in items] == [created[2].id, created[3].id]
        assert total == 5
        items, _ = images.search(ImageQuery(page=4, page_size=2), owner_id="u1")
        assert items == []

    def test_search_sorts_by_field(self, images):
        small = make_image(title="beta", size_bytes=10)
        large = make_image(title="alpha", size_bytes=900)
        images.add(small)
        images.add(large)

        by_title, _ = images.search(
            ImageQuery(sort_by=ImageSortField.TITLE, sort_order=SortOrder.ASCENDING)
        )
        by_size, _ = images.search(ImageQuery(sort_by=ImageSortField.FILE_SIZE))
        assert [i.id for i in by_title] == [large.id, small.id]
        assert [i.id for i in by_size] == [large.id, small.id]

    def test_search_unmeasured_images_sort_last(self, images):
        measured = make_image(width=640, height=480)
        pending = make_image()
        images.add(pending)
        images.add(measured)

        for order in SortOrder:
            items, _ = images.search(ImageQuery(sort_by=ImageSortField.WIDTH, sort_order=order))
            assert [i.id for i in items] == [measured.id, pending.id]

    def test_search_keyword_matches_title_description_and_tags(self, images):
        by_title = make_image(title="Sunset at the pier")
        by_description = make_image(description="An early SUNSET")
        by_tag = make_image(tags=["sunset", "beach"])
        unrelated = make_image(title="Harbour", tags=["boats"])
        for image in (by_title, by_description, by_tag, unrelated):
            images.add(image)

        items, total = images.search(ImageQuery(keyword="Sunset"))
        assert {i.id for i in items} == {by_title.id, by_description.id, by_tag.id}
        assert total == 3

    def test_delete(self, images):
        image = make_image()
        images.add(image)
        assert images.delete(image.id)
        assert images.get(image.id) is None
        assert not images.delete(image.id)

    def test_list_stale_filters_status_and_age(self, images):
        stuck = make_image(updated_at=NOW - timedelta(hours=2))
        fresh = make_image(updated_at=NOW)
        ready = make_image(updated_at=NOW - timedelta(hours=2), status=ImageStatus.READY,
                           thumbnail_path="t", preview_path="p")
        for image in (stuck, fresh, ready):
            images.add(image)

        stale = images.list_stale(
            [ImageStatus.UPLOADED, ImageStatus.PROCESSING], NOW - timedelta(hours=1)
        )

        assert [i.id for i in stale] == [stuck.id]


class TestShareRequestRepository:
    """Tests for DuckDBShareRequestRepository."""

    def test_add_and_get_round_trip(self, requests):
        request = make_request(message="may I?")
        requests.add(request)
        assert requests.get(request.id) == request

    def test_second_pending_for_pair_conflicts(self, requests):
        requests.add(make_request())
        with pytest.raises(ConflictError):
            requests.add(make_request())

    def test_pending_for_other_pair_is_allowed(self, requests):
        requests.add(make_request())
        requests.add(make_request(requester_id="u3"))
        requests.add(make_request(image_id="img-2"))
        assert len(requests.list_for_owner("u1")) == 3

    def test_save_transition_only_once(self, requests):
        request = make_request()
        requests.add(request)

        first = requests.get(request.id)
        second = requests.get(request.id)
        first.transition(ShareStatus.APPROVED, NOW, "sure")
        second.transition(ShareStatus.REJECTED, NOW)

        assert requests.save_transition(first) is True
        assert requests.save_transition(second) is False

        loaded = requests.get(request.id)
        assert loaded.status == ShareStatus.APPROVED
        assert loaded.response_message == "sure"
        assert loaded.decided_at == NOW

    def test_new_pending_allowed_after_resolution(self, requests):
        request = make_request()
        requests.add(request)
        request.transition(ShareStatus.REJECTED, NOW)
        requests.save_transition(request)

        again = make_request()
        requests.add(again)

        assert requests.find_pending("img-1", "u2").id == again.id

    def test_list_pending_created_before(self, requests):
        old = make_request(created_at=NOW - timedelta(days=40))
        recent = make_request(requester_id="u3")
        requests.add(old)
        requests.add(recent)
        assert [r.id for r in requests.list_pending_created_before(NOW - timedelta(days=30))] == [
            old.id
        ]

    def test_list_filters_by_status(self, requests):
        approved = make_request()
        requests.add(approved)
        approved.transition(ShareStatus.APPROVED, NOW)
        requests.save_transition(approved)
        requests.add(make_request(requester_id="u3"))

        assert [r.id for r in requests.list_for_owner("u1", ShareStatus.APPROVED)] == [approved.id]
        assert len(requests.list_for_requester("u3", ShareStatus.PENDING)) == 1
        assert requests.list_for_requester("u2", ShareStatus.PENDING) == []

    def test_has_approved_and_approved_image_ids(self, requests):
        request = make_request()
        requests.add(request)
        assert not requests.has_approved("img-1", "u2")

        request.transition(ShareStatus.APPROVED, NOW)
        requests.save_transition(request)

        assert requests.has_approved("img-1", "u2")
        assert not requests.has_approved("img-1", "u3")
        assert requests.approved_image_ids("u2") == ["img-1"]


class TestConnect:
    """Tests for opening the workflow database."""

    def test_file_database_keeps_schema(self, tmp_path):
        path = str(tmp_path / "workflow.duckdb")
        connect(path).close()
        database = connect(path)
        try:
            assert database.fetchone("SELECT COUNT(*) FROM images") == (0,)
        finally:
            database.close()

    def test_lock_held_by_another_process(self):
        error = duckdb.IOException(
            'IO Error: Could not set lock on file "/data/workflow.duckdb": Conflicting lock is held'
        )
        with mock.patch("images_workflow.storage.database.duckdb.connect", side_effect=error):
            with pytest.raises(DatabaseLockedError) as exc_info:
                connect("/data/workflow.duckdb")
        assert exc_info.value.__cause__ is error
        assert "in use by another process" in str(exc_info.value)

    def test_other_io_errors_propagate(self):
        error = duckdb.IOException("IO Error: Cannot open file: No such file or directory")
        with mock.patch("images_workflow.storage.database.duckdb.connect", side_effect=error):
            with pytest.raises(duckdb.IOException):
                connect("/missing/dir/workflow.duckdb")
