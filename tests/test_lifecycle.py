"""Tests for soft delete, restore and purge with a controllable clock."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from hls_ingest.errors import InvalidStateTransition, NotFound, TransientStorageError
from hls_ingest.lifecycle import LifecycleManager
from hls_ingest.models import LifecycleConfig


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lifecycle(store, objects, clock):
    return LifecycleManager(store, objects, LifecycleConfig(retention_days=3), clock=clock)


@pytest.fixture
def ready_video(service, clip):
    """A video processed to Ready by the worker."""
    video_id = service.upload_stream("acme", clip, "clip.mp4")
    service.worker.run_once()
    return service.get_video(video_id)


class TestSoftDelete:
    def test_delete_ready_video(self, lifecycle, store, ready_video, clock):
        backup = lifecycle.soft_delete(ready_video.id, "u7")

        assert backup.purge_at == clock.now + timedelta(days=3)
        assert backup.deleted_by == "u7"
        video = store.require(ready_video.id)
        assert video.is_deleted
        # Processing fields are untouched
        assert video.processing_state == "Ready"
        assert video.hls_ready is True

    def test_deleted_hidden_from_live_listing(self, lifecycle, store, ready_video):
        lifecycle.soft_delete(ready_video.id)
        assert store.list_live("acme") == []
        assert [b.video_id for b in lifecycle.list_deleted("acme")] == [ready_video.id]

    def test_delete_processing_video_rejected(self, lifecycle, service, clip):
        video_id = service.upload_stream("acme", clip, "clip.mp4")
        with pytest.raises(InvalidStateTransition):
            lifecycle.soft_delete(video_id)

    def test_delete_twice_rejected(self, lifecycle, ready_video):
        lifecycle.soft_delete(ready_video.id)
        with pytest.raises(InvalidStateTransition):
            lifecycle.soft_delete(ready_video.id)

    def test_delete_unknown(self, lifecycle):
        with pytest.raises(NotFound):
            lifecycle.soft_delete("missing")


class TestRestore:
    def test_restore_within_window(self, lifecycle, store, ready_video, clock):
        lifecycle.soft_delete(ready_video.id)
        clock.advance(days=2, hours=23)

        video = lifecycle.restore(ready_video.id)

        assert not video.is_deleted
        assert video.hls_ready is True
        assert lifecycle.list_deleted("acme") == []
        assert [v.id for v in store.list_live("acme")] == [ready_video.id]

    def test_restore_after_window(self, lifecycle, ready_video, clock):
        lifecycle.soft_delete(ready_video.id)
        clock.advance(days=3)

        with pytest.raises(NotFound):
            lifecycle.restore(ready_video.id)
        assert lifecycle.list_deleted("acme") == []

    def test_restore_not_deleted(self, lifecycle, ready_video):
        with pytest.raises(InvalidStateTransition):
            lifecycle.restore(ready_video.id)


class TestPurge:
    def test_purge_removes_storage_then_row(self, lifecycle, store, objects, ready_video, clock):
        assert objects.list("acme", f"hls/{ready_video.id}/")
        lifecycle.soft_delete(ready_video.id)

        assert lifecycle.purge_expired() == 0
        clock.advance(days=3, seconds=1)
        assert lifecycle.purge_expired() == 1

        assert store.get(ready_video.id) is None
        assert objects.list("acme", f"hls/{ready_video.id}/") == []
        assert objects.list("acme", "thumbnails/") == []
        assert store.list_transitions(ready_video.id) == []

    def test_purge_keeps_row_on_storage_error(self, lifecycle, store, objects, ready_video, clock):
        lifecycle.soft_delete(ready_video.id)
        clock.advance(days=4)

        def broken_delete(bucket, key):
            raise TransientStorageError("Storage delete failed", operation="delete", key=key)

        objects.delete = broken_delete
        assert lifecycle.purge_expired() == 0
        assert store.get(ready_video.id) is not None

        del objects.delete
        assert lifecycle.purge_expired() == 1

    def test_purge_ignores_live_videos(self, lifecycle, ready_video, clock):
        clock.advance(days=30)
        assert lifecycle.purge_expired() == 0

    def test_scheduler_runs_immediately(self, lifecycle, store, ready_video, clock):
        lifecycle.soft_delete(ready_video.id)
        clock.advance(days=4)

        thread = lifecycle.start_scheduler(interval_s=60)
        assert thread.daemon
        try:
            deadline = time.time() + 5
            while store.get(ready_video.id) is not None and time.time() < deadline:
                time.sleep(0.05)
        finally:
            lifecycle.stop_scheduler()

        assert store.get(ready_video.id) is None
