"""Tests for crash recovery of interrupted transcodes."""

import os
import uuid
from datetime import timedelta
from unittest.mock import patch

from hls_ingest.queue import ProcessingQueue, ProcessingState, RecoveryScanner, SQLiteVideoStore, Video
from hls_ingest.queue.models import to_db_time, utcnow
from hls_ingest.queue.recovery import claim_owner_pid

# Claimed by a process that has since exited
DEAD_WORKER = "worker-4194301-dead00"
# Claimed earlier in this process (e.g. a worker that was stopped)
OWN_WORKER = f"worker-{os.getpid()}-old000"


def _add(store, name):
    return store.insert_video(Video(id=uuid.uuid4().hex, bucket="acme", filename=name,
                                    object_key=f"temp-uploads/{name}"))


class TestRecovery:
    """Simulate a process dying mid-job and a fresh process starting."""

    def test_interrupted_job_requeued_first(self, temp_dir):
        db_path = str(temp_dir / "crash.db")
        store = SQLiteVideoStore(db_path)
        a = _add(store, "a.mp4")
        b = _add(store, "b.mp4")
        store.claim_next(DEAD_WORKER)
        store.advance(a.id, DEAD_WORKER, ProcessingState.TRANSCODING.value, "transcoding_720p")
        store.update_progress(a.id, DEAD_WORKER, 60)
        store.close()

        # New process
        store = SQLiteVideoStore(db_path)
        queue = ProcessingQueue(store)
        with patch("hls_ingest.queue.recovery.psutil.pid_exists", return_value=False):
            assert RecoveryScanner(store, queue).recover() == 2

        video = store.require(a.id)
        assert video.processing_state == ProcessingState.QUEUED.value
        assert video.claimed_by is None
        assert video.progress_percent == 0
        assert video.attempt_count == 1
        assert store.require(b.id).attempt_count == 0

        # Original FIFO order survives
        assert queue.status(a.id).queue_position == 0
        assert queue.status(b.id).queue_position == 1
        assert queue.dequeue_next("new-worker").id == a.id

    def test_recovery_idempotent(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next(OWN_WORKER)
        scanner = RecoveryScanner(store, queue)

        scanner.recover()
        scanner.recover()

        assert store.require(a.id).attempt_count == 1

    def test_terminal_and_deleted_untouched(self, store, queue):
        ready = _add(store, "r.mp4")
        queue.dequeue_next("w")
        store.mark_ready(ready.id, "w", "hls/r/master.m3u8")
        failed = _add(store, "f.mp4")
        store.mark_failed(failed.id, None, "boom")
        store.soft_delete(failed.id, None, utcnow(), utcnow() + timedelta(days=3))

        assert RecoveryScanner(store, queue).recover() == 0
        assert store.require(ready.id).processing_state == "Ready"
        assert store.require(failed.id).processing_state == "Failed"

    def test_recovery_logged(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next(OWN_WORKER)
        RecoveryScanner(store, queue).recover()

        last = store.list_transitions(a.id)[-1]
        assert last.from_state == "Uploading"
        assert last.to_state == "Queued"
        assert "crash recovery" in last.error_snippet


class TestStaleClaims:
    def test_fresh_claim_kept(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next("live-worker")

        assert RecoveryScanner(store, queue).reset_stale_claims(timeout_s=600) == 0
        assert store.require(a.id).claimed_by == "live-worker"

    def test_stale_claim_released(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next(OWN_WORKER)
        store.conn.execute(
            "UPDATE videos SET last_heartbeat = ? WHERE id = ?",
            (to_db_time(utcnow() - timedelta(hours=1)), a.id),
        )

        assert RecoveryScanner(store, queue).reset_stale_claims(timeout_s=600) == 1
        assert store.require(a.id).processing_state == "Queued"
        # The queue can make progress again
        assert queue.dequeue_next("new-worker").id == a.id


class TestLiveClaims:
    """A second process starting on the same database must not steal work."""

    def test_second_process_keeps_live_claim(self, temp_dir):
        db_path = str(temp_dir / "shared.db")
        first = SQLiteVideoStore(db_path)
        a = _add(first, "a.mp4")
        _add(first, "b.mp4")
        live_worker = "worker-4194302-live00"
        assert first.claim_next(live_worker).id == a.id
        first.heartbeat(a.id, live_worker)

        second = SQLiteVideoStore(db_path)
        queue = ProcessingQueue(second)
        with patch("hls_ingest.queue.recovery.psutil.pid_exists", return_value=True):
            assert RecoveryScanner(second, queue).recover() == 1  # only b

        video = second.require(a.id)
        assert video.processing_state == ProcessingState.UPLOADING.value
        assert video.claimed_by == live_worker
        assert video.attempt_count == 0
        # The single-active rule still holds: nothing else can be claimed
        assert queue.dequeue_next("worker-4194303-new000") is None

    def test_foreign_worker_id_kept_until_heartbeat_expires(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next("render-host-7")
        scanner = RecoveryScanner(store, queue, stale_claim_timeout_s=600)

        assert scanner.recover() == 0
        assert store.require(a.id).claimed_by == "render-host-7"

        store.conn.execute(
            "UPDATE videos SET last_heartbeat = ? WHERE id = ?",
            (to_db_time(utcnow() - timedelta(hours=1)), a.id),
        )
        assert scanner.recover() == 1
        assert store.require(a.id).processing_state == "Queued"

    def test_heartbeat_after_snapshot_wins(self, store, queue):
        a = _add(store, "a.mp4")
        queue.dequeue_next("render-host-7")
        snapshot = store.require(a.id)
        store.conn.execute(
            "UPDATE videos SET last_heartbeat = ? WHERE id = ?",
            (to_db_time(utcnow() + timedelta(seconds=5)), a.id),
        )

        assert store.reset_interrupted([snapshot], include_queued=False) == []
        assert store.require(a.id).claimed_by == "render-host-7"

    def test_claim_owner_pid(self):
        assert claim_owner_pid("worker-1234-abcdef") == 1234
        assert claim_owner_pid("render-host-7") is None
        assert claim_owner_pid(None) is None
