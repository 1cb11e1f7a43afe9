"""Soft delete, restore and timed purge.

A deleted video keeps its row (flagged with `deleted_at`/`purge_at`) and gets
a snapshot in `deleted_video_backups` for the recycle-bin listing. Once the
retention window has passed, the purge sweep removes its storage objects and
then its metadata.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .errors import TransientStorageError
from .models import LifecycleConfig, StorageConfig
from .queue.backends import ObjectStore, VideoRecordStore
from .queue.models import DeletedVideoBackup, Video, utcnow
from .transcoder import hls_prefix

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Deletion lifecycle with an injectable clock."""

    def __init__(
        self,
        store: VideoRecordStore,
        objects: ObjectStore,
        config: Optional[LifecycleConfig] = None,
        storage_config: Optional[StorageConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.objects = objects
        self.config = config or LifecycleConfig()
        self.storage_config = storage_config or StorageConfig()
        self.clock = clock

        self._scheduler: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.config.retention_days)

    def soft_delete(self, video_id: str, actor_id: Optional[str] = None) -> DeletedVideoBackup:
        """Move a Ready or Failed video to the recycle bin.

        Raises:
            NotFound: unknown id
            InvalidStateTransition: still processing, or already deleted
        """
        now = self.clock()
        backup = self.store.soft_delete(video_id, actor_id, now, now + self.retention)
        logger.info("Video %s deleted by %s; purge after %s",
                    video_id, actor_id or "unknown", backup.purge_at.isoformat())
        return backup

    def restore(self, video_id: str) -> Video:
        """Bring a deleted video back before its purge time.

        Raises:
            NotFound: unknown id, or the retention window has passed
            InvalidStateTransition: the video is not deleted
        """
        video = self.store.restore(video_id, self.clock())
        logger.info("Video %s restored", video_id)
        return video

    def list_deleted(self, tenant: str) -> List[DeletedVideoBackup]:
        return self.store.list_backups(tenant, self.clock())

    def purge_expired(self) -> int:
        """Purge every deleted video whose retention window has passed.

        Storage objects go first; the rows are removed only when every delete
        succeeded, so a failure leaves the row for the next sweep.

        Returns:
            Number of videos purged
        """
        purged = 0
        for video in self.store.list_expired(self.clock()):
            try:
                removed = self._delete_objects(video)
            except TransientStorageError as e:
                logger.warning("Purge of %s postponed, storage error: %s", video.id, e)
                continue
            if self.store.purge_row(video.id):
                purged += 1
                logger.info("Purged video %s (%d objects)", video.id, removed)
        if purged:
            logger.info("Purge sweep removed %d video(s)", purged)
        return purged

    def _delete_objects(self, video: Video) -> int:
        keys = []
        if video.object_key and not video.object_key.startswith("file://"):
            keys.append(video.object_key)
        keys.extend(self.objects.list(video.bucket, hls_prefix(self.storage_config.hls_prefix, video.id)))
        if video.thumbnail_key:
            keys.append(video.thumbnail_key)
        return self.objects.delete_many(video.bucket, keys)

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def start_scheduler(self, interval_s: Optional[float] = None) -> threading.Thread:
        """Run purge_expired() now and then every interval on a daemon thread."""
        interval = interval_s or self.config.purge_interval_s
        self._stop.clear()

        def loop():
            while not self._stop.is_set():
                try:
                    self.purge_expired()
                except Exception:
                    # Next sweep retries; the thread must survive
                    logger.exception("Purge sweep failed")
                self._stop.wait(interval)

        self._scheduler = threading.Thread(target=loop, name="purge-scheduler", daemon=True)
        self._scheduler.start()
        return self._scheduler

    def stop_scheduler(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._scheduler is not None:
            self._scheduler.join(timeout=timeout)
            self._scheduler = None
