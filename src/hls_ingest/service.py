"""Pipeline facade used by the CLI and the HTTP API.

`IngestService` wires the record store, object store, queue, worker, recovery
scanner, version manager and lifecycle manager together from one
PipelineConfig, and exposes the operations callers need.
"""

import logging
import uuid
from typing import BinaryIO, Dict, List, Optional

from .config import resolve_config
from .errors import TransientStorageError
from .lifecycle import LifecycleManager
from .models import PipelineConfig
from .queue.backends import ObjectStore, VideoRecordStore
from .queue.models import DeletedVideoBackup, ProcessingStatus, StateTransition, Video
from .queue.processing import ProcessingQueue
from .queue.recovery import RecoveryScanner
from .queue.sqlite_backend import SQLiteVideoStore
from .queue.worker import TranscodeWorker
from .storage import build_object_store, guess_content_type, local_path_from_uri, safe_filename
from .transcoder import HlsTranscoder
from .versions import VersionManager

logger = logging.getLogger(__name__)


class IngestService:
    """Everything a caller can do with the pipeline.

    Background parts (worker thread, purge scheduler) only run after
    `start()`; everything else works on a stopped service too.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store: Optional[VideoRecordStore] = None,
        objects: Optional[ObjectStore] = None,
        transcoder: Optional[HlsTranscoder] = None,
        clock=None,
    ):
        self.config = config or resolve_config()
        self.store = store or SQLiteVideoStore(
            self.config.database.path, lock_retries=self.config.database.lock_retries
        )
        self.objects = objects or build_object_store(self.config.storage)
        self.transcoder = transcoder or HlsTranscoder.from_config(
            self.config.transcoder, temp_dir=self.config.worker.scratch_dir
        )

        self.queue = ProcessingQueue(self.store)
        self.recovery = RecoveryScanner(
            self.store, self.queue,
            stale_claim_timeout_s=self.config.worker.stale_claim_timeout_s,
        )
        self.versions = VersionManager(self.store)
        lifecycle_kwargs = {"clock": clock} if clock is not None else {}
        self.lifecycle = LifecycleManager(
            self.store, self.objects, self.config.lifecycle, self.config.storage,
            **lifecycle_kwargs,
        )
        self.worker = TranscodeWorker(
            self.store, self.queue, self.objects, self.transcoder,
            storage_config=self.config.storage, worker_config=self.config.worker,
        )
        self._running = False

    # ------------------------------------------------------------------
    # Background lifecycle
    # ------------------------------------------------------------------

    def start(self, worker: bool = True, scheduler: bool = True) -> None:
        """Recover interrupted work, then start the purge scheduler and worker."""
        self.recovery.recover()
        if scheduler:
            self.lifecycle.start_scheduler()
        if worker:
            self.worker.start()
        self._running = True

    def stop(self) -> None:
        self.worker.stop()
        self.lifecycle.stop_scheduler()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def enqueue_upload(
        self,
        tenant: str,
        source_location: str,
        filename: str,
        actor_id: Optional[str] = None,
        replaces_video_id: Optional[str] = None,
        size: int = 0,
        video_id: Optional[str] = None,
    ) -> str:
        """Register an upload and queue it for transcoding. Returns the video id.

        `source_location` is an object key in the tenant's bucket, or a
        file:// URI that the worker stages into the temp upload area.
        """
        local = local_path_from_uri(source_location)
        if local is not None and not size and local.is_file():
            size = local.stat().st_size
        video = self.versions.create_version(
            original_filename=filename,
            source_location=source_location,
            tenant=tenant,
            uploaded_by=actor_id,
            replaces_video_id=replaces_video_id,
            size=size,
            video_id=video_id,
        )
        self.queue.notify()
        return video.id

    def upload_stream(
        self,
        tenant: str,
        stream: BinaryIO,
        filename: str,
        actor_id: Optional[str] = None,
        replaces_video_id: Optional[str] = None,
        size: int = 0,
    ) -> str:
        """Store an incoming file in the temp upload area, then enqueue it."""
        if replaces_video_id:
            # Validate before spending time on the upload
            self.versions.get_chain(replaces_video_id)
        video_id = uuid.uuid4().hex
        key = f"{self.config.storage.temp_prefix}/{video_id}/{safe_filename(filename)}"
        self.objects.put(tenant, key, stream, content_type=guess_content_type(filename))
        try:
            return self.enqueue_upload(tenant, key, filename, actor_id=actor_id,
                                       replaces_video_id=replaces_video_id, size=size,
                                       video_id=video_id)
        except Exception:
            try:
                self.objects.delete(tenant, key)
            except TransientStorageError as e:
                logger.warning("Could not remove staged upload %s/%s: %s", tenant, key, e)
            raise

    def retry(self, video_id: str) -> ProcessingStatus:
        """Re-queue a Failed video (no-op for queued, active or Ready ones)."""
        self.queue.enqueue(video_id)
        return self.queue.status(video_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_video(self, video_id: str) -> Video:
        return self.store.require(video_id)

    def get_processing_status(self, video_id: str) -> ProcessingStatus:
        return self.queue.status(video_id)

    def list_videos(self, tenant: str) -> List[Video]:
        return self.store.list_live(tenant)

    def list_versions(self, version_group_id: str, tenant: Optional[str] = None) -> List[Video]:
        return self.versions.list_versions(version_group_id, tenant)

    def history(self, video_id: str) -> List[StateTransition]:
        self.store.require(video_id)
        return self.store.list_transitions(video_id)

    def queue_stats(self) -> Dict[str, int]:
        return self.queue.stats()

    # ------------------------------------------------------------------
    # Deletion lifecycle
    # ------------------------------------------------------------------

    def soft_delete(self, video_id: str, actor_id: Optional[str] = None) -> DeletedVideoBackup:
        return self.lifecycle.soft_delete(video_id, actor_id)

    def restore(self, video_id: str) -> Video:
        return self.lifecycle.restore(video_id)

    def list_deleted(self, tenant: str) -> List[DeletedVideoBackup]:
        return self.lifecycle.list_deleted(tenant)

    def purge_expired(self) -> int:
        return self.lifecycle.purge_expired()

    def describe(self) -> Dict[str, str]:
        info = {"database": str(self.config.database.path)}
        info.update({f"storage_{k}": v for k, v in self.objects.describe().items()})
        return info
