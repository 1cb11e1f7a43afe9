"""Processing queue over the durable `videos` table.

The queue holds no state of its own: membership and order are the Queued
rows ordered by `enqueue_seq`, and "the current job" is whichever row is in
an active state. An in-process Event only shortens the worker's wait.
"""

import logging
import threading
from typing import Dict, Optional

from ..errors import InvalidStateTransition
from .backends import VideoRecordStore
from .models import ProcessingState, ProcessingStatus, Video

logger = logging.getLogger(__name__)


class ProcessingQueue:
    """FIFO queue of videos awaiting transcoding."""

    def __init__(self, store: VideoRecordStore):
        self.store = store
        self._wakeup = threading.Event()

    def enqueue(self, video_id: str, source_location: Optional[str] = None,
                tenant: Optional[str] = None, original_name: Optional[str] = None) -> Video:
        """Add a video to the queue (idempotent).

        Args:
            video_id: Existing video row
            source_location: Optional replacement source key/URI
            tenant: When given, must be the row's bucket
            original_name: When given, must be the row's filename

        Returns:
            The row as persisted after the call

        Raises:
            NotFound: Unknown id
            InvalidStateTransition: Video is soft-deleted, or tenant/original_name
                do not describe this row
        """
        if tenant is not None or original_name is not None:
            self._check_identity(self.store.require(video_id), tenant, original_name)
        video, changed = self.store.enqueue(video_id, object_key=source_location)
        if changed:
            logger.info("[Queue] Re-queued %s (attempt %d)", video_id, video.attempt_count)
        elif video.processing_state == ProcessingState.READY.value:
            logger.info("[Queue] %s is already Ready; not re-queued", video_id)
        else:
            logger.debug("[Queue] %s already %s", video_id, video.processing_state)
        self.notify()
        return video

    def dequeue_next(self, worker_id: str) -> Optional[Video]:
        """Claim the oldest Queued video, or None if empty or a job is active."""
        video = self.store.claim_next(worker_id)
        if video is not None:
            logger.info("[Queue] %s claimed %s (%s)", worker_id, video.id, video.filename)
        return video

    def status(self, video_id: str) -> ProcessingStatus:
        """Snapshot built from the persisted row only."""
        video = self.store.require(video_id)
        return ProcessingStatus(
            video_id=video.id,
            processing_state=video.processing_state,
            progress_percent=video.progress_percent,
            queue_position=self.store.queue_position(video),
            last_error=video.last_error,
            processing_step=video.processing_step,
            hls_ready=video.hls_ready,
            hls_path=video.hls_path,
            attempt_count=video.attempt_count,
        )

    def stats(self) -> Dict[str, int]:
        return self.store.count_by_state()

    def notify(self) -> None:
        self._wakeup.set()

    def wait_for_work(self, timeout: float) -> bool:
        """Block until notified or timeout. Returns True if notified."""
        notified = self._wakeup.wait(timeout)
        self._wakeup.clear()
        return notified

    @staticmethod
    def _check_identity(video: Video, tenant: Optional[str], original_name: Optional[str]) -> None:
        if tenant is not None and tenant != video.bucket:
            raise InvalidStateTransition(f"Video {video.id} does not belong to tenant {tenant}")
        if original_name is not None and original_name != video.filename:
            raise InvalidStateTransition(
                f"Video {video.id} was uploaded as {video.filename!r}, not {original_name!r}"
            )
