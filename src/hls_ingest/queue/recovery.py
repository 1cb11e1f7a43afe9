"""Crash recovery for interrupted transcodes."""

import logging
import os
import re
from datetime import datetime, timedelta
from typing import List, Optional

import psutil

from .backends import VideoRecordStore
from .models import ACTIVE_STATES, Video, utcnow
from .processing import ProcessingQueue

logger = logging.getLogger(__name__)

_WORKER_PID = re.compile(r"^worker-(\d+)-")


def claim_owner_pid(worker_id: Optional[str]) -> Optional[int]:
    """PID encoded in a TranscodeWorker id, or None for foreign ids."""
    match = _WORKER_PID.match(worker_id or "")
    return int(match.group(1)) if match else None


class RecoveryScanner:
    """Puts work abandoned by a previous process back in the queue.

    Runs before the worker starts. Everything it needs is in the `videos`
    table, so running it twice is harmless. A claim held by a worker that
    is still alive (another process on the same database) is never taken.
    """

    def __init__(self, store: VideoRecordStore, queue: ProcessingQueue,
                 stale_claim_timeout_s: int = 600):
        self.store = store
        self.queue = queue
        self.stale_claim_timeout_s = stale_claim_timeout_s

    def recover(self) -> int:
        """Reset abandoned active videos to Queued, keeping FIFO order.

        An active row counts as abandoned when its heartbeat is older than
        stale_claim_timeout_s, when it was claimed by this process, or when
        the claiming process no longer exists.

        Returns:
            Number of videos now waiting in the queue
        """
        cutoff = utcnow() - timedelta(seconds=self.stale_claim_timeout_s)
        abandoned = []
        for video in self.store.list_by_state(ACTIVE_STATES):
            if self._is_abandoned(video, cutoff):
                abandoned.append(video)
            else:
                logger.info("[Recovery] %s still claimed by live worker %s; left alone",
                            video.id, video.claimed_by)

        videos = self.store.reset_interrupted(abandoned, include_queued=True)
        self._report(videos)
        return len(videos)

    def reset_stale_claims(self, timeout_s: Optional[int] = None) -> int:
        """Re-queue active videos whose heartbeat is older than timeout_s.

        For deployments where several processes share one database and a
        crashed peer's claim must be released without a restart.
        """
        cutoff = utcnow() - timedelta(seconds=timeout_s or self.stale_claim_timeout_s)
        stale = [v for v in self.store.list_by_state(ACTIVE_STATES) if _heartbeat_expired(v, cutoff)]
        videos = self.store.reset_interrupted(stale, include_queued=False)
        if videos:
            logger.warning("[Recovery] Reset %d stale claim(s)", len(videos))
            self.queue.notify()
        return len(videos)

    def _is_abandoned(self, video: Video, cutoff: datetime) -> bool:
        if _heartbeat_expired(video, cutoff):
            return True
        pid = claim_owner_pid(video.claimed_by)
        if pid is None:
            # Unknown owner: only the heartbeat can tell
            return False
        if pid == os.getpid():
            return True
        return not psutil.pid_exists(pid)

    def _report(self, videos: List[Video]) -> None:
        if videos:
            logger.info("[Recovery] %d video(s) waiting in queue: %s",
                        len(videos), ", ".join(v.id for v in videos))
            self.queue.notify()


def _heartbeat_expired(video: Video, cutoff: datetime) -> bool:
    return video.last_heartbeat is None or video.last_heartbeat < cutoff
