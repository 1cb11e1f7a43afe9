"""Transcode worker: claims queued videos and drives them to Ready or Failed.

This module provides the single sequential worker with:
- Atomic claim through the record store (at most one active job system-wide)
- Per-step progress bands written with MAX() so pollers never see regress
- Rung uploads overlapped with the next rung's encode (one uploader thread)
- Heartbeat thread for long-running jobs
- Error classification (transcoder vs storage vs unexpected)
- Graceful shutdown that cancels ffmpeg and leaves the row for recovery
- Per-job time limit: the job is cancelled and marked Failed once it runs too long
"""

import logging
import os
import shutil
import tempfile
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

from tqdm import tqdm

from ..errors import NotFound, TranscoderFailure, TransientStorageError
from ..models import QualityRung, StorageConfig, WorkerConfig
from ..storage import guess_content_type, local_path_from_uri, safe_filename
from ..transcoder import MASTER_PLAYLIST, HlsTranscoder, build_master_playlist, hls_prefix
from .backends import ObjectStore, VideoRecordStore
from .models import ProcessingState, ProcessingStatus, Video
from .processing import ProcessingQueue

logger = logging.getLogger(__name__)

# Progress bands (percent of the whole job)
DOWNLOAD_DONE = 10
THUMBNAIL_DONE = 15
TRANSCODE_START = 15
TRANSCODE_END = 90
ENCODE_SHARE = 0.8  # of each rung's slice; the rest is its upload
MASTER_WRITTEN = 95


class WorkerStopped(Exception):
    """Raised inside a job when stop() was requested."""


class ClaimLost(Exception):
    """The row is no longer claimed by this worker (reset by another process)."""


class JobTimedOut(Exception):
    """Raised at the next checkpoint once the job exceeded max_job_time_s."""


class TranscodeWorker:
    """Sequential worker over a ProcessingQueue.

    One instance per process. `run_forever()` is meant to run on its own
    thread; `stop()` may be called from any other thread.
    """

    def __init__(
        self,
        store: VideoRecordStore,
        queue: ProcessingQueue,
        objects: ObjectStore,
        transcoder: HlsTranscoder,
        storage_config: Optional[StorageConfig] = None,
        worker_config: Optional[WorkerConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.store = store
        self.queue = queue
        self.objects = objects
        self.transcoder = transcoder
        self.storage_config = storage_config or StorageConfig()
        self.config = worker_config or WorkerConfig()
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:6]}"

        self._stop = threading.Event()
        self._expired = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def start(self) -> threading.Thread:
        """Run the loop on a daemon thread."""
        self._stop.clear()
        self.transcoder.reset()
        self._thread = threading.Thread(
            target=self.run_forever, name=f"transcode-{self.worker_id}", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop and cancel the running transcode.

        The interrupted video keeps its active state and claim; the recovery
        scan on next start puts it back in the queue.
        """
        self._stop.set()
        self.transcoder.cancel()
        self.queue.notify()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_forever(self) -> None:
        logger.info("[Worker] %s started", self.worker_id)
        while not self._stop.is_set():
            try:
                if self.run_once():
                    continue
            except Exception:
                # Keep the loop alive; the row (if any) was already recorded
                logger.exception("[Worker] Unexpected error in worker loop")
            self.queue.wait_for_work(self.config.poll_interval_s)
        logger.info("[Worker] %s stopped", self.worker_id)

    def run_once(self) -> bool:
        """Claim and process at most one video. Returns True if one was processed."""
        if self._stop.is_set():
            return False
        video = self.queue.dequeue_next(self.worker_id)
        if video is None:
            return False
        self.process(video)
        return True

    def drain(self, max_jobs: Optional[int] = None, show_progress: bool = True) -> Dict[str, int]:
        """Process queued videos until the queue is empty (CLI helper)."""
        counts = {ProcessingState.READY.value: 0, ProcessingState.FAILED.value: 0}
        pending = self.store.count_by_state().get(ProcessingState.QUEUED.value, 0)
        total = min(pending, max_jobs) if max_jobs is not None else pending

        with tqdm(total=total, desc="Transcoding videos", unit="video",
                  disable=not show_progress) as bar:
            processed = 0
            while not self._stop.is_set() and (max_jobs is None or processed < max_jobs):
                video = self.queue.dequeue_next(self.worker_id)
                if video is None:
                    break
                status = self.process(video)
                counts[status.processing_state] = counts.get(status.processing_state, 0) + 1
                processed += 1
                bar.update(1)
        return counts

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    def process(self, video: Video) -> ProcessingStatus:
        """Drive a claimed video through the pipeline.

        Error handling:
        - TranscoderFailure: Failed, no automatic retry
        - TransientStorageError: Failed after the storage retry policy gave up
        - Stop requested / claim lost: row left untouched for recovery
        - Job ran longer than max_job_time_s: Failed, queue moves on
        - Anything else: Failed with "<Type>: <message>"
        """
        scratch = Path(tempfile.mkdtemp(prefix=f"hls_{video.id[:8]}_", dir=self._scratch_root()))
        heartbeat = _start_heartbeat(self.store, video.id, self.worker_id,
                                     self.config.heartbeat_interval_s)
        self._expired.clear()
        deadline = threading.Timer(self.config.max_job_time_s, self._expire_job, args=(video.id,))
        deadline.daemon = True
        deadline.start()
        started = time.time()
        try:
            self._run_pipeline(video, scratch)
            logger.info("[Worker] %s Ready in %.1fs", video.id, time.time() - started)
        except (WorkerStopped, ClaimLost) as e:
            logger.warning("[Worker] %s interrupted (%s); left for recovery",
                           video.id, type(e).__name__)
        except JobTimedOut:
            self._fail(video, self._timeout_message())
        except TranscoderFailure as e:
            if self._stop.is_set():
                logger.warning("[Worker] %s transcode cancelled by shutdown", video.id)
            elif self._expired.is_set():
                self._fail(video, self._timeout_message())
            else:
                if e.artifacts:
                    logger.error("[Worker] ffmpeg artifacts: %s", ", ".join(e.artifacts))
                self._fail(video, str(e))
        except TransientStorageError as e:
            self._fail(video, f"Storage unavailable: {e}")
        except NotFound as e:
            self._fail(video, f"Source missing: {e}")
        except Exception as e:
            logger.exception("[Worker] %s crashed", video.id)
            self._fail(video, f"{type(e).__name__}: {e}")
        finally:
            deadline.cancel()
            _stop_heartbeat(heartbeat)
            shutil.rmtree(scratch, ignore_errors=True)
            if self._expired.is_set() and not self._stop.is_set():
                # Cancellation was for this job only
                self.transcoder.reset()

        return self.queue.status(video.id)

    def _run_pipeline(self, video: Video, scratch: Path) -> None:
        cfg = self.storage_config

        # Uploading: stage the source and pull it to local scratch
        source_key = self._stage_source(video)
        self._progress(video, 2, "downloading")
        local_source = scratch / ("source" + (Path(video.filename).suffix or ".mp4"))
        self.objects.download_to(video.bucket, source_key, str(local_source))
        self._progress(video, DOWNLOAD_DONE, "downloaded")
        self._check_stop()
        self._advance(video, ProcessingState.TRANSCODING, "probing")

        # Transcoding: probe, thumbnail, rungs
        info = self.transcoder.probe(str(local_source))
        self._thumbnail(video, local_source, scratch, info.duration_s)
        self._progress(video, THUMBNAIL_DONE, "thumbnail")
        self._check_stop()

        rungs = self.transcoder.plan(info)
        logger.info("[Worker] %s source %dx%d %.1fs -> %s", video.id, info.width, info.height,
                    info.duration_s, ", ".join(r.name for r in rungs))
        share = (TRANSCODE_END - TRANSCODE_START) / len(rungs)
        prefix = hls_prefix(cfg.hls_prefix, video.id)

        uploads: List[Future] = []
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="hls-upload") as uploader:
            for index, rung in enumerate(rungs):
                self._check_stop()
                for done in uploads:
                    if done.done():
                        done.result()  # surface an earlier upload failure now

                base = TRANSCODE_START + index * share
                step = f"transcoding_{rung.name}"
                self._progress(video, base, step)
                files = self.transcoder.transcode_rung(
                    str(local_source),
                    str(scratch / rung.name),
                    rung,
                    info.duration_s,
                    on_progress=lambda fraction, base=base, step=step: self._progress(
                        video, base + share * ENCODE_SHARE * fraction, step
                    ),
                )
                self._progress(video, base + share * ENCODE_SHARE, f"uploading_{rung.name}")
                uploads.append(uploader.submit(
                    self._upload_rung, video, prefix, rung, files, base + share
                ))

            self._advance(video, ProcessingState.PACKAGING, "uploading")
            for done in uploads:
                done.result()

        # Packaging: master manifest, then the single Ready write
        self._check_stop()
        self._progress(video, TRANSCODE_END, "finalizing")
        master_key = prefix + MASTER_PLAYLIST
        self.objects.put(video.bucket, master_key, build_master_playlist(rungs).encode("utf-8"),
                         content_type=guess_content_type(master_key))
        self._progress(video, MASTER_WRITTEN, "finalizing")

        if not self.store.mark_ready(video.id, self.worker_id, master_key):
            raise ClaimLost(video.id)

        self._cleanup_source(video, source_key)

    def _stage_source(self, video: Video) -> str:
        """Return the source object key, uploading a local file first if needed."""
        location = video.object_key
        if not location:
            raise NotFound(f"Video {video.id} has no source object")
        local = local_path_from_uri(location)
        if local is None:
            return location

        if not local.is_file():
            raise NotFound(f"Local source not found: {local}")
        key = f"{self.storage_config.temp_prefix}/{video.id}/{safe_filename(video.filename)}"
        self._progress(video, 1, "staging")
        self.objects.put(video.bucket, key, str(local), content_type=guess_content_type(key))
        self.store.set_object_key(video.id, self.worker_id, key, size=local.stat().st_size)
        return key

    def _thumbnail(self, video: Video, source: Path, scratch: Path, duration_s: float) -> None:
        """Best effort; a failure here never fails the job."""
        thumb = scratch / "thumbnail.jpg"
        if not self.transcoder.thumbnail(str(source), str(thumb), duration_s):
            return
        key = f"{self.storage_config.thumbnail_prefix}/{video.id}.jpg"
        try:
            self.objects.put(video.bucket, key, str(thumb), content_type="image/jpeg")
            self.store.set_thumbnail(video.id, key)
        except TransientStorageError as e:
            logger.warning("[Worker] Thumbnail upload failed for %s: %s", video.id, e)

    def _upload_rung(self, video: Video, prefix: str, rung: QualityRung,
                     files: List[Path], done_percent: float) -> None:
        # Segments first, playlist last, so a visible playlist never
        # references a missing segment
        for path in files:
            key = f"{prefix}{rung.name}/{path.name}"
            self.objects.put(video.bucket, key, str(path), content_type=guess_content_type(key))
        self._progress(video, done_percent, None)
        logger.debug("[Worker] Uploaded %d files for %s/%s", len(files), video.id, rung.name)

    def _cleanup_source(self, video: Video, source_key: str) -> None:
        """Delete the staged upload once the video is Ready (failure only logged)."""
        if not source_key.startswith(self.storage_config.temp_prefix.rstrip("/") + "/"):
            return
        try:
            self.objects.delete(video.bucket, source_key)
            self.store.clear_source_key(video.id)
        except TransientStorageError as e:
            logger.warning("[Worker] Could not delete temp source %s: %s", source_key, e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _progress(self, video: Video, percent: float, step: Optional[str]) -> None:
        self.store.update_progress(video.id, self.worker_id, int(percent), step)

    def _advance(self, video: Video, state: ProcessingState, step: str) -> None:
        if not self.store.advance(video.id, self.worker_id, state.value, step):
            raise ClaimLost(video.id)

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise WorkerStopped()
        if self._expired.is_set():
            raise JobTimedOut()

    def _expire_job(self, video_id: str) -> None:
        logger.warning("[Worker] %s exceeded %ss; cancelling", video_id, self.config.max_job_time_s)
        self._expired.set()
        self.transcoder.cancel()

    def _timeout_message(self) -> str:
        return f"Processing timed out after {self.config.max_job_time_s:g}s"

    def _fail(self, video: Video, message: str) -> None:
        logger.error("[Worker] %s failed: %s", video.id, message)
        self.store.mark_failed(video.id, self.worker_id, message)

    def _scratch_root(self) -> Optional[str]:
        if self.config.scratch_dir:
            Path(self.config.scratch_dir).mkdir(parents=True, exist_ok=True)
        return self.config.scratch_dir


def _start_heartbeat(store: VideoRecordStore, video_id: str, worker_id: str,
                     interval_s: int):
    """Start background thread that refreshes the claim heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        while not stop_event.is_set():
            try:
                store.heartbeat(video_id, worker_id)
            except Exception as e:
                # Log but don't crash thread
                logger.warning("Heartbeat failed for %s: %s", video_id, e)

            # Returns early once stop_event is set
            stop_event.wait(interval_s)

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{video_id[:8]}", daemon=True)
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal the heartbeat thread and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
