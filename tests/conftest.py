import io
import tempfile
from pathlib import Path

import pytest

from hls_ingest.errors import TranscoderFailure
from hls_ingest.ffmpeg_runner import SourceInfo
from hls_ingest.models import PipelineConfig, TranscoderConfig
from hls_ingest.queue import ProcessingQueue, SQLiteVideoStore
from hls_ingest.service import IngestService
from hls_ingest.storage import LocalObjectStore, RetryingObjectStore
from hls_ingest.transcoder import RUNG_PLAYLIST, select_rungs

CLIP_SIZE = 5_242_880  # 5 MiB


class FakeTranscoder:
    """Stands in for HlsTranscoder: writes tiny HLS files instead of running ffmpeg."""

    def __init__(self, width=1280, height=720, duration_s=12.0, segments=2):
        self.ladder = TranscoderConfig().ladder
        self.thumbnails = True
        self.info = SourceInfo(width=width, height=height, duration_s=duration_s, fps=30.0)
        self.segments = segments
        self.fail_on = None          # rung name that raises TranscoderFailure
        self.fail_probe = False
        self.on_rung = None          # hook called before each rung is encoded
        self.encoded = []
        self.cancelled = False

    def probe(self, source_path):
        if self.fail_probe:
            raise TranscoderFailure("Could not probe source", error_type="permanent")
        return self.info

    def plan(self, info):
        return select_rungs(self.ladder, info.height)

    def thumbnail(self, source_path, output_path, duration_s=0.0):
        Path(output_path).write_bytes(b"\xff\xd8jpeg")
        return True

    def transcode_rung(self, source_path, output_dir, rung, duration_s, on_progress=None):
        if self.on_rung is not None:
            self.on_rung(rung)
        if self.fail_on == rung.name:
            raise TranscoderFailure(f"{rung.name}: ffmpeg permanent error (exit 1): bad input",
                                    error_type="permanent", returncode=1)
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        files = []
        for i in range(self.segments):
            seg = out / f"segment_{i:03d}.ts"
            seg.write_bytes(b"ts" * 100)
            files.append(seg)
        playlist = out / RUNG_PLAYLIST
        playlist.write_text("#EXTM3U\n" + "".join(f"segment_{i:03d}.ts\n" for i in range(self.segments)))
        if on_progress is not None:
            on_progress(0.5)
            on_progress(1.0)
        self.encoded.append(rung.name)
        return files + [playlist]

    def cancel(self):
        self.cancelled = True

    def reset(self):
        self.cancelled = False


@pytest.fixture
def temp_dir():
    """Temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """SQLiteVideoStore on a fresh database."""
    s = SQLiteVideoStore(str(temp_dir / "videos.db"))
    yield s
    s.close()


@pytest.fixture
def queue(store):
    return ProcessingQueue(store)


@pytest.fixture
def objects(temp_dir):
    """Local object store wrapped in the retry policy (no real sleeping)."""
    return RetryingObjectStore(LocalObjectStore(temp_dir / "objects"), sleep=lambda s: None)


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def config(temp_dir):
    return PipelineConfig.from_dict({
        "database": {"path": str(temp_dir / "videos.db")},
        "storage": {"backend": "local", "local_root": str(temp_dir / "objects")},
        "worker": {"scratch_dir": str(temp_dir / "scratch"), "poll_interval_s": 0.1},
    })


@pytest.fixture
def service(config, store, objects, transcoder):
    """IngestService with the fake transcoder; background threads not started."""
    svc = IngestService(config, store=store, objects=objects, transcoder=transcoder)
    yield svc
    svc.stop()


@pytest.fixture
def clip():
    """In-memory 5 MiB upload body."""
    return io.BytesIO(b"\x00" * CLIP_SIZE)
