"""HLS ladder planning and per-rung transcoding.

Wraps FfmpegRunner with the adaptive-bitrate specifics: which rungs to encode
for a given source, how a failed ffmpeg run becomes a TranscoderFailure, and
how the master manifest that ties the rung playlists together is written.
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from .errors import TranscoderFailure
from .ffmpeg_runner import FfmpegProgress, FfmpegRunner, SourceInfo
from .models import QualityRung, TranscoderConfig

logger = logging.getLogger(__name__)

RUNG_PLAYLIST = "playlist.m3u8"
MASTER_PLAYLIST = "master.m3u8"
THUMBNAIL_SIZE = (640, 360)


def select_rungs(ladder: List[QualityRung], source_height: int) -> List[QualityRung]:
    """Rungs no taller than the source, smallest first.

    Never upscales; a source smaller than every rung still gets the
    smallest one so the video is playable.
    """
    ordered = sorted(ladder, key=lambda rung: rung.height)
    chosen = [rung for rung in ordered if rung.height <= source_height]
    return chosen or ordered[:1]


def build_master_playlist(rungs: List[QualityRung]) -> str:
    """Master manifest referencing `<rung>/playlist.m3u8` for each rung."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for rung in rungs:
        lines.append(
            f'#EXT-X-STREAM-INF:BANDWIDTH={rung.bandwidth},'
            f'RESOLUTION={rung.width}x{rung.height},NAME="{rung.name}"'
        )
        lines.append(f"{rung.name}/{RUNG_PLAYLIST}")
    return "\n".join(lines) + "\n"


def hls_prefix(hls_root: str, video_id: str) -> str:
    """Object key prefix holding every HLS artifact of a video."""
    return f"{hls_root.strip('/')}/{video_id}/"


class HlsTranscoder:
    """Encodes a local source file into HLS rungs.

    The object store never sees this class; uploads are the worker's job.
    """

    def __init__(self, runner: FfmpegRunner, ladder: List[QualityRung], thumbnails: bool = True):
        self.runner = runner
        self.ladder = sorted(ladder, key=lambda rung: rung.height)
        self.thumbnails = thumbnails

    @classmethod
    def from_config(cls, config: TranscoderConfig, temp_dir: Optional[str] = None) -> "HlsTranscoder":
        runner = FfmpegRunner(
            global_timeout_s=config.global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            save_artifacts_on_failure=config.save_artifacts_on_failure,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            temp_dir=temp_dir,
            preset=config.preset,
            threads=config.threads,
            segment_duration_s=config.segment_duration_s,
        )
        return cls(runner, config.ladder, thumbnails=config.thumbnails)

    def probe(self, source_path: str) -> SourceInfo:
        try:
            info = self.runner.probe(source_path)
        except RuntimeError as e:
            raise TranscoderFailure(str(e), error_type="permanent") from e
        if info.height <= 0:
            raise TranscoderFailure(
                f"No video stream found in {Path(source_path).name}", error_type="permanent"
            )
        return info

    def plan(self, info: SourceInfo) -> List[QualityRung]:
        return select_rungs(self.ladder, info.height)

    def thumbnail(self, source_path: str, output_path: str, duration_s: float = 0.0) -> bool:
        """Best-effort poster frame. Returns False instead of raising."""
        if not self.thumbnails:
            return False
        # Seek to 1s, or the middle of very short clips
        at_s = 1.0 if duration_s <= 0 or duration_s > 2.0 else duration_s / 2
        result = self.runner.extract_thumbnail(
            source_path, output_path, at_s=at_s,
            width=THUMBNAIL_SIZE[0], height=THUMBNAIL_SIZE[1],
        )
        if not result.success or not Path(output_path).is_file():
            logger.warning("Thumbnail generation failed: %s", result.summary())
            return False
        return True

    def transcode_rung(
        self,
        source_path: str,
        output_dir: str,
        rung: QualityRung,
        duration_s: float,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> List[Path]:
        """Encode one rung; returns the produced files (playlist last).

        Raises:
            TranscoderFailure: ffmpeg failed, timed out, was cancelled, or
                produced no playlist
        """
        def _progress(progress: FfmpegProgress) -> None:
            if on_progress is not None:
                on_progress(progress.fraction)

        logger.info("Transcoding %s (%dx%d @ %s)", rung.name, rung.width, rung.height,
                    rung.video_bitrate)
        result = self.runner.transcode_hls_rung(
            source_path, output_dir, rung,
            expected_duration=duration_s,
            progress_callback=_progress,
        )
        if not result.success:
            raise TranscoderFailure(
                f"{rung.name}: {result.summary()}",
                error_type=result.error_type.value if result.error_type else None,
                returncode=result.returncode,
                stderr_tail=result.stderr[-2000:],
                artifacts=[str(p) for p in result.artifacts_saved],
            )

        out = Path(output_dir)
        playlist = out / RUNG_PLAYLIST
        if not playlist.is_file():
            raise TranscoderFailure(f"{rung.name}: ffmpeg produced no playlist", returncode=0)
        segments = sorted(out.glob("segment_*.ts"))
        return segments + [playlist]

    def cancel(self) -> None:
        self.runner.cancel()

    def reset(self) -> None:
        self.runner.reset()
