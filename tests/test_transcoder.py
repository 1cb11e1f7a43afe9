"""Tests for ladder selection, the master manifest and HlsTranscoder error mapping."""

from unittest.mock import MagicMock

import pytest

from hls_ingest.errors import TranscoderFailure
from hls_ingest.ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegResult, SourceInfo
from hls_ingest.models import QualityRung, TranscoderConfig
from hls_ingest.transcoder import HlsTranscoder, build_master_playlist, hls_prefix, select_rungs


@pytest.fixture
def ladder():
    return TranscoderConfig().ladder


class TestSelectRungs:
    def test_never_upscales(self, ladder):
        assert [r.name for r in select_rungs(ladder, 1080)] == ["360p", "720p", "1080p"]

    def test_small_source_gets_smallest_rung(self, ladder):
        assert [r.name for r in select_rungs(ladder, 240)] == ["360p"]

    def test_4k_source_gets_full_ladder(self, ladder):
        assert len(select_rungs(ladder, 2160)) == 4


class TestMasterPlaylist:
    def test_master_lists_each_rung(self, ladder):
        text = build_master_playlist(select_rungs(ladder, 720))
        lines = text.splitlines()

        assert lines[0] == "#EXTM3U"
        assert lines[2] == '#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=640x360,NAME="360p"'
        assert lines[3] == "360p/playlist.m3u8"
        assert lines[5] == "720p/playlist.m3u8"
        assert text.endswith("\n")

    def test_bandwidth_parsing(self):
        assert QualityRung(name="a", width=2, height=2, video_bitrate="2.5M").bandwidth == 2_500_000
        assert QualityRung(name="a", width=2, height=2, video_bitrate="900000").bandwidth == 900_000

    def test_hls_prefix(self):
        assert hls_prefix("/hls/", "abc") == "hls/abc/"


class TestHlsTranscoder:
    def test_probe_error_becomes_failure(self, ladder):
        runner = MagicMock()
        runner.probe.side_effect = RuntimeError("Could not probe x.mp4")
        with pytest.raises(TranscoderFailure):
            HlsTranscoder(runner, ladder).probe("x.mp4")

    def test_probe_audio_only_rejected(self, ladder):
        runner = MagicMock()
        runner.probe.return_value = SourceInfo(width=0, height=0, duration_s=3.0)
        with pytest.raises(TranscoderFailure):
            HlsTranscoder(runner, ladder).probe("x.mp3")

    def test_failed_run_becomes_failure(self, ladder, temp_dir):
        runner = MagicMock()
        runner.transcode_hls_rung.return_value = FfmpegResult(
            success=False, returncode=1, stderr="Invalid data found when processing input\n",
            duration_s=0.1, error_type=FfmpegErrorType.PERMANENT,
        )
        with pytest.raises(TranscoderFailure) as exc_info:
            HlsTranscoder(runner, ladder).transcode_rung("x.mp4", str(temp_dir), ladder[0], 10.0)

        assert exc_info.value.error_type == "permanent"
        assert exc_info.value.returncode == 1
        assert "360p" in str(exc_info.value)

    def test_outputs_listed_playlist_last(self, ladder, temp_dir):
        def fake_run(source, output_dir, rung, expected_duration, progress_callback):
            for i in range(3):
                (temp_dir / f"segment_{i:03d}.ts").write_bytes(b"x")
            (temp_dir / "playlist.m3u8").write_text("#EXTM3U\n")
            progress_callback(FfmpegProgress(current_time_s=5.0, total_duration_s=10.0))
            return FfmpegResult(success=True, returncode=0, stderr="", duration_s=1.0)

        runner = MagicMock()
        runner.transcode_hls_rung.side_effect = fake_run
        fractions = []

        files = HlsTranscoder(runner, ladder).transcode_rung(
            "x.mp4", str(temp_dir), ladder[0], 10.0, on_progress=fractions.append
        )

        assert [f.name for f in files] == [
            "segment_000.ts", "segment_001.ts", "segment_002.ts", "playlist.m3u8",
        ]
        assert fractions == [0.5]

    def test_missing_playlist_is_failure(self, ladder, temp_dir):
        runner = MagicMock()
        runner.transcode_hls_rung.return_value = FfmpegResult(
            success=True, returncode=0, stderr="", duration_s=1.0
        )
        with pytest.raises(TranscoderFailure):
            HlsTranscoder(runner, ladder).transcode_rung("x.mp4", str(temp_dir), ladder[0], 10.0)

    def test_thumbnail_disabled(self, ladder):
        runner = MagicMock()
        transcoder = HlsTranscoder(runner, ladder, thumbnails=False)
        assert transcoder.thumbnail("x.mp4", "t.jpg") is False
        runner.extract_thumbnail.assert_not_called()

    def test_thumbnail_failure_is_false(self, ladder, temp_dir):
        runner = MagicMock()
        runner.extract_thumbnail.return_value = FfmpegResult(
            success=False, returncode=1, stderr="boom", duration_s=0.1,
            error_type=FfmpegErrorType.TRANSIENT,
        )
        assert HlsTranscoder(runner, ladder).thumbnail("x.mp4", str(temp_dir / "t.jpg")) is False

    def test_thumbnail_seek_short_clip(self, ladder, temp_dir):
        runner = MagicMock()
        runner.extract_thumbnail.return_value = FfmpegResult(
            success=True, returncode=0, stderr="", duration_s=0.1
        )
        out = temp_dir / "t.jpg"
        out.write_bytes(b"jpg")

        assert HlsTranscoder(runner, ladder).thumbnail("x.mp4", str(out), duration_s=1.0)
        assert runner.extract_thumbnail.call_args.kwargs["at_s"] == 0.5

    def test_from_config(self):
        config = TranscoderConfig(preset="veryfast", threads=2, segment_duration_s=4)
        transcoder = HlsTranscoder.from_config(config, temp_dir="/tmp/artifacts")
        assert transcoder.runner.preset == "veryfast"
        assert transcoder.runner.segment_duration_s == 4
        assert transcoder.runner.temp_dir == "/tmp/artifacts"
        assert [r.height for r in transcoder.ladder] == sorted(r.height for r in transcoder.ladder)

    def test_cancel_delegates(self, ladder):
        runner = MagicMock()
        transcoder = HlsTranscoder(runner, ladder)
        transcoder.cancel()
        transcoder.reset()
        runner.cancel.assert_called_once()
        runner.reset.assert_called_once()
