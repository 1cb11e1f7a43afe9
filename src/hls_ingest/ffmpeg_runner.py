"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module provides the FFmpeg orchestration used by the HLS transcoder. It
prevents zombie processes, enforces timeouts, reports progress, supports
cancellation from another thread, and preserves failure artifacts for debugging.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress), checked by a watchdog loop
- Real-time progress parsing from FFmpeg `-progress` output
- Process tree cleanup via psutil
- Explicit cancellation (`cancel()`) for worker shutdown
- Error classification and artifact preservation on failure
"""

import collections
import logging
import os
import re
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional

import imageio_ffmpeg
import psutil

from .models import QualityRung

logger = logging.getLogger(__name__)

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
_PROGRESS_KEY_RE = re.compile(r"^[a-z0-9_]+$")


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Disk I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)
    PROCESS_KILLED = "killed"   # Cancelled by the caller


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # Timestamp of last update

    @property
    def fraction(self) -> float:
        """Completed share of the expected duration, 0.0-1.0."""
        if self.total_duration_s <= 0:
            return 0.0
        return max(0.0, min(1.0, self.current_time_s / self.total_duration_s))


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def summary(self) -> str:
        """One-line failure description for last_error."""
        tail = self.stderr.strip().splitlines()[-3:] if self.stderr else []
        kind = self.error_type.value if self.error_type else "unknown"
        return f"ffmpeg {kind} error (exit {self.returncode}): " + " | ".join(tail)


@dataclass
class SourceInfo:
    """Probed properties of a source video."""
    width: int
    height: int
    duration_s: float
    fps: float = 0.0


class FfmpegRunner:
    """FFmpeg orchestration with timeouts, cancellation and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=3600, no_progress_timeout_s=300)
        >>> result = runner.transcode_hls_rung(
        ...     source_path="input.mp4",
        ...     output_dir="work/720p",
        ...     rung=QualityRung(name="720p", width=1280, height=720, video_bitrate="2500k"),
        ...     expected_duration=42.0,
        ...     progress_callback=lambda p: print(f"{p.fraction:.0%}"),
        ... )
        >>> result.success
        True

    Only one process runs at a time per runner; `cancel()` may be called
    from any thread and terminates the running process tree.
    """

    def __init__(
        self,
        global_timeout_s: int = 3600,
        no_progress_timeout_s: int = 300,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
        preset: str = "ultrafast",
        threads: int = 1,
        segment_duration_s: int = 6,
        progress_interval_s: float = 1.0,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts (None = system temp)
            preset: x264 preset for HLS encodes
            threads: ffmpeg -threads value (keeps the host responsive)
            segment_duration_s: HLS target segment length
            progress_interval_s: Minimum seconds between progress callbacks
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.preset = preset
        self.threads = threads
        self.segment_duration_s = segment_duration_s
        self.progress_interval_s = progress_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._process_lock = threading.Lock()
        self._cancelled = threading.Event()
        self._progress = FfmpegProgress()
        self._stderr_tail: Deque[str] = collections.deque(maxlen=200)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def transcode_hls_rung(
        self,
        source_path: str,
        output_dir: str,
        rung: QualityRung,
        expected_duration: Optional[float] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Encode one quality rung into `<output_dir>/playlist.m3u8` + segments.

        The picture is scaled to fit inside the rung's frame and letterboxed
        so every rung has exactly the advertised resolution.
        """
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        w, h = rung.width, rung.height

        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-vf", f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
                   f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
            "-c:v", "libx264",
            "-preset", self.preset,
            "-threads", str(self.threads),
            "-b:v", rung.video_bitrate,
            "-c:a", "aac",
            "-b:a", rung.audio_bitrate,
            "-hls_time", str(self.segment_duration_s),
            "-hls_list_size", "0",
            "-hls_segment_filename", str(out / "segment_%03d.ts"),
            "-f", "hls",
            "-progress", "pipe:2",  # Progress to stderr
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            str(out / "playlist.m3u8"),
        ]

        return self._run_ffmpeg(
            cmd, expected_duration=expected_duration, progress_callback=progress_callback
        )

    def extract_thumbnail(
        self,
        source_path: str,
        output_path: str,
        at_s: float = 1.0,
        width: int = 640,
        height: int = 360,
    ) -> FfmpegResult:
        """Grab a single frame as a JPEG poster image."""
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-ss", f"{at_s:.3f}",  # Fast seek before input
            "-i", source_path,
            "-frames:v", "1",
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
                   f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
            "-threads", str(self.threads),
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]
        return self._run_ffmpeg(cmd)

    def probe(self, source_path: str) -> SourceInfo:
        """Read frame size and duration from the container.

        Raises:
            RuntimeError: If the file cannot be opened as a video
        """
        try:
            reader = imageio_ffmpeg.read_frames(source_path)
            meta = next(reader)
            reader.close()
        except (OSError, RuntimeError, StopIteration) as e:
            raise RuntimeError(f"Could not probe {source_path}: {e}") from e

        size = meta.get("size") or (0, 0)
        return SourceInfo(
            width=int(size[0]),
            height=int(size[1]),
            duration_s=float(meta.get("duration") or 0.0),
            fps=float(meta.get("fps") or 0.0),
        )

    # ------------------------------------------------------------------
    # Process control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Terminate the running process (if any). Safe to call from any thread."""
        self._cancelled.set()
        with self._process_lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.info("Cancelling ffmpeg pid %s", process.pid)
            self._kill_process_tree(process)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def reset(self) -> None:
        """Clear a previous cancellation so the runner can be reused."""
        self._cancelled.clear()

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        The calling thread acts as the watchdog: it polls the process once a
        second and enforces the global deadline, the no-progress deadline and
        cancellation. A daemon thread drains stderr and parses progress.
        """
        start_time = time.time()
        self._progress = FfmpegProgress(
            total_duration_s=expected_duration or 0.0, last_update=start_time
        )
        self._stderr_tail = collections.deque(maxlen=200)

        if self._cancelled.is_set():
            return FfmpegResult(
                success=False, returncode=-1, stderr="cancelled before start",
                duration_s=0.0, error_type=FfmpegErrorType.PROCESS_KILLED,
                final_progress=self._progress,
            )

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,  # Line buffered for real-time progress
        )
        with self._process_lock:
            self._process = process

        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stderr, progress_callback),
            daemon=True,
        )
        monitor.start()

        error_type: Optional[FfmpegErrorType] = None
        try:
            while True:
                try:
                    returncode = process.wait(timeout=1.0)
                    break
                except subprocess.TimeoutExpired:
                    pass

                now = time.time()
                if self._cancelled.is_set():
                    error_type = FfmpegErrorType.PROCESS_KILLED
                elif now - start_time > self.global_timeout_s:
                    error_type = FfmpegErrorType.TIMEOUT
                    logger.warning("ffmpeg exceeded global timeout (%ss)", self.global_timeout_s)
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    error_type = FfmpegErrorType.TIMEOUT
                    logger.warning(
                        "ffmpeg made no progress for %ss", self.no_progress_timeout_s
                    )
                if error_type is not None:
                    self._kill_process_tree(process)
                    returncode = -1
                    break
        except BaseException:
            # Unexpected error - ensure cleanup
            self._kill_process_tree(process)
            raise
        finally:
            monitor.join(timeout=2)
            with self._process_lock:
                self._process = None

        stderr = "".join(self._stderr_tail)
        if error_type is None and returncode != 0:
            error_type = (
                FfmpegErrorType.PROCESS_KILLED if self._cancelled.is_set()
                else self._classify_error(stderr)
            )

        artifacts: List[Path] = []
        if (returncode != 0 and self.save_artifacts_on_failure
                and error_type != FfmpegErrorType.PROCESS_KILLED):
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            error_type=error_type,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _monitor_progress(
        self,
        stderr_stream,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> None:
        """Parse FFmpeg `-progress` key=value lines and invoke the callback.

        FFmpeg progress format:
            frame=123
            fps=25.00
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        for line in stderr_stream:
            if "=" not in line or line.startswith(" "):
                self._stderr_tail.append(line)
                continue

            key, _, value = line.strip().partition("=")
            if key == "out_time":
                match = _OUT_TIME_RE.match(line.strip())
                if match:
                    h, m, s, frac = match.groups()
                    self._progress.current_time_s = (
                        int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac or 0}")
                    )
                    self._progress.last_update = time.time()
            elif key == "frame" and value.strip().isdigit():
                self._progress.frame = int(value)
                self._progress.last_update = time.time()
            elif key == "fps":
                try:
                    self._progress.fps = float(value)
                except ValueError:
                    pass
            elif key == "speed" and value.strip().endswith("x"):
                try:
                    self._progress.speed = float(value.strip()[:-1])
                except ValueError:
                    pass
            elif key == "progress":
                now = time.time()
                if progress_callback and (
                    value == "end" or now - last_callback >= self.progress_interval_s
                ):
                    last_callback = now
                    try:
                        progress_callback(self._progress)
                    except Exception:
                        # Don't crash monitor thread on callback errors
                        logger.exception("Progress callback error")
            elif not _PROGRESS_KEY_RE.match(key):
                self._stderr_tail.append(line)

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill FFmpeg and all children.

        Kill sequence:
        1. Send SIGTERM to the process tree
        2. Wait grace period (default 5s)
        3. Send SIGKILL to survivors
        """
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        children = parent.children(recursive=True)
        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs([parent] + children, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid %s did not exit after SIGKILL", process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure from its stderr."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # Everything else (I/O errors, disk full, unknown) may succeed on retry
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stderr tail
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        timestamp = f"{time.time():.0f}_{os.getpid()}"

        log_path = temp_dir / f"ffmpeg_error_{timestamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
            artifacts.append(log_path)
        except OSError as e:
            logger.warning("Failed to save error log: %s", e)

        script_path = temp_dir / f"ffmpeg_cmd_{timestamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")
                escaped_cmd = []
                for arg in cmd:
                    if " " in arg or any(c in arg for c in ["$", "`", '"', "\\", "(", ")"]):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)
                f.write(" \\\n  ".join(escaped_cmd) + "\n")
            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError as e:
            logger.warning("Failed to save command script: %s", e)

        return artifacts

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        """Get FFmpeg executable path."""
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg() -> bool:
    """Verify the bundled ffmpeg binary runs."""
    try:
        subprocess.run(
            [FfmpegRunner._get_ffmpeg_exe(), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
