"""Pydantic models for pipeline configuration."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class DatabaseConfig(BaseModel):
    """Video record store settings."""

    path: str = Field(default="data/hls_ingest.db", description="SQLite database file")
    lock_retries: int = Field(
        default=5, ge=1, description="Attempts when SQLite reports 'database is locked'"
    )


class StorageConfig(BaseModel):
    """Object store settings. Credentials come from the environment."""

    backend: Literal["local", "s3"] = Field(default="local", description="Object store backend")
    local_root: str = Field(default="data/objects", description="Root directory for local backend")
    endpoint_url: Optional[str] = Field(default=None, description="S3-compatible endpoint URL")
    region: str = Field(default="us-east-1", description="S3 region name")
    buckets: List[str] = Field(
        default_factory=list,
        description="Real bucket names; the first one hosts workspace-prefixed tenants",
    )
    max_retries: int = Field(
        default=3, ge=0, description="Retries after the first failed storage call"
    )
    retry_base_delay_s: float = Field(
        default=2.0, ge=0.0, description="First backoff delay; doubles on each retry"
    )
    temp_prefix: str = Field(default="temp-uploads", description="Holding area for raw uploads")
    hls_prefix: str = Field(default="hls", description="Prefix for finished HLS assets")
    thumbnail_prefix: str = Field(default="thumbnails", description="Prefix for poster images")


class QualityRung(BaseModel):
    """One target resolution/bitrate in the HLS ladder."""

    name: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    video_bitrate: str = Field(description="ffmpeg bitrate string, e.g. '2500k'")
    audio_bitrate: str = Field(default="128k")

    @property
    def bandwidth(self) -> int:
        """Advertised BANDWIDTH in bits per second."""
        value = self.video_bitrate.lower()
        if value.endswith("k"):
            return int(float(value[:-1]) * 1000)
        if value.endswith("m"):
            return int(float(value[:-1]) * 1_000_000)
        return int(value)


def _default_ladder() -> List[QualityRung]:
    return [
        QualityRung(name="360p", width=640, height=360, video_bitrate="800k", audio_bitrate="96k"),
        QualityRung(name="720p", width=1280, height=720, video_bitrate="2500k", audio_bitrate="128k"),
        QualityRung(name="1080p", width=1920, height=1080, video_bitrate="5000k", audio_bitrate="192k"),
        QualityRung(name="4k", width=3840, height=2160, video_bitrate="14000k", audio_bitrate="256k"),
    ]


class TranscoderConfig(BaseModel):
    """ffmpeg invocation settings for the HLS ladder."""

    ladder: List[QualityRung] = Field(default_factory=_default_ladder)
    segment_duration_s: int = Field(default=6, gt=0, description="HLS target segment length")
    preset: str = Field(default="ultrafast", description="x264 preset")
    threads: int = Field(default=1, ge=0, description="ffmpeg -threads (0 = ffmpeg decides)")
    global_timeout_s: int = Field(
        default=3600, gt=0, description="Maximum duration of one ffmpeg run in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=300, gt=0, description="Kill ffmpeg if no progress line for N seconds"
    )
    kill_grace_period_s: int = Field(default=5, gt=0, description="SIGTERM to SIGKILL grace")
    save_artifacts_on_failure: bool = Field(default=True)
    ffmpeg_loglevel: str = Field(default="error")
    thumbnails: bool = Field(default=True, description="Generate a poster image per video")

    @field_validator("ladder")
    @classmethod
    def ladder_not_empty(cls, v: List[QualityRung]) -> List[QualityRung]:
        if not v:
            raise ValueError("transcoder.ladder must contain at least one rung")
        return sorted(v, key=lambda rung: rung.height)


class WorkerConfig(BaseModel):
    """Transcode worker loop settings."""

    scratch_dir: Optional[str] = Field(
        default=None, description="Local working directory (None = system temp)"
    )
    poll_interval_s: float = Field(
        default=5.0, gt=0.0, description="Max wait between queue checks when idle"
    )
    heartbeat_interval_s: int = Field(default=30, gt=0)
    stale_claim_timeout_s: int = Field(
        default=600, gt=0, description="Heartbeat age after which a claim counts as abandoned"
    )
    max_job_time_s: float = Field(
        default=3600, gt=0, description="Total time one video may take before it is failed"
    )


class LifecycleConfig(BaseModel):
    """Soft delete / purge settings."""

    retention_days: float = Field(default=3, gt=0, description="Grace window before purge")
    purge_interval_s: int = Field(default=3600, gt=0, description="Purge sweep interval")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s: %(message)s")


class ApiConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, gt=0)


class PipelineConfig(BaseModel):
    """Complete pipeline configuration with validation."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["database"]["path"] = cli_args["db"]
        if cli_args.get("storage_root") is not None:
            config_dict["storage"]["backend"] = "local"
            config_dict["storage"]["local_root"] = cli_args["storage_root"]
        if cli_args.get("retention_days") is not None:
            config_dict["lifecycle"]["retention_days"] = cli_args["retention_days"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)
