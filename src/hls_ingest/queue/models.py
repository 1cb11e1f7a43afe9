"""Pydantic models for video records and processing state.

This module defines the type-safe models used throughout the queue system.
The `videos` table is the only durable representation of queue membership,
worker progress, version lineage and deletion lifecycle; these models are
its in-memory view.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ProcessingState(str, Enum):
    """Pipeline states with explicit semantics.

    State transitions:
        queued      → uploading    (worker claims the row)
        uploading   → transcoding  (source staged and downloaded)
        transcoding → packaging    (all quality rungs encoded)
        packaging   → ready        (manifest written, hls_ready set)
        *           → failed       (any non-ready state, terminal for the attempt)
        failed      → queued       (explicit retry / re-enqueue)
        uploading|transcoding|packaging → queued   (recovery after a crash)
    """

    QUEUED = "Queued"
    UPLOADING = "Uploading"
    TRANSCODING = "Transcoding"
    PACKAGING = "Packaging"
    READY = "Ready"
    FAILED = "Failed"


ACTIVE_STATES = (
    ProcessingState.UPLOADING.value,
    ProcessingState.TRANSCODING.value,
    ProcessingState.PACKAGING.value,
)
NON_TERMINAL_STATES = (ProcessingState.QUEUED.value,) + ACTIVE_STATES
TERMINAL_STATES = (ProcessingState.READY.value, ProcessingState.FAILED.value)


class WorkflowStatus(str, Enum):
    """Business review status, orthogonal to processing state."""

    DRAFT = "Draft"
    PENDING = "Pending"
    UNDER_REVIEW = "Under Review"
    APPROVED = "Approved"
    CHANGES_NEEDED = "Changes Needed"
    REJECTED = "Rejected"
    POSTED = "Posted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime so that string order equals time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Video(BaseModel):
    """One row per uploaded asset or version."""

    id: str = Field(..., description="Opaque unique identifier (uuid4 hex)")
    bucket: str = Field(..., description="Tenant namespace")
    filename: str = Field(..., description="Original file name")
    object_key: Optional[str] = Field(default=None, description="Source object key (transient)")
    size: int = Field(default=0, ge=0, description="Source size in bytes")
    status: WorkflowStatus = Field(default=WorkflowStatus.PENDING)
    processing_state: ProcessingState = Field(default=ProcessingState.QUEUED)
    progress_percent: int = Field(default=0, ge=0, le=100)
    processing_step: Optional[str] = Field(default=None, description="Display-only sub-step")
    last_error: Optional[str] = Field(default=None)
    attempt_count: int = Field(default=0, ge=0)
    hls_ready: bool = Field(default=False)
    hls_path: Optional[str] = Field(default=None, description="Master manifest key")
    thumbnail_key: Optional[str] = Field(default=None)
    version_group_id: Optional[str] = Field(default=None)
    replaces_video_id: Optional[str] = Field(default=None)
    version_number: int = Field(default=1, ge=1)
    is_active_version: bool = Field(default=True)
    uploaded_by: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = Field(default=None)
    enqueue_seq: Optional[int] = Field(default=None, description="FIFO ticket")
    enqueued_at: Optional[datetime] = Field(default=None)
    claimed_by: Optional[str] = Field(default=None, description="Worker holding the claim")
    claimed_at: Optional[datetime] = Field(default=None)
    last_heartbeat: Optional[datetime] = Field(default=None)
    deleted_at: Optional[datetime] = Field(default=None)
    deleted_by: Optional[str] = Field(default=None)
    purge_at: Optional[datetime] = Field(default=None)

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Video":
        data = dict(row)
        for key in ("created_at", "updated_at", "enqueued_at", "claimed_at",
                    "last_heartbeat", "deleted_at", "purge_at"):
            data[key] = from_db_time(data.get(key))
        if data.get("created_at") is None:
            data.pop("created_at", None)
        data["hls_ready"] = bool(data.get("hls_ready"))
        data["is_active_version"] = bool(data.get("is_active_version", 1))
        data["progress_percent"] = data.get("progress_percent") or 0
        data["attempt_count"] = data.get("attempt_count") or 0
        data["version_number"] = data.get("version_number") or 1
        data["size"] = data.get("size") or 0
        return cls(**data)


class DeletedVideoBackup(BaseModel):
    """Metadata snapshot taken when a video is soft-deleted.

    Serves the "recently deleted" listing without touching the live
    `videos` queries.
    """

    id: str = Field(..., description="Backup identifier")
    video_id: str = Field(..., description="Deleted video id")
    bucket: str
    filename: str
    object_key: Optional[str] = None
    size: int = 0
    status: Optional[str] = None
    hls_path: Optional[str] = None
    thumbnail_key: Optional[str] = None
    version_group_id: Optional[str] = None
    version_number: int = 1
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None
    deleted_at: datetime
    deleted_by: Optional[str] = None
    purge_at: datetime

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeletedVideoBackup":
        data = dict(row)
        for key in ("created_at", "deleted_at", "purge_at"):
            data[key] = from_db_time(data.get(key))
        data["size"] = data.get("size") or 0
        data["version_number"] = data.get("version_number") or 1
        return cls(**data)


class ProcessingStatus(BaseModel):
    """Status snapshot returned to pollers.

    `queue_position` is 0 for the active job (or the next job when idle),
    N for a job with N jobs ahead of it, and None when not queued.
    """

    video_id: str
    processing_state: ProcessingState
    progress_percent: int = Field(default=0, ge=0, le=100)
    queue_position: Optional[int] = Field(default=None)
    last_error: Optional[str] = None
    processing_step: Optional[str] = None
    hls_ready: bool = False
    hls_path: Optional[str] = None
    attempt_count: int = 0

    class Config:
        """Pydantic configuration."""

        use_enum_values = True


class StateTransition(BaseModel):
    """Audit log entry for processing state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    video_id: str = Field(..., description="Video identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
