"""Durable processing queue: record store, claim, worker and crash recovery."""

from .backends import ObjectStore, VideoRecordStore
from .models import (
    DeletedVideoBackup,
    ProcessingState,
    ProcessingStatus,
    StateTransition,
    Video,
    WorkflowStatus,
)
from .processing import ProcessingQueue
from .recovery import RecoveryScanner
from .sqlite_backend import SQLiteVideoStore

__all__ = [
    "DeletedVideoBackup",
    "ObjectStore",
    "ProcessingQueue",
    "ProcessingState",
    "ProcessingStatus",
    "RecoveryScanner",
    "SQLiteVideoStore",
    "StateTransition",
    "Video",
    "VideoRecordStore",
    "WorkflowStatus",
]
