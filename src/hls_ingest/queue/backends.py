"""Abstract base classes for the record store and object store.

These abstractions keep the worker, queue and lifecycle code independent of
the concrete backends: SQLite (via sqlite-utils) for records, and either an
S3-compatible service or a local directory for objects.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, BinaryIO, Dict, Iterator, List, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    from .models import DeletedVideoBackup, StateTransition, Video


class VideoRecordStore(ABC):
    """Durable store for video rows, processing state and deletion backups.

    Implementations must provide:
    - Transactional create/read/update keyed by video id
    - An atomic "claim next queued row" primitive
    - Guards so that soft-deleted rows never change processing state
    """

    @abstractmethod
    def get(self, video_id: str) -> Optional["Video"]:
        """Return the row or None."""

    @abstractmethod
    def require(self, video_id: str) -> "Video":
        """Return the row or raise NotFound."""

    @abstractmethod
    def insert_video(self, video: "Video") -> "Video":
        """Insert a new row; Queued rows receive the next enqueue ticket."""

    @abstractmethod
    def insert_version(self, video: "Video", replaces: Optional["Video"]) -> "Video":
        """Insert a new version, linking it to `replaces` atomically.

        Implementation notes:
        - Must re-check that `replaces` is still live and still the active
          version inside the same transaction (compare-and-swap)
        - Must back-fill the group id onto `replaces` only if it has none
        """

    @abstractmethod
    def enqueue(self, video_id: str, object_key: Optional[str] = None) -> Tuple["Video", bool]:
        """Ensure the row is Queued. Returns (row, changed).

        Implementation notes:
        - Queued/active/Ready rows are left untouched (changed=False)
        - Failed rows are re-queued with a fresh ticket
        - Soft-deleted rows raise InvalidStateTransition
        """

    @abstractmethod
    def claim_next(self, worker_id: str) -> Optional["Video"]:
        """Atomically claim the oldest Queued row.

        Implementation notes:
        - MUST be a single atomic statement/transaction (UPDATE...RETURNING)
        - MUST return None while another row is in an active state
        - Sets processing_state=Uploading, claimed_by, claimed_at, last_heartbeat
        """

    @abstractmethod
    def advance(self, video_id: str, worker_id: str, to_state: str,
                step: Optional[str] = None) -> bool:
        """Move a claimed row to the next active state."""

    @abstractmethod
    def update_progress(self, video_id: str, worker_id: str, percent: int,
                        step: Optional[str] = None) -> bool:
        """Raise progress (never lowers it) for a claimed row."""

    @abstractmethod
    def set_object_key(self, video_id: str, worker_id: str, object_key: str,
                       size: Optional[int] = None) -> None:
        """Point the claimed row at its staged source object."""

    @abstractmethod
    def set_thumbnail(self, video_id: str, thumbnail_key: str) -> None:
        """Record the poster image key."""

    @abstractmethod
    def clear_source_key(self, video_id: str) -> None:
        """Forget the source key once the temp object is gone."""

    @abstractmethod
    def mark_ready(self, video_id: str, worker_id: str, hls_path: str) -> bool:
        """Set Ready, hls_ready and hls_path in one update."""

    @abstractmethod
    def mark_failed(self, video_id: str, worker_id: Optional[str], error: str) -> bool:
        """Set Failed with the error message."""

    @abstractmethod
    def heartbeat(self, video_id: str, worker_id: str) -> None:
        """Refresh the claim heartbeat."""

    @abstractmethod
    def reset_interrupted(self, abandoned: Sequence["Video"] = (),
                          include_queued: bool = True) -> List["Video"]:
        """Crash recovery: return abandoned active rows to Queued.

        Implementation notes:
        - Only live (not soft-deleted) rows
        - Preserve enqueue order
        - Skip an abandoned row whose claim or heartbeat changed since the
          caller's snapshot (its worker is alive)
        """

    @abstractmethod
    def queue_position(self, video: "Video") -> Optional[int]:
        """Derived queue position (see ProcessingStatus)."""

    @abstractmethod
    def list_by_state(self, states: Tuple[str, ...], include_deleted: bool = False) -> List["Video"]:
        """Rows in the given processing states, oldest ticket first."""

    @abstractmethod
    def count_by_state(self) -> Dict[str, int]:
        """Live rows per processing state, plus a "Deleted" count."""

    @abstractmethod
    def list_group(self, version_group_id: str) -> List["Video"]:
        """Live rows of a version group, oldest first."""

    @abstractmethod
    def list_live(self, bucket: str) -> List["Video"]:
        """Live active versions of a tenant."""

    @abstractmethod
    def soft_delete(self, video_id: str, actor_id: Optional[str], now: datetime,
                    purge_at: datetime) -> "DeletedVideoBackup":
        """Flag the row deleted and snapshot it into the backup table."""

    @abstractmethod
    def restore(self, video_id: str, now: datetime) -> "Video":
        """Clear deletion fields while now < purge_at."""

    @abstractmethod
    def list_backups(self, bucket: str, now: datetime) -> List["DeletedVideoBackup"]:
        """Recently deleted, not yet expired."""

    @abstractmethod
    def list_expired(self, now: datetime) -> List["Video"]:
        """Deleted rows whose purge_at has passed."""

    @abstractmethod
    def purge_row(self, video_id: str) -> bool:
        """Delete the row and its backup (metadata only)."""

    @abstractmethod
    def list_transitions(self, video_id: str) -> List["StateTransition"]:
        """Audit trail for one video, oldest first."""


class ObjectStore(ABC):
    """Byte storage addressed by (tenant bucket, key)."""

    @abstractmethod
    def put(self, bucket: str, key: str, body: Union[bytes, str, BinaryIO],
            content_type: Optional[str] = None) -> None:
        """Store bytes, a file-like object, or the file at a local path (str)."""

    @abstractmethod
    def get(self, bucket: str, key: str, range_start: Optional[int] = None,
            range_end: Optional[int] = None) -> Iterator[bytes]:
        """Stream object bytes; range bounds are inclusive like HTTP Range."""

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Delete one object. Missing objects are not an error."""

    @abstractmethod
    def list(self, bucket: str, prefix: str) -> List[str]:
        """All keys under prefix."""

    def download_to(self, bucket: str, key: str, path: str) -> int:
        """Write an object to a local file; returns bytes written."""
        written = 0
        with open(path, "wb") as f:
            for chunk in self.get(bucket, key):
                f.write(chunk)
                written += len(chunk)
        return written

    def delete_many(self, bucket: str, keys: Sequence[str]) -> int:
        for key in keys:
            self.delete(bucket, key)
        return len(keys)

    def describe(self) -> Dict[str, str]:
        return {"backend": type(self).__name__}
