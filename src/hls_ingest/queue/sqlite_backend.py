"""SQLite implementation of VideoRecordStore.

This module provides the local-first, crash-safe record store using:
- sqlite-utils for schema management and simple reads
- WAL mode for concurrent readers while the worker writes
- BEGIN IMMEDIATE transactions for the atomic claim and every multi-row write
- Exponential backoff retry for database lock handling
- One connection per thread (sqlite3 connections are not shareable)
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlite_utils import Database

from ..errors import InvalidStateTransition, NotFound, truncate_error
from .backends import VideoRecordStore
from .models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    DeletedVideoBackup,
    ProcessingState,
    StateTransition,
    Video,
    to_db_time,
    utcnow,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    bucket TEXT NOT NULL,
    filename TEXT NOT NULL,
    object_key TEXT,
    size INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    processing_state TEXT NOT NULL,
    progress_percent INTEGER NOT NULL DEFAULT 0,
    processing_step TEXT,
    last_error TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    hls_ready INTEGER NOT NULL DEFAULT 0,
    hls_path TEXT,
    thumbnail_key TEXT,
    version_group_id TEXT,
    replaces_video_id TEXT,
    version_number INTEGER NOT NULL DEFAULT 1,
    is_active_version INTEGER NOT NULL DEFAULT 1,
    uploaded_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    enqueue_seq INTEGER,
    enqueued_at TEXT,
    claimed_by TEXT,
    claimed_at TEXT,
    last_heartbeat TEXT,
    deleted_at TEXT,
    deleted_by TEXT,
    purge_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_videos_state_seq ON videos(processing_state, enqueue_seq);
CREATE INDEX IF NOT EXISTS idx_videos_bucket ON videos(bucket, created_at);
CREATE INDEX IF NOT EXISTS idx_videos_group ON videos(version_group_id, version_number);
CREATE INDEX IF NOT EXISTS idx_videos_purge ON videos(deleted_at, purge_at);

-- Snapshot taken at soft delete; serves the "recently deleted" listing
CREATE TABLE IF NOT EXISTS deleted_video_backups (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL UNIQUE,
    bucket TEXT NOT NULL,
    filename TEXT NOT NULL,
    object_key TEXT,
    size INTEGER NOT NULL DEFAULT 0,
    status TEXT,
    hls_path TEXT,
    thumbnail_key TEXT,
    version_group_id TEXT,
    version_number INTEGER NOT NULL DEFAULT 1,
    uploaded_by TEXT,
    created_at TEXT,
    deleted_at TEXT NOT NULL,
    deleted_by TEXT,
    purge_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_backups_bucket ON deleted_video_backups(bucket, deleted_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_video ON state_transitions(video_id, timestamp);
"""

_VIDEO_COLUMNS = tuple(Video.model_fields.keys())
_BACKUP_COLUMNS = tuple(DeletedVideoBackup.model_fields.keys())

_ACTIVE_SQL = ", ".join("'%s'" % s for s in ACTIVE_STATES)
_TERMINAL_SQL = ", ".join("'%s'" % s for s in TERMINAL_STATES)


def _video_to_row(video: Video) -> Dict[str, Any]:
    data = video.model_dump()
    row = {}
    for key in _VIDEO_COLUMNS:
        value = data.get(key)
        if isinstance(value, datetime):
            value = to_db_time(value)
        elif isinstance(value, bool):
            value = int(value)
        elif hasattr(value, "value"):
            value = value.value
        row[key] = value
    return row


def _rows(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
    names = [d[0] for d in cursor.description or ()]
    return [dict(zip(names, r)) for r in cursor.fetchall()]


class SQLiteVideoStore(VideoRecordStore):
    """SQLite-backed video records with atomic claim semantics.

    Features:
    - Atomic claim via UPDATE...RETURNING inside BEGIN IMMEDIATE
    - NOT EXISTS guard so at most one row is ever in an active state
    - Every state-changing UPDATE is guarded by `deleted_at IS NULL`
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so the
      read-check-write inside a transaction cannot interleave with another
      writer (thread or process)
    - Exponential backoff handles transient lock contention
    """

    def __init__(self, db_path: str, lock_retries: int = 5):
        """Initialize the record store.

        Args:
            db_path: Path to SQLite database file
            lock_retries: Attempts to take the write lock before giving up

        Creates schema if database doesn't exist.
        Enables WAL mode for concurrent performance.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_retries = lock_retries
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()

        self.db.conn.execute("PRAGMA journal_mode=WAL")
        self.db.executescript(SCHEMA_SQL)

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to this thread's connection."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path), timeout=30, isolation_level=None, check_same_thread=False
            )
            conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe in WAL
            db = Database(conn)
            self._local.db = db
            with self._conn_lock:
                self._connections.append(conn)
        return db

    @property
    def conn(self) -> sqlite3.Connection:
        return self.db.conn

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock.

        Retry logic: exponential backoff (100ms, 200ms, 400ms, ...) while
        SQLite reports "database is locked" on BEGIN IMMEDIATE.
        """
        conn = self.conn
        for attempt in range(self.lock_retries):
            try:
                conn.execute("BEGIN IMMEDIATE")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        else:
            conn.commit()

    def _fetch(self, conn: sqlite3.Connection, video_id: str) -> Optional[Video]:
        rows = _rows(conn.execute("SELECT * FROM videos WHERE id = ?", (video_id,)))
        return Video.from_row(rows[0]) if rows else None

    def _next_seq(self, conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COALESCE(MAX(enqueue_seq), 0) + 1 FROM videos").fetchone()[0]

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        video_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Log state transition to audit trail (inside the caller's transaction)."""
        conn.execute(
            """
            INSERT INTO state_transitions
                (video_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (video_id, from_state, to_state, to_db_time(utcnow()), worker_id,
             error[:200] if error else None),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, video_id: str) -> Optional[Video]:
        rows = list(self.db["videos"].rows_where("id = ?", [video_id]))
        return Video.from_row(rows[0]) if rows else None

    def require(self, video_id: str) -> Video:
        video = self.get(video_id)
        if video is None:
            raise NotFound(f"Video not found: {video_id}")
        return video

    def list_by_state(self, states: Tuple[str, ...], include_deleted: bool = False) -> List[Video]:
        """Rows in the given processing states, oldest ticket first."""
        where = "processing_state IN (%s)" % ", ".join("?" for _ in states)
        if not include_deleted:
            where += " AND deleted_at IS NULL"
        rows = self.db["videos"].rows_where(
            where, list(states), order_by="enqueue_seq, created_at"
        )
        return [Video.from_row(r) for r in rows]

    def list_all(self) -> List[Video]:
        return [Video.from_row(r) for r in self.db["videos"].rows_where(order_by="created_at")]

    def count_by_state(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in ProcessingState}
        for state, count in self.db.execute(
            "SELECT processing_state, COUNT(*) FROM videos WHERE deleted_at IS NULL "
            "GROUP BY processing_state"
        ).fetchall():
            counts[state] = count
        counts["Deleted"] = self.db["videos"].count_where("deleted_at IS NOT NULL")
        return counts

    def queue_position(self, video: Video) -> Optional[int]:
        state = video.processing_state
        if video.is_deleted:
            return None
        if state in ACTIVE_STATES:
            return 0
        if state != ProcessingState.QUEUED.value:
            return None
        ahead = self.db.execute(
            f"""
            SELECT
                (SELECT COUNT(*) FROM videos
                 WHERE processing_state IN ({_ACTIVE_SQL}) AND deleted_at IS NULL)
              + (SELECT COUNT(*) FROM videos
                 WHERE processing_state = ? AND deleted_at IS NULL AND enqueue_seq < ?)
            """,
            (ProcessingState.QUEUED.value, video.enqueue_seq or 0),
        ).fetchone()[0]
        return ahead

    def list_group(self, version_group_id: str) -> List[Video]:
        rows = self.db["videos"].rows_where(
            "version_group_id = ? AND deleted_at IS NULL",
            [version_group_id],
            order_by="version_number, created_at",
        )
        return [Video.from_row(r) for r in rows]

    def list_live(self, bucket: str) -> List[Video]:
        rows = self.db["videos"].rows_where(
            "bucket = ? AND deleted_at IS NULL AND is_active_version = 1",
            [bucket],
            order_by="created_at desc",
        )
        return [Video.from_row(r) for r in rows]

    def list_transitions(self, video_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where(
            "video_id = ?", [video_id], order_by="id"
        )
        return [StateTransition(**r) for r in rows]

    def list_backups(self, bucket: str, now: datetime) -> List[DeletedVideoBackup]:
        rows = self.db["deleted_video_backups"].rows_where(
            "bucket = ? AND purge_at > ?",
            [bucket, to_db_time(now)],
            order_by="deleted_at desc",
        )
        return [DeletedVideoBackup.from_row(r) for r in rows]

    def list_expired(self, now: datetime) -> List[Video]:
        rows = self.db["videos"].rows_where(
            "deleted_at IS NOT NULL AND purge_at <= ?",
            [to_db_time(now)],
            order_by="purge_at",
        )
        return [Video.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Creation and enqueue
    # ------------------------------------------------------------------

    def insert_video(self, video: Video) -> Video:
        return self.insert_version(video, None)

    def insert_version(self, video: Video, replaces: Optional[Video]) -> Video:
        """Insert a row, optionally superseding `replaces` in the same transaction.

        Raises:
            NotFound: replaced row vanished (purged) before the write lock
            InvalidStateTransition: replaced row was deleted or superseded
                concurrently, or its group id no longer matches
        """
        with self.transaction() as conn:
            if replaces is not None:
                current = self._fetch(conn, replaces.id)
                if current is None:
                    raise NotFound(f"Video not found: {replaces.id}")
                if current.is_deleted:
                    raise InvalidStateTransition(f"Cannot version deleted video {replaces.id}")
                if not current.is_active_version:
                    raise InvalidStateTransition(
                        f"Video {replaces.id} was already superseded by another version"
                    )
                if current.version_group_id is None:
                    conn.execute(
                        "UPDATE videos SET version_group_id = ? "
                        "WHERE id = ? AND version_group_id IS NULL",
                        (video.version_group_id, current.id),
                    )
                elif current.version_group_id != video.version_group_id:
                    raise InvalidStateTransition(
                        f"Version group of {replaces.id} changed concurrently"
                    )
                conn.execute(
                    "UPDATE videos SET is_active_version = 0, updated_at = ? WHERE id = ?",
                    (to_db_time(utcnow()), current.id),
                )

            row = _video_to_row(video)
            if video.processing_state == ProcessingState.QUEUED.value:
                row["enqueue_seq"] = self._next_seq(conn)
                row["enqueued_at"] = row["enqueued_at"] or to_db_time(utcnow())
            columns = ", ".join(row)
            placeholders = ", ".join("?" for _ in row)
            conn.execute(
                f"INSERT INTO videos ({columns}) VALUES ({placeholders})", tuple(row.values())
            )
            self._log_transition(conn, video.id, None, video.processing_state)
            return self._fetch(conn, video.id)

    def enqueue(self, video_id: str, object_key: Optional[str] = None) -> Tuple[Video, bool]:
        """Ensure the row is Queued.

        Idempotency:
        - Queued or active rows: no-op
        - Ready rows: no-op (already processed)
        - Failed rows: re-queued at the back with attempt_count + 1
        - Soft-deleted rows: InvalidStateTransition
        """
        with self.transaction() as conn:
            video = self._fetch(conn, video_id)
            if video is None:
                raise NotFound(f"Video not found: {video_id}")
            if video.is_deleted:
                raise InvalidStateTransition(f"Video {video_id} is deleted")
            if video.processing_state != ProcessingState.FAILED.value:
                return video, False

            now = to_db_time(utcnow())
            conn.execute(
                """
                UPDATE videos
                SET processing_state = ?,
                    enqueue_seq = ?,
                    enqueued_at = ?,
                    updated_at = ?,
                    attempt_count = attempt_count + 1,
                    progress_percent = 0,
                    processing_step = NULL,
                    claimed_by = NULL,
                    claimed_at = NULL,
                    last_heartbeat = NULL,
                    hls_ready = 0,
                    hls_path = NULL,
                    object_key = COALESCE(?, object_key)
                WHERE id = ? AND processing_state = ? AND deleted_at IS NULL
                """,
                (
                    ProcessingState.QUEUED.value,
                    self._next_seq(conn),
                    now,
                    now,
                    object_key,
                    video_id,
                    ProcessingState.FAILED.value,
                ),
            )
            self._log_transition(
                conn, video_id, ProcessingState.FAILED.value, ProcessingState.QUEUED.value
            )
            return self._fetch(conn, video_id), True

    # ------------------------------------------------------------------
    # Worker-side transitions
    # ------------------------------------------------------------------

    def claim_next(self, worker_id: str) -> Optional[Video]:
        """Atomically claim the oldest Queued row and mark it Uploading.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING. The NOT EXISTS guard
        keeps the claim from succeeding while any row is already active.
        """
        with self.transaction() as conn:
            now = to_db_time(utcnow())
            rows = _rows(conn.execute(
                f"""
                UPDATE videos
                SET processing_state = ?,
                    claimed_by = ?,
                    claimed_at = ?,
                    last_heartbeat = ?,
                    updated_at = ?,
                    progress_percent = 0,
                    processing_step = 'claimed',
                    last_error = NULL
                WHERE id = (
                    SELECT id FROM videos
                    WHERE processing_state = ? AND deleted_at IS NULL
                    ORDER BY enqueue_seq ASC
                    LIMIT 1
                )
                AND NOT EXISTS (
                    SELECT 1 FROM videos WHERE processing_state IN ({_ACTIVE_SQL})
                )
                RETURNING *
                """,
                (
                    ProcessingState.UPLOADING.value,
                    worker_id,
                    now,
                    now,
                    now,
                    ProcessingState.QUEUED.value,
                ),
            ))
            if not rows:
                return None
            self._log_transition(
                conn,
                rows[0]["id"],
                ProcessingState.QUEUED.value,
                ProcessingState.UPLOADING.value,
                worker_id=worker_id,
            )
            return Video.from_row(rows[0])

    def advance(self, video_id: str, worker_id: str, to_state: str,
                step: Optional[str] = None) -> bool:
        with self.transaction() as conn:
            current = self._fetch(conn, video_id)
            cursor = conn.execute(
                f"""
                UPDATE videos
                SET processing_state = ?, processing_step = COALESCE(?, processing_step),
                    updated_at = ?
                WHERE id = ? AND claimed_by = ? AND deleted_at IS NULL
                  AND processing_state IN ({_ACTIVE_SQL})
                """,
                (to_state, step, to_db_time(utcnow()), video_id, worker_id),
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(
                conn, video_id, current.processing_state if current else None, to_state,
                worker_id=worker_id,
            )
            return True

    def update_progress(self, video_id: str, worker_id: str, percent: int,
                        step: Optional[str] = None) -> bool:
        percent = max(0, min(100, int(percent)))
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE videos
                SET progress_percent = MAX(progress_percent, ?),
                    processing_step = COALESCE(?, processing_step),
                    updated_at = ?
                WHERE id = ? AND claimed_by = ? AND deleted_at IS NULL
                  AND processing_state IN ({_ACTIVE_SQL})
                """,
                (percent, step, to_db_time(utcnow()), video_id, worker_id),
            )
            return cursor.rowcount == 1

    def set_object_key(self, video_id: str, worker_id: str, object_key: str,
                       size: Optional[int] = None) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE videos SET object_key = ?, size = COALESCE(?, size), updated_at = ? "
                "WHERE id = ? AND claimed_by = ?",
                (object_key, size, to_db_time(utcnow()), video_id, worker_id),
            )

    def set_thumbnail(self, video_id: str, thumbnail_key: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE videos SET thumbnail_key = ?, updated_at = ? WHERE id = ?",
                (thumbnail_key, to_db_time(utcnow()), video_id),
            )

    def clear_source_key(self, video_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE videos SET object_key = NULL, updated_at = ? WHERE id = ?",
                (to_db_time(utcnow()), video_id),
            )

    def mark_ready(self, video_id: str, worker_id: str, hls_path: str) -> bool:
        """The only write that sets hls_ready; it sets Ready in the same statement."""
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE videos
                SET processing_state = ?,
                    hls_ready = 1,
                    hls_path = ?,
                    progress_percent = 100,
                    processing_step = 'ready',
                    claimed_by = NULL,
                    updated_at = ?
                WHERE id = ? AND claimed_by = ? AND deleted_at IS NULL
                  AND processing_state IN ({_ACTIVE_SQL})
                """,
                (ProcessingState.READY.value, hls_path, to_db_time(utcnow()), video_id, worker_id),
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(
                conn, video_id, ProcessingState.PACKAGING.value, ProcessingState.READY.value,
                worker_id=worker_id,
            )
            return True

    def mark_failed(self, video_id: str, worker_id: Optional[str], error: str) -> bool:
        """Record a failed attempt. Error message truncated to 500 chars."""
        error_snippet = truncate_error(error)
        with self.transaction() as conn:
            current = self._fetch(conn, video_id)
            if current is None:
                return False
            claim_sql = "AND claimed_by = ?" if worker_id else ""
            params: Tuple[Any, ...] = (
                ProcessingState.FAILED.value, error_snippet, to_db_time(utcnow()), video_id,
            )
            if worker_id:
                params += (worker_id,)
            cursor = conn.execute(
                f"""
                UPDATE videos
                SET processing_state = ?,
                    last_error = ?,
                    hls_ready = 0,
                    claimed_by = NULL,
                    processing_step = 'failed',
                    updated_at = ?
                WHERE id = ? {claim_sql} AND deleted_at IS NULL
                  AND processing_state NOT IN ({_TERMINAL_SQL})
                """,
                params,
            )
            if cursor.rowcount != 1:
                return False
            self._log_transition(
                conn, video_id, current.processing_state, ProcessingState.FAILED.value,
                worker_id=worker_id, error=error_snippet,
            )
            return True

    def heartbeat(self, video_id: str, worker_id: str) -> None:
        """Only updates while the row is still claimed by this worker."""
        with self.transaction() as conn:
            conn.execute(
                f"""
                UPDATE videos SET last_heartbeat = ?
                WHERE id = ? AND claimed_by = ? AND processing_state IN ({_ACTIVE_SQL})
                """,
                (to_db_time(utcnow()), video_id, worker_id),
            )

    def reset_interrupted(self, abandoned: Sequence[Video] = (),
                          include_queued: bool = True) -> List[Video]:
        """Crash recovery: return abandoned active rows (and Queued rows) to Queued.

        Logic:
        - abandoned: snapshots of active rows the caller judged dead; a row is
          only reset while its claim and heartbeat still match the snapshot,
          so a worker that heartbeats in between keeps its job
        - include_queued: also renumber live Queued rows (boot-time recovery)

        Implementation:
        - Keeps enqueue_seq so the original FIFO order survives
        - Increments attempt_count only for rows that were mid-flight
        - Clears claim, progress and any partial HLS pointer
        """
        with self.transaction() as conn:
            candidates: List[Tuple[Video, bool]] = []
            if include_queued:
                candidates.extend(
                    (Video.from_row(r), False)
                    for r in _rows(conn.execute(
                        "SELECT * FROM videos WHERE processing_state = ? AND deleted_at IS NULL",
                        (ProcessingState.QUEUED.value,),
                    ))
                )
            for snapshot in abandoned:
                current = self._fetch(conn, snapshot.id)
                if (
                    current is None
                    or current.is_deleted
                    or current.processing_state not in ACTIVE_STATES
                    or current.claimed_by != snapshot.claimed_by
                    or to_db_time(current.last_heartbeat) != to_db_time(snapshot.last_heartbeat)
                ):
                    continue
                candidates.append((current, True))
            candidates.sort(key=lambda c: (c[0].enqueue_seq or 0, to_db_time(c[0].created_at)))

            now = to_db_time(utcnow())
            reset = []
            for video, was_active in candidates:
                seq = video.enqueue_seq if video.enqueue_seq is not None else self._next_seq(conn)
                conn.execute(
                    """
                    UPDATE videos
                    SET processing_state = ?,
                        enqueue_seq = ?,
                        claimed_by = NULL,
                        claimed_at = NULL,
                        last_heartbeat = NULL,
                        progress_percent = 0,
                        processing_step = NULL,
                        hls_ready = 0,
                        hls_path = NULL,
                        attempt_count = attempt_count + ?,
                        updated_at = ?
                    WHERE id = ? AND processing_state = ? AND deleted_at IS NULL
                    """,
                    (
                        ProcessingState.QUEUED.value,
                        seq,
                        1 if was_active else 0,
                        now,
                        video.id,
                        video.processing_state,
                    ),
                )
                if was_active:
                    self._log_transition(
                        conn, video.id, video.processing_state, ProcessingState.QUEUED.value,
                        worker_id=video.claimed_by, error="Reset interrupted job (crash recovery)",
                    )
                reset.append(self._fetch(conn, video.id))
            return reset

    # ------------------------------------------------------------------
    # Deletion lifecycle
    # ------------------------------------------------------------------

    def _ancestors(self, conn: sqlite3.Connection, video: Video) -> Iterator[Video]:
        """Rows reached through replaces_video_id, nearest first (cycle-safe)."""
        seen = {video.id}
        current = video
        while current.replaces_video_id and current.replaces_video_id not in seen:
            current = self._fetch(conn, current.replaces_video_id)
            if current is None:
                return
            seen.add(current.id)
            yield current

    def _ancestor_ids(self, conn: sqlite3.Connection, video: Video) -> set:
        return {v.id for v in self._ancestors(conn, video)}

    def _live_ancestor(self, conn: sqlite3.Connection, video: Video) -> Optional[Video]:
        for ancestor in self._ancestors(conn, video):
            if not ancestor.is_deleted:
                return ancestor
        return None

    def _active_head(self, conn: sqlite3.Connection, version_group_id: str,
                     exclude: str) -> Optional[Video]:
        rows = _rows(conn.execute(
            "SELECT * FROM videos WHERE version_group_id = ? AND id != ? "
            "AND deleted_at IS NULL AND is_active_version = 1 "
            "ORDER BY version_number DESC LIMIT 1",
            (version_group_id, exclude),
        ))
        return Video.from_row(rows[0]) if rows else None

    def _set_active_version(self, conn: sqlite3.Connection, active_id: str,
                            previous_id: Optional[str], now: datetime) -> None:
        conn.execute(
            "UPDATE videos SET is_active_version = 1, updated_at = ? WHERE id = ?",
            (to_db_time(now), active_id),
        )
        if previous_id is not None:
            conn.execute(
                "UPDATE videos SET is_active_version = 0, updated_at = ? WHERE id = ?",
                (to_db_time(now), previous_id),
            )

    def soft_delete(self, video_id: str, actor_id: Optional[str], now: datetime,
                    purge_at: datetime) -> DeletedVideoBackup:
        with self.transaction() as conn:
            video = self._fetch(conn, video_id)
            if video is None:
                raise NotFound(f"Video not found: {video_id}")
            if video.is_deleted:
                raise InvalidStateTransition(f"Video {video_id} is already deleted")
            if video.processing_state not in TERMINAL_STATES:
                raise InvalidStateTransition(
                    f"Video {video_id} is {video.processing_state}; "
                    "only Ready or Failed videos can be deleted"
                )

            conn.execute(
                """
                UPDATE videos
                SET deleted_at = ?, deleted_by = ?, purge_at = ?, updated_at = ?
                WHERE id = ? AND deleted_at IS NULL
                """,
                (to_db_time(now), actor_id, to_db_time(purge_at), to_db_time(now), video_id),
            )
            if video.is_active_version:
                # The lineage stays live through the nearest surviving predecessor
                predecessor = self._live_ancestor(conn, video)
                if predecessor is not None:
                    self._set_active_version(conn, predecessor.id, video.id, now)
            backup = DeletedVideoBackup(
                id=uuid.uuid4().hex,
                video_id=video.id,
                bucket=video.bucket,
                filename=video.filename,
                object_key=video.object_key,
                size=video.size,
                status=video.status,
                hls_path=video.hls_path,
                thumbnail_key=video.thumbnail_key,
                version_group_id=video.version_group_id,
                version_number=video.version_number,
                uploaded_by=video.uploaded_by,
                created_at=video.created_at,
                deleted_at=now,
                deleted_by=actor_id,
                purge_at=purge_at,
            )
            data = backup.model_dump()
            values = tuple(
                to_db_time(data[c]) if isinstance(data[c], datetime) else data[c]
                for c in _BACKUP_COLUMNS
            )
            conn.execute(
                "INSERT OR REPLACE INTO deleted_video_backups (%s) VALUES (%s)"
                % (", ".join(_BACKUP_COLUMNS), ", ".join("?" for _ in _BACKUP_COLUMNS)),
                values,
            )
            self._log_transition(
                conn, video_id, video.processing_state, "Deleted", worker_id=actor_id
            )
            return backup

    def restore(self, video_id: str, now: datetime) -> Video:
        with self.transaction() as conn:
            video = self._fetch(conn, video_id)
            if video is None:
                raise NotFound(f"Video not found: {video_id}")
            if not video.is_deleted:
                raise InvalidStateTransition(f"Video {video_id} is not deleted")
            if video.purge_at is not None and now >= video.purge_at:
                raise NotFound(f"Backup for video {video_id} has expired")

            conn.execute(
                """
                UPDATE videos
                SET deleted_at = NULL, deleted_by = NULL, purge_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (to_db_time(now), video_id),
            )
            conn.execute("DELETE FROM deleted_video_backups WHERE video_id = ?", (video_id,))
            if video.version_group_id:
                head = self._active_head(conn, video.version_group_id, exclude=video_id)
                if head is None or head.id in self._ancestor_ids(conn, video):
                    # Take the active flag back from the predecessor promoted at delete
                    self._set_active_version(conn, video_id, head.id if head else None, now)
            self._log_transition(conn, video_id, "Deleted", video.processing_state)
            return self._fetch(conn, video_id)

    def purge_row(self, video_id: str) -> bool:
        """Remove the row, its backup and its audit trail. Storage is the caller's job."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM videos WHERE id = ? AND deleted_at IS NOT NULL", (video_id,)
            )
            if cursor.rowcount != 1:
                return False
            conn.execute("DELETE FROM deleted_video_backups WHERE video_id = ?", (video_id,))
            conn.execute("DELETE FROM state_transitions WHERE video_id = ?", (video_id,))
            return True
