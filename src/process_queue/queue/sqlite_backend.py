"""SQLite implementations of QueueStore and TrackingStore.

This module provides the local-first, crash-safe queue storage using:
- sqlite-utils for schema management and row queries
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions so each state transition is atomic
- Exponential backoff retry for database lock handling
- A partial unique index that allows one live item per (subject, work type)
"""

import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import structlog
from sqlite_utils import Database

from .backends import QueueStore, TrackingStore
from .models import LIVE_STATUSES, ProcessorTracking, QueueItem, QueueStatus, TrackingStatus

logger = structlog.get_logger()


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    work_type TEXT NOT NULL,
    subject_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    failed_at TEXT,
    error_message TEXT,
    attempts INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_queue_status_created ON queue_items(status, created_at, id);
CREATE INDEX IF NOT EXISTS idx_queue_work_type ON queue_items(work_type);

-- One live (pending/processing) item per subject and work type
CREATE UNIQUE INDEX IF NOT EXISTS uniq_queue_live_subject_type
    ON queue_items(subject_id, work_type)
    WHERE status IN ('pending', 'processing');

CREATE TABLE IF NOT EXISTS processor_tracking (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_item_id INTEGER NOT NULL,
    processor_name TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    failed_at TEXT,
    error_message TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    UNIQUE(queue_item_id, processor_name),
    FOREIGN KEY(queue_item_id) REFERENCES queue_items(id)
);

CREATE INDEX IF NOT EXISTS idx_tracking_item_status ON processor_tracking(queue_item_id, status);
"""


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteDatabase:
    """Shared SQLite handle for both stores.

    Owns the connection, the schema and the transaction boundary. Every
    write the queue service performs goes through ``transaction()``.
    """

    def __init__(self, db_path: str, lock_retries: int = 3):
        """Open (and create if needed) the queue database.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
            lock_retries: Attempts to acquire the write lock before giving up
        """
        self.db_path = db_path
        self.lock_retries = max(1, lock_retries)

        if db_path == ":memory:":
            self.db = Database(memory=True)
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db = Database(str(path))
            # WAL is not available for in-memory databases
            self.db.conn.execute("PRAGMA journal_mode=WAL")
            self.db.conn.execute("PRAGMA synchronous=NORMAL")

        self.db.conn.execute("PRAGMA foreign_keys=ON")
        self.db.conn.commit()

        self._create_schema()

    def _create_schema(self):
        """Create tables and indexes if they don't exist."""
        self.db.executescript(SCHEMA_SQL)

    @property
    def conn(self) -> sqlite3.Connection:
        return self.db.conn

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        """Run the enclosed writes as one atomic unit.

        Nested use joins the outer transaction. Rolls back on any exception.
        """
        if self.conn.in_transaction:
            yield self.db
            return

        self._begin_immediate()
        try:
            yield self.db
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    def _begin_immediate(self) -> None:
        """Acquire the write lock with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms ...
        """
        for attempt in range(self.lock_retries):
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    logger.debug("database_locked_retry", attempt=attempt + 1)
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise

    def close(self) -> None:
        self.db.conn.close()


class SQLiteQueueStore(QueueStore):
    """queue_items table access."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database
        self.db = database.db

    def _rows(self, sql: str, params: Iterable[Any] = ()) -> List[QueueItem]:
        return [QueueItem(**row) for row in self.db.query(sql, list(params))]

    def insert(self, subject_id: str, work_type: str, created_at: datetime) -> Optional[int]:
        # OR IGNORE: the partial unique index rejects a second live item
        cursor = self.db.execute(
            """
            INSERT OR IGNORE INTO queue_items (work_type, subject_id, status, created_at, attempts)
            VALUES (?, ?, ?, ?, 0)
            """,
            [work_type, subject_id, QueueStatus.PENDING.value, _ts(created_at)],
        )
        if cursor.rowcount != 1:
            return None
        return cursor.lastrowid

    def get(self, item_id: int) -> Optional[QueueItem]:
        rows = self._rows("SELECT * FROM queue_items WHERE id = ?", [item_id])
        return rows[0] if rows else None

    def find_live(self, subject_id: str, work_type: str) -> Optional[QueueItem]:
        rows = self._rows(
            """
            SELECT * FROM queue_items
            WHERE subject_id = ? AND work_type = ? AND status IN (?, ?)
            LIMIT 1
            """,
            [subject_id, work_type, *LIVE_STATUSES],
        )
        return rows[0] if rows else None

    def find_live_subjects(self, subject_ids: Iterable[str], work_type: str) -> Set[str]:
        subject_ids = list(subject_ids)
        if not subject_ids:
            return set()

        placeholders = ", ".join("?" for _ in subject_ids)
        rows = self.db.query(
            f"""
            SELECT subject_id FROM queue_items
            WHERE work_type = ? AND status IN (?, ?) AND subject_id IN ({placeholders})
            """,
            [work_type, *LIVE_STATUSES, *subject_ids],
        )
        return {row["subject_id"] for row in rows}

    def find_pending(self, limit: int, work_type: Optional[str] = None) -> List[QueueItem]:
        if work_type is None:
            return self._rows(
                """
                SELECT * FROM queue_items
                WHERE status = ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                [QueueStatus.PENDING.value, limit],
            )
        return self._rows(
            """
            SELECT * FROM queue_items
            WHERE status = ? AND work_type = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            [QueueStatus.PENDING.value, work_type, limit],
        )

    def claim(self, item_id: int, started_at: datetime) -> bool:
        cursor = self.db.execute(
            """
            UPDATE queue_items
            SET status = ?, attempts = attempts + 1, started_at = ?
            WHERE id = ? AND status = ?
            """,
            [QueueStatus.PROCESSING.value, _ts(started_at), item_id, QueueStatus.PENDING.value],
        )
        return cursor.rowcount == 1

    def mark_failed(self, item_id: int, error_message: str, failed_at: datetime) -> None:
        self.db.execute(
            """
            UPDATE queue_items
            SET status = ?, failed_at = ?, error_message = ?
            WHERE id = ?
            """,
            [QueueStatus.FAILED.value, _ts(failed_at), error_message, item_id],
        )

    def reset_to_pending(self, item_id: int) -> bool:
        cursor = self.db.execute(
            """
            UPDATE queue_items
            SET status = ?, started_at = NULL, failed_at = NULL, error_message = NULL
            WHERE id = ? AND status != ?
            """,
            [QueueStatus.PENDING.value, item_id, QueueStatus.PENDING.value],
        )
        return cursor.rowcount == 1

    def delete(self, item_id: int) -> bool:
        cursor = self.db.execute("DELETE FROM queue_items WHERE id = ?", [item_id])
        return cursor.rowcount == 1

    def find_failed(self, limit: int) -> List[QueueItem]:
        return self._rows(
            """
            SELECT * FROM queue_items
            WHERE status = ?
            ORDER BY failed_at DESC, id DESC
            LIMIT ?
            """,
            [QueueStatus.FAILED.value, limit],
        )

    def find_stuck(self, cutoff: datetime) -> List[QueueItem]:
        return self._rows(
            """
            SELECT * FROM queue_items
            WHERE status = ? AND COALESCE(started_at, created_at) < ?
            ORDER BY COALESCE(started_at, created_at) ASC, id ASC
            """,
            [QueueStatus.PROCESSING.value, _ts(cutoff)],
        )

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        for row in self.db.query(
            "SELECT status, COUNT(*) AS n FROM queue_items GROUP BY status"
        ):
            counts[row["status"]] = row["n"]
        return counts

    def count_pending_by_type(self) -> Dict[str, int]:
        rows = self.db.query(
            """
            SELECT work_type, COUNT(*) AS n FROM queue_items
            WHERE status = ?
            GROUP BY work_type
            ORDER BY work_type
            """,
            [QueueStatus.PENDING.value],
        )
        return {row["work_type"]: row["n"] for row in rows}


class SQLiteTrackingStore(TrackingStore):
    """processor_tracking table access."""

    def __init__(self, database: SQLiteDatabase):
        self.database = database
        self.db = database.db

    def _rows(self, sql: str, params: Iterable[Any] = ()) -> List[ProcessorTracking]:
        return [ProcessorTracking(**row) for row in self.db.query(sql, list(params))]

    def insert_many(
        self, queue_item_id: int, processor_names: List[str], created_at: datetime
    ) -> int:
        if not processor_names:
            return 0
        created = _ts(created_at)
        self.db.conn.executemany(
            """
            INSERT INTO processor_tracking
                (queue_item_id, processor_name, status, created_at, attempts)
            VALUES (?, ?, ?, ?, 0)
            """,
            [
                (queue_item_id, name, TrackingStatus.PENDING.value, created)
                for name in processor_names
            ],
        )
        return len(processor_names)

    def get(self, queue_item_id: int, processor_name: str) -> Optional[ProcessorTracking]:
        rows = self._rows(
            "SELECT * FROM processor_tracking WHERE queue_item_id = ? AND processor_name = ?",
            [queue_item_id, processor_name],
        )
        return rows[0] if rows else None

    def list_for_item(self, queue_item_id: int) -> List[ProcessorTracking]:
        return self._rows(
            "SELECT * FROM processor_tracking WHERE queue_item_id = ? ORDER BY id ASC",
            [queue_item_id],
        )

    def mark_processing(self, tracking_id: int) -> None:
        self.db.execute(
            """
            UPDATE processor_tracking
            SET status = ?, attempts = attempts + 1
            WHERE id = ?
            """,
            [TrackingStatus.PROCESSING.value, tracking_id],
        )

    def mark_completed(self, tracking_id: int, completed_at: datetime) -> None:
        self.db.execute(
            """
            UPDATE processor_tracking
            SET status = ?, completed_at = ?, error_message = NULL
            WHERE id = ?
            """,
            [TrackingStatus.COMPLETED.value, _ts(completed_at), tracking_id],
        )

    def mark_failed(self, tracking_id: int, error_message: str, failed_at: datetime) -> None:
        self.db.execute(
            """
            UPDATE processor_tracking
            SET status = ?, failed_at = ?, error_message = ?
            WHERE id = ?
            """,
            [TrackingStatus.FAILED.value, _ts(failed_at), error_message, tracking_id],
        )

    def count_incomplete(self, queue_item_id: int) -> int:
        rows = list(self.db.query(
            """
            SELECT COUNT(*) AS n FROM processor_tracking
            WHERE queue_item_id = ? AND status != ?
            """,
            [queue_item_id, TrackingStatus.COMPLETED.value],
        ))
        return rows[0]["n"]

    def reset_incomplete(self, queue_item_id: int) -> int:
        cursor = self.db.execute(
            """
            UPDATE processor_tracking
            SET status = ?, failed_at = NULL, error_message = NULL
            WHERE queue_item_id = ? AND status IN (?, ?)
            """,
            [
                TrackingStatus.PENDING.value,
                queue_item_id,
                TrackingStatus.PROCESSING.value,
                TrackingStatus.FAILED.value,
            ],
        )
        return cursor.rowcount

    def delete_for_item(self, queue_item_id: int) -> int:
        cursor = self.db.execute(
            "DELETE FROM processor_tracking WHERE queue_item_id = ?", [queue_item_id]
        )
        return cursor.rowcount

    def find_failed(self, limit: int) -> List[ProcessorTracking]:
        return self._rows(
            """
            SELECT * FROM processor_tracking
            WHERE status = ?
            ORDER BY failed_at DESC, id DESC
            LIMIT ?
            """,
            [TrackingStatus.FAILED.value, limit],
        )
