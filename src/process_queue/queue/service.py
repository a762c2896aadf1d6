"""Queue service: enqueue/dedup, state transitions and the fan-in barrier.

Every mutating method runs inside a single ``SQLiteDatabase.transaction()``
so the status write and any follow-up (fan-out inserts, barrier check,
retirement delete) commit or roll back together.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from .backends import QueueStore, TrackingStore
from .models import ProcessorTracking, QueueItem, QueueStatus, TrackingStatus
from .registry import ProcessorRegistry
from .sqlite_backend import SQLiteDatabase, SQLiteQueueStore, SQLiteTrackingStore

logger = structlog.get_logger()


class TrackingNotFoundError(LookupError):
    """No tracking row for (item, processor): registry and queue disagree."""


class QueueService:
    """Operations on queue items and their processor tracking rows."""

    def __init__(
        self,
        database: SQLiteDatabase,
        registry: ProcessorRegistry,
        bulk_chunk_size: int = 50,
        items: Optional[QueueStore] = None,
        tracking: Optional[TrackingStore] = None,
    ):
        """Initialize service.

        Args:
            database: Shared SQLite handle (both stores use it)
            registry: Processor registry consulted for fan-out at enqueue time
            bulk_chunk_size: Items committed per transaction in enqueue_bulk
            items: Queue item store (default: SQLiteQueueStore on ``database``)
            tracking: Tracking store (default: SQLiteTrackingStore on ``database``)
        """
        self.database = database
        self.registry = registry
        self.bulk_chunk_size = max(1, bulk_chunk_size)
        self.items = items or SQLiteQueueStore(database)
        self.tracking = tracking or SQLiteTrackingStore(database)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, subject_id: Any, work_type: str) -> Optional[QueueItem]:
        """Add a subject to the queue unless it is already queued.

        Returns:
            The new QueueItem, or None if a pending/processing item already
            exists for (subject_id, work_type)
        """
        subject_id = str(subject_id)

        with self.database.transaction():
            if self.items.find_live(subject_id, work_type) is not None:
                return None
            item_id = self._create_item(subject_id, work_type, datetime.now())

        if item_id is None:
            return None

        logger.debug("item_enqueued", item_id=item_id, subject_id=subject_id, work_type=work_type)
        return self.items.get(item_id)

    def enqueue_bulk(self, subject_ids: Iterable[Any], work_type: str) -> int:
        """Enqueue many subjects, skipping those already queued.

        Returns:
            Number of items actually created (after deduplication)
        """
        subjects = list(dict.fromkeys(str(s) for s in subject_ids))
        if not subjects:
            return 0

        existing = self.items.find_live_subjects(subjects, work_type)
        to_create = [s for s in subjects if s not in existing]

        created = 0
        for start in range(0, len(to_create), self.bulk_chunk_size):
            chunk = to_create[start:start + self.bulk_chunk_size]
            with self.database.transaction():
                now = datetime.now()
                for subject_id in chunk:
                    if self._create_item(subject_id, work_type, now) is not None:
                        created += 1

        skipped = len(subjects) - created
        if skipped:
            logger.debug(
                "duplicate_queue_entries_skipped",
                work_type=work_type,
                skipped_count=skipped,
                enqueued_count=created,
            )
        return created

    def _create_item(self, subject_id: str, work_type: str, now: datetime) -> Optional[int]:
        """Insert an item and its fan-out tracking rows. Caller owns the transaction."""
        item_id = self.items.insert(subject_id, work_type, now)
        if item_id is None:
            return None

        names = self.registry.list_processor_names(work_type)
        if not names:
            logger.warning(
                "item_enqueued_without_processors",
                item_id=item_id,
                subject_id=subject_id,
                work_type=work_type,
            )
        self.tracking.insert_many(item_id, names, now)
        return item_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_item(self, item_id: int) -> Optional[QueueItem]:
        return self.items.get(item_id)

    def get_tracking(self, item: QueueItem) -> List[ProcessorTracking]:
        return self.tracking.list_for_item(item.id)

    def get_next_batch(self, limit: int = 100, work_type: Optional[str] = None) -> List[QueueItem]:
        """Pending items, oldest first."""
        return self.items.find_pending(limit, work_type)

    def get_failed_items(self, limit: int = 100) -> List[QueueItem]:
        return self.items.find_failed(limit)

    def get_failed_processors(self, limit: int = 100) -> List[ProcessorTracking]:
        return self.tracking.find_failed(limit)

    def find_stuck_items(self, older_than_s: int = 3600) -> List[QueueItem]:
        """Items in processing longer than the expected horizon.

        Read-only: remediation is a manual operator decision (reset_item or
        delete_item).
        """
        cutoff = datetime.now() - timedelta(seconds=older_than_s)
        return self.items.find_stuck(cutoff)

    def count_pending_by_type(self, work_type: str) -> int:
        return self.items.count_pending_by_type().get(work_type, 0)

    def get_stats(self) -> Dict[str, Any]:
        counts = self.items.count_by_status()
        return {
            "pending": counts[QueueStatus.PENDING.value],
            "processing": counts[QueueStatus.PROCESSING.value],
            "failed": counts[QueueStatus.FAILED.value],
            "total": sum(counts.values()),
            "pending_by_type": self.items.count_pending_by_type(),
        }

    # ------------------------------------------------------------------
    # Item transitions
    # ------------------------------------------------------------------

    def mark_processing(self, item: QueueItem) -> bool:
        """Claim a pending item for this run.

        Returns:
            False if another run already claimed it
        """
        now = datetime.now()
        with self.database.transaction():
            claimed = self.items.claim(item.id, now)

        if claimed:
            item.status = QueueStatus.PROCESSING.value
            item.attempts += 1
            item.started_at = now
        return claimed

    def mark_failed(self, item: QueueItem, error_message: str) -> None:
        now = datetime.now()
        with self.database.transaction():
            self.items.mark_failed(item.id, error_message, now)

        item.status = QueueStatus.FAILED.value
        item.failed_at = now
        item.error_message = error_message

    def reset_item(self, item_id: int) -> bool:
        """Manually return an item to pending, re-arming its unfinished processors.

        Completed tracking rows are kept so their processors are not re-run.

        Raises:
            ValueError: If another live item already exists for the subject
        """
        with self.database.transaction():
            item = self.items.get(item_id)
            if item is None or item.status == QueueStatus.PENDING.value:
                return False

            live = self.items.find_live(item.subject_id, item.work_type)
            if live is not None and live.id != item.id:
                raise ValueError(
                    f"Item {live.id} is already queued for subject {item.subject_id} "
                    f"({item.work_type})"
                )

            self.items.reset_to_pending(item_id)
            rearmed = self.tracking.reset_incomplete(item_id)

        logger.info("item_reset", item_id=item_id, processors_rearmed=rearmed)
        return True

    def delete_item(self, item_id: int) -> bool:
        """Manually delete an item and every tracking row it owns."""
        with self.database.transaction():
            deleted = self._retire(item_id)

        if deleted:
            logger.info("item_deleted", item_id=item_id)
        return deleted

    def _retire(self, item_id: int) -> bool:
        """Delete tracking rows, then the item. Caller owns the transaction."""
        self.tracking.delete_for_item(item_id)
        return self.items.delete(item_id)

    # ------------------------------------------------------------------
    # Processor transitions
    # ------------------------------------------------------------------

    def _require_tracking(self, item: QueueItem, processor_name: str) -> ProcessorTracking:
        row = self.tracking.get(item.id, processor_name)
        if row is None:
            raise TrackingNotFoundError(
                f"No tracking row for processor '{processor_name}' on queue item {item.id}"
            )
        return row

    def get_processor_tracking(
        self, item: QueueItem, processor_name: str
    ) -> Optional[ProcessorTracking]:
        return self.tracking.get(item.id, processor_name)

    def mark_processor_processing(self, item: QueueItem, processor_name: str) -> ProcessorTracking:
        """Mark one processor as running for the item.

        Raises:
            TrackingNotFoundError: If the item has no row for this processor
        """
        with self.database.transaction():
            row = self._require_tracking(item, processor_name)
            self.tracking.mark_processing(row.id)

        row.status = TrackingStatus.PROCESSING.value
        row.attempts += 1
        return row

    def mark_processor_complete(self, item: QueueItem, processor_name: str) -> bool:
        """Complete one processor and evaluate the fan-in barrier.

        The status write, the barrier check and the retirement delete share
        one transaction.

        Returns:
            True if this was the last outstanding processor and the item
            (with its tracking rows) was deleted

        Raises:
            TrackingNotFoundError: If the item has no row for this processor
        """
        with self.database.transaction():
            row = self._require_tracking(item, processor_name)
            self.tracking.mark_completed(row.id, datetime.now())

            if self.tracking.count_incomplete(item.id) > 0:
                return False

            self._retire(item.id)

        logger.debug("item_retired", item_id=item.id, work_type=item.work_type)
        return True

    def mark_processor_failed(self, item: QueueItem, processor_name: str, error_message: str) -> None:
        """Record a processor failure. The item and sibling rows are untouched.

        Raises:
            TrackingNotFoundError: If the item has no row for this processor
        """
        with self.database.transaction():
            row = self._require_tracking(item, processor_name)
            self.tracking.mark_failed(row.id, error_message, datetime.now())
