"""Abstract base classes for the queue and processor tracking stores.

The two stores are separate: tracking rows are keyed by the
owning item's identifier and are removed through an explicit
``TrackingStore.delete_for_item`` call rather than an ORM cascade. Neither
store manages transactions; callers wrap each state transition in
``SQLiteDatabase.transaction()`` so multi-store writes commit together.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from .models import ProcessorTracking, QueueItem


class QueueStore(ABC):
    """Persisted queue items.

    Implementations must enforce that at most one item with a live status
    (pending or processing) exists per (subject_id, work_type).
    """

    @abstractmethod
    def insert(self, subject_id: str, work_type: str, created_at: datetime) -> Optional[int]:
        """Insert a pending item.

        Returns:
            New item id, or None if the live-status uniqueness rule rejected it
        """
        pass

    @abstractmethod
    def get(self, item_id: int) -> Optional[QueueItem]:
        pass

    @abstractmethod
    def find_live(self, subject_id: str, work_type: str) -> Optional[QueueItem]:
        """Return the pending/processing item for (subject, type), if any."""
        pass

    @abstractmethod
    def find_live_subjects(self, subject_ids: Iterable[str], work_type: str) -> Set[str]:
        """Return the subset of subject_ids that already have a live item."""
        pass

    @abstractmethod
    def find_pending(self, limit: int, work_type: Optional[str] = None) -> List[QueueItem]:
        """Pending items in FIFO order (created_at, then id)."""
        pass

    @abstractmethod
    def claim(self, item_id: int, started_at: datetime) -> bool:
        """Move pending → processing and bump attempts.

        Returns:
            False if the item was no longer pending
        """
        pass

    @abstractmethod
    def mark_failed(self, item_id: int, error_message: str, failed_at: datetime) -> None:
        pass

    @abstractmethod
    def reset_to_pending(self, item_id: int) -> bool:
        pass

    @abstractmethod
    def delete(self, item_id: int) -> bool:
        pass

    @abstractmethod
    def find_failed(self, limit: int) -> List[QueueItem]:
        """Failed items, most recently failed first."""
        pass

    @abstractmethod
    def find_stuck(self, cutoff: datetime) -> List[QueueItem]:
        """Processing items claimed (or created, if never claimed) before cutoff."""
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def count_pending_by_type(self) -> Dict[str, int]:
        pass


class TrackingStore(ABC):
    """Persisted per-(item, processor) progress rows."""

    @abstractmethod
    def insert_many(
        self, queue_item_id: int, processor_names: List[str], created_at: datetime
    ) -> int:
        """Create one pending row per processor name. Returns rows created."""
        pass

    @abstractmethod
    def get(self, queue_item_id: int, processor_name: str) -> Optional[ProcessorTracking]:
        pass

    @abstractmethod
    def list_for_item(self, queue_item_id: int) -> List[ProcessorTracking]:
        pass

    @abstractmethod
    def mark_processing(self, tracking_id: int) -> None:
        pass

    @abstractmethod
    def mark_completed(self, tracking_id: int, completed_at: datetime) -> None:
        pass

    @abstractmethod
    def mark_failed(self, tracking_id: int, error_message: str, failed_at: datetime) -> None:
        pass

    @abstractmethod
    def count_incomplete(self, queue_item_id: int) -> int:
        """Rows for the item whose status is anything but completed."""
        pass

    @abstractmethod
    def reset_incomplete(self, queue_item_id: int) -> int:
        """Return processing/failed rows to pending. Returns rows changed."""
        pass

    @abstractmethod
    def delete_for_item(self, queue_item_id: int) -> int:
        """Delete every row owned by the item. Returns rows deleted."""
        pass

    @abstractmethod
    def find_failed(self, limit: int) -> List[ProcessorTracking]:
        pass
