"""Persisted work queue with per-processor fan-out and fan-in completion."""

from .backends import QueueStore, TrackingStore
from .dispatcher import BatchDispatcher
from .models import (
    DispatchSummary,
    ProcessorTracking,
    ProcessResult,
    QueueItem,
    QueueStatus,
    TrackingStatus,
)
from .registry import Processor, ProcessorNotFoundError, ProcessorRegistry, build_registry
from .service import QueueService, TrackingNotFoundError
from .sqlite_backend import SQLiteDatabase, SQLiteQueueStore, SQLiteTrackingStore

__all__ = [
    "QueueStore",
    "TrackingStore",
    "BatchDispatcher",
    "DispatchSummary",
    "ProcessorTracking",
    "ProcessResult",
    "QueueItem",
    "QueueStatus",
    "TrackingStatus",
    "Processor",
    "ProcessorNotFoundError",
    "ProcessorRegistry",
    "build_registry",
    "QueueService",
    "TrackingNotFoundError",
    "SQLiteDatabase",
    "SQLiteQueueStore",
    "SQLiteTrackingStore",
]
