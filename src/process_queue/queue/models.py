"""Pydantic models for queue data structures.

This module defines the type-safe records shared by the stores, the queue
service and the dispatcher. Rows read from SQLite are validated into these
models; timestamps are stored as ISO-8601 text.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class QueueStatus(str, Enum):
    """Queue item states.

    State transitions:
        pending → processing   (dispatcher claims item)
        processing → deleted   (every tracking row completed)
        processing → failed    (item reached dispatch with no tracking rows)
        processing → pending   (manual operator reset only)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


LIVE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value)


class TrackingStatus(str, Enum):
    """Per-processor progress states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItem(BaseModel):
    """One unit of requested work for a subject."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[int] = Field(default=None, description="Store-assigned identifier")
    work_type: str = Field(..., min_length=1, description="Kind of processing requested")
    subject_id: str = Field(..., min_length=1, description="Entity the work refers to")
    status: QueueStatus = Field(default=QueueStatus.PENDING, description="Current item state")
    created_at: datetime = Field(default_factory=datetime.now, description="Enqueue time")
    started_at: Optional[datetime] = Field(default=None, description="Claim time")
    failed_at: Optional[datetime] = Field(default=None, description="Failure time")
    error_message: Optional[str] = Field(default=None, description="Last error message")
    attempts: int = Field(default=0, ge=0, description="Number of dispatch claims")


class ProcessorTracking(BaseModel):
    """Progress of a single processor against a single queue item."""

    model_config = ConfigDict(use_enum_values=True)

    id: Optional[int] = Field(default=None)
    queue_item_id: int = Field(..., description="Owning queue item")
    processor_name: str = Field(..., min_length=1, description="Processor identity")
    status: TrackingStatus = Field(default=TrackingStatus.PENDING)
    created_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = Field(default=None)
    failed_at: Optional[datetime] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    attempts: int = Field(default=0, ge=0)


class ProcessResult(BaseModel):
    """Outcome returned by ``Processor.process``."""

    success: bool = Field(..., description="True when the processor finished its work")
    error_message: Optional[str] = Field(default=None, description="Failure details")

    @classmethod
    def ok(cls) -> "ProcessResult":
        return cls(success=True)

    @classmethod
    def fail(cls, error_message: str) -> "ProcessResult":
        return cls(success=False, error_message=error_message)


class DispatchSummary(BaseModel):
    """Counters for one dispatcher run.

    ``succeeded`` and ``failed`` count processor invocations, not items,
    since one item may partially succeed.
    """

    items_claimed: int = Field(default=0, ge=0)
    items_retired: int = Field(default=0, ge=0)
    items_skipped: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    duration_s: float = Field(default=0.0, ge=0.0)
