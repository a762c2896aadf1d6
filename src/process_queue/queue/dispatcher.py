"""Batch dispatcher: drains pending queue items through their processors.

One ``run()`` is one scheduled invocation:
- Claims pending items in FIFO order (pending → processing)
- Runs every registered processor for the item's work type, in order
- Records per-processor completion or failure; the queue service retires
  the item once all of its tracking rows are completed
- Reports processor failures through the notifier and keeps going

Items are loaded in pages of ``page_size`` so the working set stays bounded
on large batches. Storage errors (sqlite3.Error) are not caught here: they
abort the run and the next scheduled run picks up whatever is still pending.
"""

import time
from typing import Callable, List, Optional

import structlog
from tqdm import tqdm

from ..notifier import Notifier, safe_notify
from .models import DispatchSummary, ProcessorTracking, ProcessResult, QueueItem, TrackingStatus
from .registry import Processor, ProcessorNotFoundError, ProcessorRegistry
from .service import QueueService, TrackingNotFoundError

logger = structlog.get_logger()


def format_failure_message(item: QueueItem, processor_name: str, error: str) -> str:
    return (
        "**Queue Processor Failed** :warning:\n\n"
        f"**Type:** {item.work_type}\n"
        f"**Processor:** {processor_name}\n"
        f"**Subject:** {item.subject_id} (queue item {item.id})\n"
        f"**Error:** {error}\n"
        f"**Queue Attempts:** {item.attempts}"
    )


def format_configuration_message(item: QueueItem, error: str) -> str:
    return (
        "**Queue Configuration Error** :warning:\n\n"
        f"**Type:** {item.work_type}\n"
        f"**Subject:** {item.subject_id} (queue item {item.id})\n"
        f"**Error:** {error}"
    )


class BatchDispatcher:
    """Sequential, single-threaded queue drain."""

    def __init__(
        self,
        service: QueueService,
        registry: ProcessorRegistry,
        notifier: Optional[Notifier] = None,
        page_size: int = 10,
        echo: Optional[Callable[[str], None]] = None,
    ):
        """Initialize dispatcher.

        Args:
            service: Queue service used for every state transition
            registry: Processors resolved per item work type
            notifier: Failure channel (errors are logged and swallowed)
            page_size: Items loaded per fetch; bounds the in-memory working set
            echo: Line printer for verbose progress output (None = quiet)
        """
        self.service = service
        self.registry = registry
        self.notifier = notifier
        self.page_size = max(1, page_size)
        self.echo = echo
        self._bar: Optional[tqdm] = None

    def run(
        self,
        limit: int = 1000,
        work_type: Optional[str] = None,
        progress: bool = False,
    ) -> DispatchSummary:
        """Process up to ``limit`` pending items.

        Args:
            limit: Maximum number of queue items to claim
            work_type: Only claim items of this work type
            progress: Show a tqdm progress bar

        Returns:
            DispatchSummary with processor success/failure counts
        """
        start_time = time.time()
        summary = DispatchSummary()

        if limit <= 0:
            return summary

        page = self.service.get_next_batch(min(self.page_size, limit), work_type)
        if not page:
            # Empty queue: return silently so frequent scheduled runs stay cheap
            logger.debug("queue_empty", work_type=work_type)
            return summary

        self._say(f"Processing up to {limit} queue items...")

        if progress:
            self._bar = tqdm(
                total=self._expected_total(limit, work_type),
                desc="Processing queue",
                unit="item",
            )

        remaining = limit
        try:
            while page and remaining > 0:
                for item in page:
                    self._dispatch_item(item, summary)
                    remaining -= 1
                    if self._bar is not None:
                        self._bar.update(1)

                if remaining <= 0:
                    break
                page = self._next_page(remaining, work_type)
        finally:
            if self._bar is not None:
                self._bar.close()
                self._bar = None

        summary.duration_s = time.time() - start_time

        logger.info(
            "dispatch_complete",
            items_claimed=summary.items_claimed,
            items_retired=summary.items_retired,
            items_skipped=summary.items_skipped,
            succeeded=summary.succeeded,
            failed=summary.failed,
            duration_s=round(summary.duration_s, 3),
        )
        self._say("")
        self._say(f"Completed: {summary.succeeded} processed, {summary.failed} failed")
        return summary

    def _next_page(self, remaining: int, work_type: Optional[str]) -> List[QueueItem]:
        # Claimed items are no longer pending, so each fetch yields the next FIFO slice
        return self.service.get_next_batch(min(self.page_size, remaining), work_type)

    def _expected_total(self, limit: int, work_type: Optional[str]) -> int:
        if work_type is None:
            pending = self.service.get_stats()["pending"]
        else:
            pending = self.service.count_pending_by_type(work_type)
        return min(limit, pending)

    def _say(self, line: str) -> None:
        if self.echo is None:
            return
        if self._bar is not None:
            tqdm.write(line)
        else:
            self.echo(line)

    def _dispatch_item(self, item: QueueItem, summary: DispatchSummary) -> None:
        if not self.service.mark_processing(item):
            logger.info("item_already_claimed", item_id=item.id, work_type=item.work_type)
            summary.items_skipped += 1
            return

        summary.items_claimed += 1

        try:
            processors = self.registry.get_processors(item.work_type)
        except ProcessorNotFoundError as e:
            # Left in processing: needs a deployment fix, not a data fix
            logger.error(
                "no_processors_registered",
                item_id=item.id,
                work_type=item.work_type,
                error=str(e),
            )
            safe_notify(self.notifier, format_configuration_message(item, str(e)))
            self._say(f"  ✗ No processors for {item.work_type} (item #{item.id})")
            summary.items_skipped += 1
            return

        tracking = self.service.get_tracking(item)
        if not tracking:
            error = (
                f"Queue item {item.id} has no processor tracking rows; it was enqueued "
                f"before any processor was registered for {item.work_type}"
            )
            self.service.mark_failed(item, error)
            logger.error("item_without_tracking_rows", item_id=item.id, work_type=item.work_type)
            safe_notify(self.notifier, format_configuration_message(item, error))
            self._say(f"  ✗ No tracking rows for item #{item.id}, marked failed")
            summary.items_skipped += 1
            return

        completed = {
            row.processor_name for row in tracking if row.status == TrackingStatus.COMPLETED.value
        }

        retired = False
        for processor in processors:
            if processor.name in completed:
                logger.debug("processor_already_completed", item_id=item.id, processor=processor.name)
                continue
            if self._run_processor(item, processor, summary):
                summary.items_retired += 1
                retired = True

        if not retired:
            self._report_orphan_rows(item, tracking)

    def _report_orphan_rows(self, item: QueueItem, tracking: List[ProcessorTracking]) -> None:
        """Report unfinished rows whose processor is no longer registered; they hold the item open."""
        registered = set(self.registry.list_processor_names(item.work_type))
        orphans = [
            row.processor_name
            for row in tracking
            if row.processor_name not in registered
            and row.status != TrackingStatus.COMPLETED.value
        ]
        if not orphans:
            return

        error = (
            f"Tracking rows for unregistered processors block completion: {', '.join(orphans)}"
        )
        logger.error(
            "orphan_tracking_rows",
            item_id=item.id,
            work_type=item.work_type,
            processors=orphans,
        )
        safe_notify(self.notifier, format_configuration_message(item, error))
        self._say(f"  ✗ Unregistered processors {', '.join(orphans)} for item #{item.id}")

    def _run_processor(self, item: QueueItem, processor: Processor, summary: DispatchSummary) -> bool:
        """Run one processor against one item.

        Returns:
            True if completing this processor retired the item
        """
        name = processor.name

        try:
            self.service.mark_processor_processing(item, name)
        except TrackingNotFoundError as e:
            self._tracking_missing(item, name, e, summary)
            return False

        result = self._invoke(processor, item)

        if result.success:
            try:
                retired = self.service.mark_processor_complete(item, name)
            except TrackingNotFoundError as e:
                # Row vanished while the processor ran (e.g. manual delete)
                self._tracking_missing(item, name, e, summary)
                return False
            summary.succeeded += 1
            self._say(f"  ✓ Processed {item.work_type} / {name} for item #{item.id}")
            return retired

        error = result.error_message or "Processor reported failure without a message"
        try:
            self.service.mark_processor_failed(item, name, error)
        except TrackingNotFoundError as e:
            self._tracking_missing(item, name, e, summary)
            return False
        summary.failed += 1

        logger.error(
            "queue_processor_failed",
            item_id=item.id,
            subject_id=item.subject_id,
            work_type=item.work_type,
            processor=name,
            error=error,
        )
        safe_notify(self.notifier, format_failure_message(item, name, error))
        self._say(f"  ✗ Failed {item.work_type} / {name} for item #{item.id}: {error}")
        return False

    def _tracking_missing(
        self, item: QueueItem, name: str, error: TrackingNotFoundError, summary: DispatchSummary
    ) -> None:
        summary.failed += 1
        logger.error(
            "processor_tracking_missing",
            item_id=item.id,
            work_type=item.work_type,
            processor=name,
            error=str(error),
        )
        safe_notify(self.notifier, format_failure_message(item, name, str(error)))
        self._say(f"  ✗ Failed {item.work_type} / {name} for item #{item.id}: {error}")

    def _invoke(self, processor: Processor, item: QueueItem) -> ProcessResult:
        """Call ``process`` and normalize anything it raises into a failure result."""
        try:
            result = processor.process(item)
        except Exception as e:
            logger.exception("processor_raised", item_id=item.id, processor=processor.name)
            return ProcessResult.fail(f"{type(e).__name__}: {e}")

        if not isinstance(result, ProcessResult):
            return ProcessResult.fail(
                f"{type(processor).__name__}.process returned {type(result).__name__}, "
                "expected ProcessResult"
            )
        return result
