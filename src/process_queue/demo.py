"""
Demo processors and an end-to-end demo run.

Registers two processors for the NEW_ITEM work type, enqueues a handful of
subjects into a throwaway database and drains the queue once. The second
processor deliberately fails for every third subject so the run shows both
retirement and partial-failure isolation.
"""

import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from .notifier import LoggingNotifier
from .queue import (
    BatchDispatcher,
    Processor,
    ProcessorRegistry,
    ProcessResult,
    QueueItem,
    QueueService,
    SQLiteDatabase,
)

logger = structlog.get_logger()

DEMO_WORK_TYPE = "NEW_ITEM"


class AnnounceSubjectProcessor(Processor):
    """Logs the subject. Always succeeds."""

    work_type = DEMO_WORK_TYPE
    name = "announce_subject"

    def process(self, item: QueueItem) -> ProcessResult:
        logger.info("subject_announced", subject_id=item.subject_id)
        return ProcessResult.ok()


class IndexSubjectProcessor(Processor):
    """Pretends to index the subject; fails when the subject id is divisible by 3."""

    work_type = DEMO_WORK_TYPE
    name = "index_subject"

    def process(self, item: QueueItem) -> ProcessResult:
        if item.subject_id.isdigit() and int(item.subject_id) % 3 == 0:
            return ProcessResult.fail(f"Index unavailable for subject {item.subject_id}")
        return ProcessResult.ok()


def register_demo_processors(registry: ProcessorRegistry) -> ProcessorRegistry:
    registry.register(AnnounceSubjectProcessor())
    registry.register(IndexSubjectProcessor())
    return registry


def run_demo(n_subjects: int = 6, db_path: Optional[str] = None, echo=print) -> Dict[str, Any]:
    """Enqueue ``n_subjects`` demo subjects and dispatch them once.

    Returns:
        Dictionary with enqueued count, dispatch summary and remaining queue stats
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        path = db_path or str(Path(tmpdir) / "demo_queue.db")
        database = SQLiteDatabase(path)
        try:
            registry = register_demo_processors(ProcessorRegistry())
            registry.freeze()

            service = QueueService(database, registry)
            enqueued = service.enqueue_bulk(range(1, n_subjects + 1), DEMO_WORK_TYPE)

            dispatcher = BatchDispatcher(service, registry, LoggingNotifier(), echo=echo)
            summary = dispatcher.run(limit=n_subjects)

            return {
                "enqueued": enqueued,
                "summary": summary.model_dump(),
                "remaining": service.get_stats(),
            }
        finally:
            database.close()
