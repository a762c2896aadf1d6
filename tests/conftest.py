import tempfile
from pathlib import Path

import pytest

from process_queue.notifier import Notifier
from process_queue.queue import (
    Processor,
    ProcessorRegistry,
    ProcessResult,
    QueueService,
    SQLiteDatabase,
)


class RecordingProcessor(Processor):
    """Test processor that records every subject it sees."""

    def __init__(self, work_type, name, fail=False, raises=None, call_log=None):
        self.work_type = work_type
        self.name = name
        self.fail = fail
        self.raises = raises
        self.calls = []
        self.call_log = call_log

    def process(self, item):
        self.calls.append(item.subject_id)
        if self.call_log is not None:
            self.call_log.append((self.name, item.subject_id))
        if self.raises is not None:
            raise self.raises
        if self.fail:
            return ProcessResult.fail(f"{self.name} failed for {item.subject_id}")
        return ProcessResult.ok()


class RecordingNotifier(Notifier):
    def __init__(self):
        self.messages = []
        self.closed = False

    def notify(self, message):
        self.messages.append(message)

    def close(self):
        self.closed = True


class BrokenNotifier(Notifier):
    def notify(self, message):
        raise RuntimeError("webhook unreachable")


@pytest.fixture
def temp_db():
    """Create temporary database path for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield str(Path(tmpdir) / "test_queue.db")


@pytest.fixture
def database(temp_db):
    db = SQLiteDatabase(temp_db)
    yield db
    db.close()


@pytest.fixture
def registry():
    return ProcessorRegistry()


@pytest.fixture
def service(database, registry):
    return QueueService(database, registry)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def two_processors(registry):
    """Processors "A" and "B" registered for NEW_ITEM, in that order."""
    a = RecordingProcessor("NEW_ITEM", "A")
    b = RecordingProcessor("NEW_ITEM", "B")
    registry.register(a)
    registry.register(b)
    return a, b


def count_rows(database, table):
    return database.db[table].count
