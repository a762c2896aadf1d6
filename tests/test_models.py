"""Tests for Pydantic models and validation."""

import pytest
from pydantic import ValidationError

from process_queue.models import AppConfig, LoggingConfig, NotificationConfig, QueueConfig
from process_queue.queue import (
    DispatchSummary,
    ProcessorTracking,
    ProcessResult,
    QueueItem,
    QueueStatus,
    TrackingStatus,
)


def test_queue_config_defaults():
    """Test QueueConfig defaults."""
    config = QueueConfig()
    assert config.db_path == "queue.db"
    assert config.default_limit == 1000
    assert config.bulk_chunk_size == 50
    assert config.lock_retries == 3


def test_queue_config_rejects_zero_page_size():
    """Test page_size must be positive."""
    with pytest.raises(ValidationError) as exc_info:
        QueueConfig(page_size=0)
    assert "page_size" in str(exc_info.value)


def test_notification_config_blank_url_is_none():
    """Test an empty webhook URL disables webhook delivery."""
    assert NotificationConfig(webhook_url="").webhook_url is None


def test_notification_config_rejects_non_http_url():
    with pytest.raises(ValidationError):
        NotificationConfig(webhook_url="chat.example.com/hook")


def test_logging_config_rejects_unknown_level():
    with pytest.raises(ValidationError):
        LoggingConfig(level="TRACE")


def test_app_config_from_dict():
    """Test nested dict construction."""
    config = AppConfig.from_dict({
        "queue": {"db_path": "x.db"},
        "logging": {"format": "json"},
        "processors": ["a.b:C"],
    })
    assert config.queue.db_path == "x.db"
    assert config.logging.format == "json"
    assert config.processors == ["a.b:C"]


def test_merge_cli_overrides_returns_new_instance():
    config = AppConfig()
    merged = config.merge_cli_overrides({"db": "y.db", "processors": ["a.b:C"]})
    assert merged.queue.db_path == "y.db"
    assert merged.processors == ["a.b:C"]
    assert config.queue.db_path == "queue.db"


def test_queue_item_defaults():
    """Test QueueItem starts pending with no attempts."""
    item = QueueItem(work_type="NEW_ITEM", subject_id="42")
    assert item.status == QueueStatus.PENDING.value
    assert item.attempts == 0
    assert item.started_at is None


def test_queue_item_requires_subject():
    with pytest.raises(ValidationError):
        QueueItem(work_type="NEW_ITEM", subject_id="")


def test_tracking_status_from_string():
    row = ProcessorTracking(queue_item_id=1, processor_name="A", status="completed")
    assert row.status == TrackingStatus.COMPLETED.value


def test_process_result_helpers():
    assert ProcessResult.ok().success is True
    failed = ProcessResult.fail("nope")
    assert failed.success is False
    assert failed.error_message == "nope"


def test_dispatch_summary_counters_start_at_zero():
    summary = DispatchSummary()
    assert summary.succeeded == 0
    assert summary.failed == 0
    assert summary.items_retired == 0
