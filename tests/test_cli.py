from unittest.mock import patch

import pytest

from process_queue.cli import main

from conftest import RecordingNotifier

DEMO_PROCESSORS = (
    "processors:\n"
    "  - process_queue.demo:AnnounceSubjectProcessor\n"
    "  - process_queue.demo:IndexSubjectProcessor\n"
)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "queue.yaml"
    path.write_text(DEMO_PROCESSORS)
    return str(path)


def run_cli(*args):
    with patch("sys.argv", ["process-queue", *args]):
        main()


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["process-queue", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_process_help():
    """Test process subcommand help."""
    with patch("sys.argv", ["process-queue", "process", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    run_cli()
    captured = capsys.readouterr()
    assert "usage:" in captured.out.lower()


def test_cli_process_empty_queue(temp_db, capsys):
    """Test an empty queue exits cleanly and prints nothing."""
    run_cli("process", "--db", temp_db, "--verbose")
    captured = capsys.readouterr()
    assert captured.out == ""


def test_cli_enqueue_without_processors(temp_db, capsys):
    """Test enqueue refuses a type with no processors."""
    with pytest.raises(SystemExit) as exc_info:
        run_cli("enqueue", "NEW_ITEM", "1", "--db", temp_db)
    assert exc_info.value.code == 1
    captured = capsys.readouterr()
    assert "No processors registered for type: NEW_ITEM" in captured.out


def test_cli_enqueue_unknown_type_lists_available(temp_db, config_file, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("enqueue", "GHOST", "1", "--db", temp_db, "--config", config_file)
    assert exc_info.value.code == 1
    assert "Available types: NEW_ITEM" in capsys.readouterr().out


def test_cli_enqueue_then_process(temp_db, config_file, capsys):
    """Test enqueue dedup and a verbose process run."""
    run_cli("enqueue", "NEW_ITEM", "1", "2", "3", "3", "--db", temp_db, "--config", config_file)
    out = capsys.readouterr().out
    assert "Enqueued:             3" in out
    assert "Already queued:       1" in out

    run_cli("process", "-v", "--db", temp_db, "--config", config_file)
    out = capsys.readouterr().out
    assert "Processing up to 1000 queue items..." in out
    assert "✓ Processed NEW_ITEM / announce_subject for item #1" in out
    assert "✗ Failed NEW_ITEM / index_subject for item #3" in out
    assert "Completed: 5 processed, 1 failed" in out

    run_cli("status", "--db", temp_db, "--config", config_file)
    out = capsys.readouterr().out
    assert "Processing:           1" in out
    assert "Total:                1" in out

    run_cli("failed", "--db", temp_db, "--config", config_file)
    out = capsys.readouterr().out
    assert "index_subject" in out
    assert "Index unavailable for subject 3" in out


def test_cli_enqueue_from_file(temp_db, config_file, tmp_path, capsys):
    subjects = tmp_path / "subjects.txt"
    subjects.write_text("# new items\n10\n11\n\n12\n")

    run_cli("enqueue", "NEW_ITEM", "--file", str(subjects), "--db", temp_db, "--config", config_file)

    assert "Enqueued:             3" in capsys.readouterr().out


def test_cli_process_respects_limit(temp_db, config_file, capsys):
    run_cli("enqueue", "NEW_ITEM", "1", "2", "4", "--db", temp_db, "--config", config_file)
    run_cli("process", "--limit", "2", "--db", temp_db, "--config", config_file)
    capsys.readouterr()

    run_cli("status", "--db", temp_db, "--config", config_file)
    assert "Pending:              1" in capsys.readouterr().out


def test_cli_processors(config_file, temp_db, capsys):
    run_cli("processors", "--db", temp_db, "--config", config_file)
    assert "NEW_ITEM: announce_subject, index_subject" in capsys.readouterr().out


def test_cli_stuck_empty(temp_db, capsys):
    run_cli("stuck", "--db", temp_db, "--older-than", "60")
    out = capsys.readouterr().out
    assert "ITEMS PROCESSING LONGER THAN 60s" in out
    assert "None" in out


def test_cli_reset_missing_item(temp_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("reset", "99", "--db", temp_db)
    assert exc_info.value.code == 1
    assert "not found" in capsys.readouterr().out


def test_cli_delete_missing_item(temp_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("delete", "99", "--db", temp_db)
    assert exc_info.value.code == 1


def test_cli_reset_failed_processor_item(temp_db, config_file, capsys):
    run_cli("enqueue", "NEW_ITEM", "3", "--db", temp_db, "--config", config_file)
    run_cli("process", "--db", temp_db, "--config", config_file)
    capsys.readouterr()

    run_cli("reset", "1", "--db", temp_db, "--config", config_file)

    assert "Item 1 reset to pending" in capsys.readouterr().out


def test_cli_invalid_processor_path(temp_db, tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("processors:\n  - process_queue.demo:NoSuchProcessor\n")

    with pytest.raises(SystemExit) as exc_info:
        run_cli("status", "--db", temp_db, "--config", str(bad))
    assert exc_info.value.code == 1


def test_cli_invalid_limit(temp_db, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run_cli("process", "--limit", "0", "--db", temp_db)
    assert exc_info.value.code == 1
    assert "Invalid configuration" in capsys.readouterr().out


def test_cli_demo(capsys):
    """Test demo runs end to end against a throwaway database."""
    run_cli("demo", "--subjects", "6")
    out = capsys.readouterr().out
    assert "DEMO SUMMARY" in out
    assert "Enqueued:             6" in out
    assert "Processors failed:    2" in out
    assert "Items retired:        4" in out
    assert "Items remaining:      2" in out


def test_cli_stuck_zero_horizon(temp_db, config_file, capsys):
    """Test --older-than 0 reports every processing item instead of using the default."""
    run_cli("enqueue", "NEW_ITEM", "3", "--db", temp_db, "--config", config_file)
    run_cli("process", "--db", temp_db, "--config", config_file)
    capsys.readouterr()

    run_cli("stuck", "--older-than", "0", "--db", temp_db, "--config", config_file)

    out = capsys.readouterr().out
    assert "ITEMS PROCESSING LONGER THAN 0s" in out
    assert "#1 NEW_ITEM subject=3" in out


def test_cli_stuck_default_horizon(temp_db, capsys):
    run_cli("stuck", "--db", temp_db)
    assert "ITEMS PROCESSING LONGER THAN 3600s" in capsys.readouterr().out


def test_cli_process_closes_notifier(temp_db):
    """Test the notifier is released when the process command finishes."""
    notifier = RecordingNotifier()
    with patch("process_queue.cli.build_notifier", return_value=notifier):
        run_cli("process", "--db", temp_db)
    assert notifier.closed
