import argparse
import sqlite3
import sys
from pathlib import Path
from typing import List

import structlog
from pydantic import ValidationError

from . import config as config_lib
from .demo import run_demo
from .logging_conf import configure_logging
from .models import AppConfig
from .notifier import build_notifier
from .queue import (
    BatchDispatcher,
    ProcessorRegistry,
    QueueService,
    SQLiteDatabase,
    build_registry,
)

logger = structlog.get_logger()

ENQUEUE_BATCH_SIZE = 500


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", type=str, help="Queue database path")
    common.add_argument("--config", type=str, help="YAML config overriding config/local.yaml")
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override logging level",
    )
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="process-queue", description="Fan-out work queue with per-processor tracking"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")
    common = _common_options()

    # PROCESS
    process_parser = subparsers.add_parser(
        "process", parents=[common], help="Process pending items in the queue"
    )
    process_parser.add_argument(
        "--limit", "-l", type=int, help="Maximum number of items to process"
    )
    process_parser.add_argument("--type", "-t", type=str, help="Only process this work type")
    process_parser.add_argument(
        "--verbose", "-v", action="store_true", help="Print one line per processor attempt"
    )
    process_parser.add_argument(
        "--progress", action="store_true", help="Show progress bar during processing"
    )

    # ENQUEUE
    enqueue_parser = subparsers.add_parser(
        "enqueue", parents=[common], help="Enqueue subjects for a work type"
    )
    enqueue_parser.add_argument("work_type", type=str, help="Work type (e.g., NEW_ITEM)")
    enqueue_parser.add_argument("subjects", nargs="*", help="Subject identifiers")
    enqueue_parser.add_argument(
        "--file", "-f", type=str, help="File with one subject identifier per line"
    )

    # STATUS
    subparsers.add_parser("status", parents=[common], help="Show queue status")

    # FAILED
    failed_parser = subparsers.add_parser(
        "failed", parents=[common], help="List failed items and processors"
    )
    failed_parser.add_argument("--limit", type=int, default=100, help="Rows to show")

    # STUCK
    stuck_parser = subparsers.add_parser(
        "stuck", parents=[common], help="List items stuck in processing"
    )
    stuck_parser.add_argument(
        "--older-than", type=int, help="Processing horizon in seconds (default from config)"
    )

    # RESET / DELETE (manual remediation)
    reset_parser = subparsers.add_parser(
        "reset", parents=[common], help="Return an item to pending (operator action)"
    )
    reset_parser.add_argument("item_id", type=int, help="Queue item id")

    delete_parser = subparsers.add_parser(
        "delete", parents=[common], help="Delete an item and its tracking rows"
    )
    delete_parser.add_argument("item_id", type=int, help="Queue item id")

    # PROCESSORS
    subparsers.add_parser(
        "processors", parents=[common], help="List registered work types and processors"
    )

    # DEMO
    demo_parser = subparsers.add_parser("demo", help="Run a self-contained demo queue")
    demo_parser.add_argument("--subjects", type=int, default=6, help="Subjects to enqueue")

    return parser


def _read_subjects(args) -> List[str]:
    subjects = list(args.subjects or [])
    if args.file:
        for line in Path(args.file).read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                subjects.append(line)
    return subjects


def _print_banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def run_command(args, conf: AppConfig, registry: ProcessorRegistry) -> int:
    """Execute a parsed subcommand. Returns the process exit code."""
    database = SQLiteDatabase(conf.queue.db_path, lock_retries=conf.queue.lock_retries)
    notifier = None
    try:
        service = QueueService(database, registry, bulk_chunk_size=conf.queue.bulk_chunk_size)

        if args.command == "process":
            notifier = build_notifier(
                conf.notifications.webhook_url, conf.notifications.timeout_s
            )
            dispatcher = BatchDispatcher(
                service,
                registry,
                notifier,
                page_size=conf.queue.page_size,
                echo=print if args.verbose else None,
            )
            dispatcher.run(
                limit=conf.queue.default_limit,
                work_type=args.type,
                progress=args.progress,
            )
            # Processor failures are reported through notifications, not the exit code
            return 0

        if args.command == "enqueue":
            if not registry.has_processor(args.work_type):
                print(f"Error: No processors registered for type: {args.work_type}")
                types = registry.list_work_types()
                if types:
                    print(f"Available types: {', '.join(types)}")
                else:
                    print("No processors are currently registered.")
                return 1

            subjects = _read_subjects(args)
            enqueued = 0
            for start in range(0, len(subjects), ENQUEUE_BATCH_SIZE):
                enqueued += service.enqueue_bulk(
                    subjects[start:start + ENQUEUE_BATCH_SIZE], args.work_type
                )

            _print_banner("ENQUEUE SUMMARY")
            print(f"Work type:            {args.work_type}")
            print(f"Processors:           {', '.join(registry.list_processor_names(args.work_type))}")
            print(f"Subjects given:       {len(subjects)}")
            print(f"Enqueued:             {enqueued}")
            print(f"Already queued:       {len(subjects) - enqueued}")
            print("=" * 60)
            return 0

        if args.command == "status":
            stats = service.get_stats()
            _print_banner("QUEUE STATUS")
            print(f"Pending:              {stats['pending']}")
            print(f"Processing:           {stats['processing']}")
            print(f"Failed:               {stats['failed']}")
            print(f"Total:                {stats['total']}")
            for work_type, count in stats["pending_by_type"].items():
                print(f"  pending {work_type}: {count}")
            print("=" * 60)
            return 0

        if args.command == "failed":
            items = service.get_failed_items(args.limit)
            rows = service.get_failed_processors(args.limit)
            _print_banner("FAILED ITEMS")
            for item in items:
                print(f"#{item.id} {item.work_type} subject={item.subject_id} "
                      f"failed_at={item.failed_at} error={item.error_message}")
            if not items:
                print("None")
            _print_banner("FAILED PROCESSORS")
            for row in rows:
                print(f"item #{row.queue_item_id} {row.processor_name} "
                      f"failed_at={row.failed_at} error={row.error_message}")
            if not rows:
                print("None")
            return 0

        if args.command == "stuck":
            horizon = args.older_than
            if horizon is None:
                horizon = config_lib.get_config_value(conf, "queue.stuck_after_s")
            items = service.find_stuck_items(horizon)
            _print_banner(f"ITEMS PROCESSING LONGER THAN {horizon}s")
            for item in items:
                print(f"#{item.id} {item.work_type} subject={item.subject_id} "
                      f"started_at={item.started_at} attempts={item.attempts}")
            if not items:
                print("None")
            else:
                print("\nUse 'process-queue reset ITEM_ID' or 'process-queue delete ITEM_ID'.")
            return 0

        if args.command == "reset":
            try:
                reset = service.reset_item(args.item_id)
            except ValueError as e:
                print(f"Error: {e}")
                return 1
            print(f"Item {args.item_id} reset to pending" if reset
                  else f"Item {args.item_id} not found or already pending")
            return 0 if reset else 1

        if args.command == "delete":
            deleted = service.delete_item(args.item_id)
            print(f"Item {args.item_id} deleted" if deleted else f"Item {args.item_id} not found")
            return 0 if deleted else 1

        if args.command == "processors":
            types = registry.list_work_types()
            if not types:
                print("No processors registered.")
            for work_type in types:
                print(f"{work_type}: {', '.join(registry.list_processor_names(work_type))}")
            return 0

        return 0
    finally:
        if notifier is not None:
            notifier.close()
        database.close()


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "demo":
        configure_logging("WARNING")
        result = run_demo(n_subjects=args.subjects)
        summary = result["summary"]
        _print_banner("DEMO SUMMARY")
        print(f"Enqueued:             {result['enqueued']}")
        print(f"Processors succeeded: {summary['succeeded']}")
        print(f"Processors failed:    {summary['failed']}")
        print(f"Items retired:        {summary['items_retired']}")
        print(f"Items remaining:      {result['remaining']['total']}")
        print("=" * 60)
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict, config_path=getattr(args, "config", None))
    except ValidationError as e:
        print(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(conf.logging.level, conf.logging.format)

    try:
        registry = build_registry(conf.processors)
    except (ImportError, ValueError, TypeError) as e:
        logger.error("processor_registration_failed", error=str(e))
        sys.exit(1)

    try:
        exit_code = run_command(args, conf, registry)
    except sqlite3.Error as e:
        logger.error("infrastructure_error", command=args.command, error=str(e))
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
