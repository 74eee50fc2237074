#!/usr/bin/env python3
"""
Kindle / Audible Book Sync Tool

A CLI tool that records reading and listening progress observed on Kindle and
Audible, matches the two platforms' records for the same book and shows where
to resume on the other platform.
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytz
from croniter import croniter

from .config import Config
from .models import BookRecord, Observation
from .notification_parser import parse_observation_line
from .sync_manager import SyncManager


def setup_logging(verbose: bool = False, log_file: Optional[str] = None, log_level: str = "INFO") -> None:
    """Setup logging configuration with controlled verbosity"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Clear any existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    detailed_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    clean_format = "%(asctime)s - %(levelname)s - %(message)s"

    # File handler (always detailed for debugging)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(detailed_format))
        root_logger.addHandler(file_handler)

    # Console handler (clean unless verbose)
    console_handler = logging.StreamHandler(sys.stderr)
    if verbose:
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter(detailed_format))
    else:
        console_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        console_handler.setFormatter(logging.Formatter(clean_format))
    root_logger.addHandler(console_handler)

    if not verbose:
        logging.getLogger("booksync.book_matcher").setLevel(logging.INFO)
        logging.getLogger("booksync.book_store").setLevel(logging.WARNING)


def get_timezone(name: str) -> Any:
    logger = logging.getLogger(__name__)
    try:
        return pytz.timezone(name)
    except pytz.exceptions.UnknownTimeZoneError:
        logger.error(f"Unknown timezone: {name}. Using UTC.")
        return pytz.UTC


def format_timestamp(value: Optional[datetime], tz: Any) -> str:
    if value is None:
        return "never"
    return value.astimezone(tz).strftime("%Y-%m-%d %H:%M")


def format_book(status: Dict[str, Any], tz: Any) -> str:
    """Render one book with its resume suggestions and sync status"""
    book: BookRecord = status["book"]
    lines = [f"📖 {book.title}" + (f" by {book.author}" if book.author else "") + f"  [{book.id}]"]

    if book.has_kindle_data:
        page = (
            f", page {book.kindle_last_page} of {book.kindle_total_pages}"
            if book.kindle_last_page and book.kindle_total_pages
            else ""
        )
        lines.append(
            f"   Kindle:  {book.kindle_progress:.0%}{page} (seen {format_timestamp(book.kindle_last_sync, tz)})"
        )
    if book.has_audible_data:
        lines.append(
            f"   Audible: {book.audible_progress:.0%} (seen {format_timestamp(book.audible_last_sync, tz)})"
        )

    if status["audible_resume"]:
        lines.append(f"   🎧 Continue on Audible: {status['audible_resume'].description}")
    if status["kindle_resume"]:
        lines.append(f"   📱 Continue on Kindle: {status['kindle_resume'].description}")
    if status["sync_delta"]:
        icon = "✅" if status["sync_delta"].is_synced else "⚠️"
        lines.append(f"   {icon} {status['sync_delta'].description}")
    elif not book.is_matched:
        lines.append("   ⏳ Waiting for a match on the other platform")

    return "\n".join(lines)


def read_observations(path: str) -> Dict[str, Any]:
    """Parse a JSON-lines observation file, collecting bad lines as errors"""
    logger = logging.getLogger(__name__)
    observations: List[Observation] = []
    errors: List[str] = []

    # Undecodable bytes become U+FFFD so one corrupt line cannot abort the file
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, start=1):
            try:
                observation = parse_observation_line(line)
            except ValueError as e:
                error_msg = f"{path}:{line_number}: {str(e)}"
                logger.warning(error_msg)
                errors.append(error_msg)
                continue
            if observation is not None:
                observations.append(observation)

    return {"observations": observations, "errors": errors}


def ingest_file(sync_manager: SyncManager, path: str) -> Dict[str, Any]:
    """Record every observation in a JSON-lines file"""
    logger = logging.getLogger(__name__)
    start_time = time.time()

    parsed = read_observations(path)
    result = sync_manager.process_observations(parsed["observations"])
    result["errors"] = parsed["errors"] + result["errors"]

    duration = time.time() - start_time
    logger.info("=" * 50)
    logger.info("📚 INGEST SUMMARY")
    logger.info("=" * 50)
    logger.info(f"⏱️  Duration: {duration:.1f}s")
    logger.info(f"📖 Observations processed: {result['observations_processed']}")
    logger.info(f"➕ Books created: {result['books_created']}")
    logger.info(f"🔄 Books updated: {result['books_updated']}")
    logger.info(f"🔗 Books merged: {result['books_merged']}")
    logger.info(f"⏭ Observations skipped: {result['observations_skipped']}")
    if result["errors"]:
        logger.warning(f"❌ Errors encountered: {len(result['errors'])}")
        for error in result["errors"]:
            logger.error(f"  - {error}")
    logger.info("=" * 50)

    return result


def drain_spool(sync_manager: SyncManager, spool_file: str) -> Optional[Dict[str, Any]]:
    """
    Ingest and remove the observation spool file

    The file is renamed before reading so watchers can keep appending to a
    fresh spool while the batch runs. A ".processing" file left by a failed
    run is ingested first, with any newer spool lines appended to it.
    Returns None when there is nothing to do.
    """
    logger = logging.getLogger(__name__)
    processing_file = f"{spool_file}.processing"
    has_spool = os.path.exists(spool_file) and os.path.getsize(spool_file) > 0

    if os.path.exists(processing_file):
        logger.warning(f"Resuming leftover {processing_file} from an earlier failed run")
        if has_spool:
            _append_spool(spool_file, processing_file)
    elif has_spool:
        os.replace(spool_file, processing_file)
    else:
        return None

    result = ingest_file(sync_manager, processing_file)
    os.remove(processing_file)
    return result


def _append_spool(spool_file: str, processing_file: str) -> None:
    incoming_file = f"{spool_file}.incoming"
    os.replace(spool_file, incoming_file)

    with open(processing_file, "rb+") as target, open(incoming_file, "rb") as incoming:
        target.seek(0, os.SEEK_END)
        if target.tell() > 0:
            target.seek(-1, os.SEEK_END)
            if target.read(1) != b"\n":
                target.write(b"\n")
        target.write(incoming.read())

    os.remove(incoming_file)


def run_cron_mode(sync_manager: SyncManager, config: Config) -> None:
    """Drain the observation spool on the configured cron schedule until interrupted"""
    logger = logging.getLogger(__name__)

    cron_config = config.get_cron_config()
    schedule = cron_config["schedule"]
    tz = get_timezone(cron_config["timezone"])
    spool_file = config.get_global()["spool_file"]

    try:
        cron = croniter(schedule, datetime.now(tz))
    except Exception as e:
        logger.error(f"Invalid cron schedule '{schedule}': {str(e)}")
        return

    next_run = cron.get_next(datetime)
    logger.info(f"🕐 Starting cron mode - draining {spool_file} on schedule '{schedule}'")
    logger.info(f"⏰ Next run: {next_run.strftime('%Y-%m-%d %H:%M:%S')}")

    try:
        while True:
            time_until_next = (next_run - datetime.now(tz)).total_seconds()
            if time_until_next > 0:
                time.sleep(min(time_until_next, 60))
                continue

            try:
                result = drain_spool(sync_manager, spool_file)
                if result is None:
                    logger.debug("Spool file empty, nothing to do")
                elif result["errors"]:
                    logger.warning(f"Scheduled ingest completed with {len(result['errors'])} errors")
                else:
                    logger.info("✅ Scheduled ingest completed successfully")
            except Exception as e:
                logger.error(f"Scheduled ingest failed: {str(e)}")

            cron = croniter(schedule, datetime.now(tz))
            next_run = cron.get_next(datetime)

    except KeyboardInterrupt:
        logger.info("🛑 Cron mode stopped by user")


def build_observation(args: argparse.Namespace) -> Observation:
    if args.source == "kindle":
        return Observation.for_kindle(
            title=args.title,
            author=args.author,
            progress=args.progress,
            page=args.page,
            total_pages=args.total_pages,
            chapter=args.chapter,
            cover_url=args.cover_url,
        )
    return Observation.for_audible(
        title=args.title,
        author=args.author,
        position_ms=args.position_ms,
        total_ms=args.total_ms,
        progress=args.progress,
        chapter=args.chapter,
        cover_url=args.cover_url,
    )


def show_config(config: Config) -> None:
    print("\n⚙️  Configuration")
    print(f"   Config file: {config.config_path}")
    for section, values in (("global", config.get_global()), ("matching", config.get_matching())):
        print(f"   [{section}]")
        for key, value in values.items():
            print(f"     {key}: {value}")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="booksync",
        description="Kindle / Audible Book Sync Tool - match books across platforms and find where to resume",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config", help="Path to config YAML (default: config/config.yaml)")
    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would change without writing to the database"
    )

    subparsers = parser.add_subparsers(dest="command", metavar="command")

    observe = subparsers.add_parser("observe", help="Record one Kindle or Audible observation")
    observe.add_argument("--source", required=True, choices=["kindle", "audible"])
    observe.add_argument("--title", required=True)
    observe.add_argument("--author", default="")
    observe.add_argument("--progress", type=float, help="Progress fraction (0.0 to 1.0)")
    observe.add_argument("--page", type=int, help="Current Kindle page")
    observe.add_argument("--total-pages", type=int, help="Total Kindle pages")
    observe.add_argument("--position-ms", type=int, help="Audible playback position in milliseconds")
    observe.add_argument("--total-ms", type=int, help="Audible duration in milliseconds")
    observe.add_argument("--chapter")
    observe.add_argument("--cover-url")

    ingest = subparsers.add_parser("ingest", help="Record observations from a JSON-lines file")
    ingest.add_argument("file")

    status = subparsers.add_parser("status", help="Show resume suggestions and sync status")
    status.add_argument("book_id", nargs="?")

    subparsers.add_parser("unmatched", help="List books seen on only one platform")
    subparsers.add_parser("out-of-sync", help="List matched books whose positions differ")

    match = subparsers.add_parser("match", help="Manually merge a Kindle book with an Audible book")
    match.add_argument("kindle_id")
    match.add_argument("audible_id")

    remove = subparsers.add_parser("remove", help="Stop tracking a book")
    remove.add_argument("book_id")

    export = subparsers.add_parser("export", help="Export all records to JSON")
    export.add_argument("file", nargs="?", default="booksync_export.json")

    subparsers.add_parser("stats", help="Show database statistics")
    subparsers.add_parser("clear-cache", help="Delete every tracked book")
    subparsers.add_parser("config", help="Show configuration")
    subparsers.add_parser("cron", help="Drain the observation spool on the configured schedule")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point"""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(verbose=args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config(args.config)
        global_config = config.get_global()
        setup_logging(
            verbose=args.verbose,
            log_file=global_config.get("log_file"),
            log_level=global_config.get("log_level", "INFO"),
        )

        if args.command == "config":
            show_config(config)
            return

        sync_manager = SyncManager(global_config, config.get_matching(), dry_run=args.dry_run)
        tz = get_timezone(global_config["timezone"])

        if args.command == "observe":
            result = sync_manager.record_observation(build_observation(args))
            if result["status"] == "skipped":
                print(f"⏭ Skipped: {result['reason']}")
                sys.exit(1)
            print(f"✅ {result['status'].capitalize()}: {result['book'].title} [{result['book'].id}]")
            print(format_book(sync_manager.get_book_status(result["book"]), tz))

        elif args.command == "ingest":
            result = ingest_file(sync_manager, args.file)
            if result["errors"]:
                print("\n❌ Ingest completed with errors. Check logs for details.")
                sys.exit(1)
            print(
                f"\n✅ Ingest completed: {result['books_created']} created, "
                f"{result['books_updated']} updated, {result['books_merged']} merged."
            )

        elif args.command == "status":
            if args.book_id:
                book = sync_manager.store.get_book(args.book_id)
                if book is None:
                    print(f"❌ Book not found: {args.book_id}")
                    sys.exit(1)
                statuses = [sync_manager.get_book_status(book)]
            else:
                statuses = sync_manager.get_library_status()
            if not statuses:
                print("📚 No books tracked yet")
            for status in statuses:
                print(format_book(status, tz))

        elif args.command in ("unmatched", "out-of-sync"):
            if args.command == "unmatched":
                books = sync_manager.get_unmatched()
            else:
                books = sync_manager.get_out_of_sync()
            if not books:
                print("📚 No books to show")
            for book in books:
                print(format_book(sync_manager.get_book_status(book), tz))

        elif args.command == "match":
            merged = sync_manager.manual_match(args.kindle_id, args.audible_id)
            print(f"🔗 Merged into {merged.id}")
            print(format_book(sync_manager.get_book_status(merged), tz))

        elif args.command == "remove":
            if sync_manager.remove_book(args.book_id):
                print(f"🗑️  Removed {args.book_id}")
            else:
                print(f"❌ Book not found: {args.book_id}")
                sys.exit(1)

        elif args.command == "export":
            count = sync_manager.export_to_json(args.file)
            print(f"✅ Exported {count} books to {args.file}")

        elif args.command == "stats":
            stats = sync_manager.get_cache_stats()
            print("\n📊 Book Sync Statistics:")
            print(f"   Total books: {stats['total_books']}")
            print(f"   Matched books: {stats['matched_books']}")
            print(f"   Kindle only: {stats['kindle_only']}")
            print(f"   Audible only: {stats['audible_only']}")
            print(f"   Database size: {stats['db_file_size']} bytes")

        elif args.command == "clear-cache":
            confirm = input("🗑️  Are you sure you want to delete every tracked book? (y/N): ").strip().lower()
            if confirm in ["y", "yes"]:
                sync_manager.clear_cache()
                print("✅ Book database cleared successfully!")
            else:
                print("❌ Clear cancelled.")

        elif args.command == "cron":
            run_cron_mode(sync_manager, config)

    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Application error: {str(e)}")
        if args.verbose:
            logger.exception("Full error details:")
        sys.exit(1)


if __name__ == "__main__":
    main()
