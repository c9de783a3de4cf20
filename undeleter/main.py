#!/usr/bin/env python3
"""Main entry point for the iMessage undeleter."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from undeleter.config import settings
from undeleter.database.connection import create_ledger_engine, create_session_factory, init_database
from undeleter.database.source import open_source_engine
from undeleter.errors import ConfigError, FatalStoreError, ReporterWriteError, StoreError
from undeleter.models.tracked import ConversationScope
from undeleter.monitor.attachment_preserver import AttachmentPreserver
from undeleter.monitor.deletion_reporter import DeletionReporter
from undeleter.monitor.diff_engine import DiffEngine
from undeleter.monitor.poll_scheduler import MonitorContext, PollScheduler
from undeleter.monitor.snapshot_store import SnapshotStore
from undeleter.monitor.store_reader import MessageStoreReader
from undeleter.monitor.window_manager import WindowManager
from undeleter.storage_config.resolver import MonitorConfig, resolve_monitor_config

logger = logging.getLogger(__name__)

# Process exit codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_STORE = 3

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_logging(level: str, log_file: Optional[str] = None):
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file) if log_file else logging.NullHandler()
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Watch the iMessage database and preserve messages (and attachments) that get deleted."
    )
    parser.add_argument(
        "-n", "--check-last-n",
        dest="window_size",
        type=int,
        help="Number of most recent messages to track per conversation (required unless UNDELETER_WINDOW_SIZE is set)"
    )
    parser.add_argument(
        "-p", "--db-path",
        help=f"Path to chat.db on macOS, or to the root of an iOS backup (default: {settings.db_path})"
    )
    parser.add_argument(
        "-r", "--attachment-root",
        help="Custom attachment root, replacing ~/Library/Messages/Attachments (macOS only)"
    )
    parser.add_argument(
        "-a", "--platform",
        help="Platform the database comes from: macOS or iOS (detected when omitted)"
    )
    parser.add_argument(
        "-o", "--export-path",
        help=f"Directory for recovered messages and attachments (default: {settings.export_path})"
    )
    parser.add_argument(
        "-m", "--custom-name",
        help="Name to show instead of \"Me\" for your own messages"
    )
    parser.add_argument(
        "-i", "--use-caller-id",
        action="store_true",
        default=None,
        help="Show your caller ID instead of \"Me\" for your own messages"
    )
    parser.add_argument(
        "-t", "--conversation-filter",
        help="Comma-separated phone numbers or emails; only conversations with these participants are watched"
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help=f"Seconds between checks (default: {settings.poll_interval})"
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default=settings.log_level.upper(),
        help=f"Logging level (default: {settings.log_level})"
    )
    return parser


async def run_monitor(config: MonitorConfig, reader: MessageStoreReader, scopes: List[ConversationScope]) -> int:
    """Build the monitor around an open store and poll until stopped."""
    output = config.output
    output.root.mkdir(parents=True, exist_ok=True)

    ledger_engine = create_ledger_engine(output.ledger, echo=config.database_echo)
    init_database(ledger_engine)

    preserver = AttachmentPreserver(output, reader.resolve_attachment_path, max_workers=config.io_workers)
    preserver.prepare()

    reporter = DeletionReporter(
        output,
        create_session_factory(ledger_engine),
        max_retries=config.reporter_max_retries,
        backoff=config.reporter_retry_backoff,
    )
    window_manager = WindowManager(config.window_size)
    snapshot = SnapshotStore(preserver, reporter, window_manager)
    scheduler = PollScheduler(
        reader,
        snapshot,
        window_manager,
        DiffEngine(reader),
        MonitorContext(scopes=scopes, window_size=config.window_size, poll_interval=config.poll_interval),
    )

    _install_signal_handlers(scheduler)

    try:
        await scheduler.run()
    except FatalStoreError as e:
        logger.critical(f"Message store became unreadable: {e}", exc_info=True)
        return EXIT_FATAL
    except ReporterWriteError as e:
        logger.critical(f"Could not record a confirmed deletion (record {e.record_id}): {e}")
        return EXIT_FATAL
    finally:
        preserver.shutdown()
        ledger_engine.dispose()

    return EXIT_OK


def _install_signal_handlers(scheduler: PollScheduler):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scheduler.stop)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends the process
            logger.debug(f"Cannot install handler for {sig.name} on this platform")


def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, open the store and run the monitor. Returns the exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, settings.log_file)

    try:
        config = resolve_monitor_config(
            settings,
            window_size=args.window_size,
            db_path=args.db_path,
            attachment_root=args.attachment_root,
            platform=args.platform,
            export_path=args.export_path,
            custom_name=args.custom_name,
            use_caller_id=args.use_caller_id,
            conversation_filter=args.conversation_filter,
            poll_interval=args.poll_interval,
        )
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    logger.info(f"Reading {config.platform.value} message store at {config.store_file}")
    logger.info(f"Recovered messages will be written to {config.output.root}")

    try:
        engine = open_source_engine(config.store_file)
    except FatalStoreError as e:
        logger.error(str(e))
        return EXIT_STORE

    try:
        reader = MessageStoreReader(
            engine,
            platform=config.platform,
            db_root=config.db_path,
            attachment_root=config.attachment_root,
            custom_name=config.custom_name,
            use_caller_id=config.use_caller_id,
        )

        try:
            scopes = reader.resolve_scopes(config.conversation_filter)
        except ConfigError as e:
            logger.error(str(e))
            return EXIT_CONFIG
        except StoreError as e:
            logger.error(f"Could not resolve conversations: {e}")
            return EXIT_STORE

        try:
            return asyncio.run(run_monitor(config, reader, scopes))
        except OSError as e:
            logger.error(f"Could not prepare output directory {config.output.root}: {e}")
            return EXIT_FATAL
        except KeyboardInterrupt:
            logger.info("Shutting down undeleter...")
            return EXIT_OK
        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
            return EXIT_FATAL
    finally:
        engine.dispose()


def main():
    """Main entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
