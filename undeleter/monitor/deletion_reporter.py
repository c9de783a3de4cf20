"""Durable, append-only output for confirmed deletions."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from undeleter.database.connection import get_db_session
from undeleter.errors import ReporterWriteError
from undeleter.models.deletion import DeletedAttachment, DeletedMessage
from undeleter.models.tracked import DeletionRecord
from undeleter.monitor import sanitize_filename
from undeleter.monitor.markdown_converter import DeletionToMarkdownConverter
from undeleter.storage_config.resolver import OutputPaths

logger = logging.getLogger(__name__)

LOGFILE_HEADER = "# Deleted Messages\n\n"


@dataclass(frozen=True)
class Acknowledgement:
    """Returned once a record is in the ledger, its document and the log."""

    record_id: str
    ledger_id: int
    document_path: Path


@dataclass
class _Progress:
    ledger_id: Optional[int] = None
    document_path: Optional[Path] = None
    documented: bool = False
    logged: bool = False


class DeletionReporter:
    """
    Writes each deletion record to three places, in order:

    1. the ledger database (``DeletedMessage`` and its attachments),
    2. a Markdown document under ``deleted/<scope>/``,
    3. an entry in the running ``DELETIONS.md`` log.

    A failed attempt is retried with exponential backoff. Steps that already
    succeeded for the record are not repeated, so a retry never duplicates
    output. Nothing written here is ever updated or removed.
    """

    def __init__(
        self,
        paths: OutputPaths,
        session_factory: sessionmaker,
        max_retries: int = 3,
        backoff: float = 0.5,
    ):
        self.paths = paths
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.backoff = backoff
        self.markdown_converter = DeletionToMarkdownConverter()
        self._progress: Dict[str, _Progress] = {}
        self._ensure_output_directories()

    def _ensure_output_directories(self):
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.paths.deleted.mkdir(parents=True, exist_ok=True)
        logger.info(f"Deletion log: {self.paths.logfile}")

    async def append(self, record: DeletionRecord) -> Acknowledgement:
        """Write a record durably or raise ReporterWriteError."""
        attempt = 0
        while True:
            try:
                acknowledgement = self._write(record)
            except (OSError, SQLAlchemyError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error(
                        f"Giving up on deletion record {record.record_id} after {attempt} attempt(s): {e}",
                        exc_info=True,
                    )
                    raise ReporterWriteError(
                        record.record_id, f"Could not write deletion of message {record.message_id}: {e}"
                    ) from e

                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    f"Writing deletion record {record.record_id} failed "
                    f"(attempt {attempt}/{self.max_retries + 1}), retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)
                continue

            self._progress.pop(record.record_id, None)
            logger.debug(f"Deletion record {record.record_id} written to {acknowledgement.document_path}")
            return acknowledgement

    def _write(self, record: DeletionRecord) -> Acknowledgement:
        progress = self._progress.setdefault(record.record_id, _Progress())

        if progress.document_path is None:
            progress.document_path = self._document_path(record)

        if progress.ledger_id is None:
            progress.ledger_id = self._write_ledger(record, progress.document_path)

        if not progress.documented:
            content = self.markdown_converter.convert_record_to_markdown(record)
            self._write_file(progress.document_path, content, mode='w')
            progress.documented = True

        if not progress.logged:
            entry = self.markdown_converter.convert_record_to_log_entry(record, str(progress.document_path))
            if not self.paths.logfile.exists():
                entry = LOGFILE_HEADER + entry
            self._write_file(self.paths.logfile, entry, mode='a')
            progress.logged = True

        return Acknowledgement(
            record_id=record.record_id,
            ledger_id=progress.ledger_id,
            document_path=progress.document_path,
        )

    def _write_ledger(self, record: DeletionRecord, document_path: Path) -> int:
        with get_db_session(self.session_factory) as db:
            existing = db.query(DeletedMessage).filter(DeletedMessage.record_id == record.record_id).first()
            if existing:
                return existing.id

            deleted_message = DeletedMessage(
                record_id=record.record_id,
                scope_key=record.scope_key,
                message_rowid=record.message_id,
                guid=record.guid,
                sender=record.sender,
                text=record.text,
                reason=record.reason.value,
                message_date=self._naive(record.timestamp),
                detected_at=self._naive(record.detected_at),
                detected_cycle=record.detected_cycle,
                attachment_count=len(record.attachments),
                document_path=str(document_path),
            )
            for attachment in record.attachments:
                deleted_message.attachments.append(DeletedAttachment(
                    attachment_rowid=attachment.attachment_id,
                    filename=attachment.display_name,
                    content_kind=attachment.content_kind,
                    original_path=attachment.original_path,
                    recovered=attachment.recovered,
                    saved_path=str(attachment.path) if attachment.path else None,
                    error=attachment.error,
                ))

            db.add(deleted_message)
            db.flush()  # Get the ID
            return deleted_message.id

    def _document_path(self, record: DeletionRecord) -> Path:
        """Unique document name: sent time, message ROWID and record id."""
        scope_dir = self.paths.deleted / sanitize_filename(record.scope_key)
        sent = record.timestamp or record.detected_at
        filename = f"{sent.strftime('%Y%m%d_%H%M%S')}_{record.message_id}_{record.record_id[:8]}.md"
        return scope_dir / filename

    def _write_file(self, file_path: Path, content: str, mode: str):
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, mode, encoding='utf-8') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

    def _naive(self, value):
        # SQLite DateTime columns store naive UTC
        if value is None or value.tzinfo is None:
            return value
        return value.replace(tzinfo=None)
