"""Tests for the deletion ledger, documents and running log."""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from undeleter.errors import ReporterWriteError
from undeleter.models.tracked import DeletionReason, DeletionRecord, PromotedAttachment

BASE_TIME = datetime(2025, 1, 15, 10, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(output_paths):
    from undeleter.database.connection import create_ledger_engine, create_session_factory, init_database

    output_paths.root.mkdir(parents=True, exist_ok=True)
    engine = create_ledger_engine(output_paths.ledger)
    init_database(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def deletion_reporter(output_paths, session_factory):
    from undeleter.monitor.deletion_reporter import DeletionReporter

    return DeletionReporter(output_paths, session_factory, max_retries=2, backoff=0)


@pytest.fixture
def record():
    return DeletionRecord(
        scope_key="all",
        message_id=42,
        guid="GUID-42",
        sender="+15551234567",
        timestamp=BASE_TIME,
        text="see you at 8",
        attachments=(
            PromotedAttachment(attachment_id=1, display_name="photo.jpg", content_kind="image/jpeg",
                               original_path="~/Library/Messages/Attachments/photo.jpg",
                               path=Path("/export/attachments/all/42_photo.jpg")),
            PromotedAttachment(attachment_id=2, display_name="voice.caf", content_kind="audio/x-caf",
                               original_path=None, error="attachment not found"),
        ),
        reason=DeletionReason.REMOVED,
        detected_cycle=7,
    )


@pytest.mark.asyncio
async def test_append_writes_ledger_document_and_log(deletion_reporter, session_factory, output_paths, record):
    from undeleter.database.connection import get_db_session
    from undeleter.models.deletion import DeletedMessage

    ack = await deletion_reporter.append(record)

    assert ack.record_id == record.record_id
    assert ack.document_path.exists()
    assert output_paths.deleted in ack.document_path.parents
    assert "see you at 8" in ack.document_path.read_text(encoding="utf-8")

    log = output_paths.logfile.read_text(encoding="utf-8")
    assert log.startswith("# Deleted Messages")
    assert "see you at 8" in log

    with get_db_session(session_factory) as db:
        row = db.query(DeletedMessage).filter(DeletedMessage.record_id == record.record_id).one()
        assert row.id == ack.ledger_id
        assert row.message_rowid == 42
        assert row.reason == "removed"
        assert row.attachment_count == 2
        assert [a.recovered for a in row.attachments] == [True, False]
        assert row.attachments[1].error == "attachment not found"


@pytest.mark.asyncio
async def test_log_is_append_only(deletion_reporter, output_paths, record):
    await deletion_reporter.append(record)
    second = DeletionRecord(
        scope_key="all", message_id=43, guid="GUID-43", sender="Me", timestamp=BASE_TIME,
        text="second", attachments=(), reason=DeletionReason.UNSENT, detected_cycle=8,
    )

    await deletion_reporter.append(second)

    log = output_paths.logfile.read_text(encoding="utf-8")
    assert log.count("# Deleted Messages") == 1
    assert log.index("see you at 8") < log.index("second")


@pytest.mark.asyncio
async def test_retry_does_not_duplicate_finished_steps(deletion_reporter, session_factory, output_paths, record):
    """A failure after the ledger write retries only the remaining steps."""
    from undeleter.database.connection import get_db_session
    from undeleter.models.deletion import DeletedMessage

    original = deletion_reporter._write_file
    failures = []

    def flaky(file_path, content, mode):
        if mode == 'a' and not failures:
            failures.append(file_path)
            raise OSError("No space left on device")
        return original(file_path, content, mode)

    with patch.object(deletion_reporter, "_write_file", side_effect=flaky):
        await deletion_reporter.append(record)

    assert len(failures) == 1
    with get_db_session(session_factory) as db:
        assert db.query(DeletedMessage).count() == 1
    assert output_paths.logfile.read_text(encoding="utf-8").count("see you at 8") == 1


@pytest.mark.asyncio
async def test_exhausted_retries_raise(deletion_reporter, record):
    with patch.object(deletion_reporter, "_write_ledger",
                      side_effect=OperationalError("INSERT", {}, Exception("disk I/O error"))) as write:
        with pytest.raises(ReporterWriteError) as exc_info:
            await deletion_reporter.append(record)

    assert exc_info.value.record_id == record.record_id
    assert write.call_count == 3


def test_markdown_document_lists_attachments(record):
    from undeleter.monitor.markdown_converter import DeletionToMarkdownConverter

    content = DeletionToMarkdownConverter().convert_record_to_markdown(record)

    assert content.startswith("# Deleted message")
    assert "| **Reason** | removed |" in content
    assert "saved to `/export/attachments/all/42_photo.jpg`" in content
    assert "**unrecoverable** (attachment not found)" in content


def test_markdown_preview_truncates():
    from undeleter.monitor.markdown_converter import DeletionToMarkdownConverter

    converter = DeletionToMarkdownConverter()

    assert converter.preview("short") == "short"
    assert converter.preview("x" * 80) == "x" * 50 + "..."
    assert converter.preview(None) == ""


def test_markdown_escapes_sender():
    from undeleter.monitor.markdown_converter import DeletionToMarkdownConverter

    converter = DeletionToMarkdownConverter()

    assert converter._escape_markdown("a_b*c") == "a\\_b\\*c"
