"""Test configuration and fixtures."""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

os.environ["UNDELETER_EXPORT_PATH"] = os.path.join(tempfile.gettempdir(), "test_undeleted_messages")
os.environ["UNDELETER_LOG_LEVEL"] = "DEBUG"

from undeleter.errors import TransientStoreError  # noqa: E402
from undeleter.models.tracked import ConversationScope, SourceAttachment, SourceMessage  # noqa: E402
from undeleter.monitor.attachment_preserver import AttachmentPreserver  # noqa: E402
from undeleter.monitor.deletion_reporter import Acknowledgement  # noqa: E402
from undeleter.storage_config.resolver import OutputPaths  # noqa: E402

BASE_TIME = datetime(2025, 1, 15, 10, 30, 0, tzinfo=timezone.utc)

# Apple epoch nanoseconds for 2025-01-15 10:30:00 UTC
APPLE_NS_BASE = 758629800 * 1_000_000_000


class FakeStoreReader:
    """In-memory message store.

    ``store`` is every message that exists; ``top`` is the newest-first list
    returned by the next ``fetch_top_n`` call.
    """

    def __init__(self):
        self.store = {}
        self.top = []
        self.transient_ids = set()
        self.fetch_error = None
        self.exists_calls = []

    def put(self, *messages):
        for message in messages:
            self.store[message.id] = message

    def show(self, *message_ids):
        self.top = list(message_ids)

    def remove(self, message_id):
        self.store.pop(message_id, None)

    def fetch_top_n(self, scope, limit):
        if self.fetch_error is not None:
            raise self.fetch_error
        return [self.store[m] for m in self.top[:limit] if m in self.store]

    def exists(self, message_id):
        self.exists_calls.append(message_id)
        if message_id in self.transient_ids:
            raise TransientStoreError(f"Checking message {message_id} failed: database is locked")
        return message_id in self.store

    def resolve_attachment_path(self, store_path):
        return Path(store_path) if store_path else None


class InMemoryReporter:
    """Collects deletion records instead of writing them."""

    def __init__(self):
        self.records = []

    async def append(self, record):
        self.records.append(record)
        return Acknowledgement(record_id=record.record_id, ledger_id=len(self.records), document_path=Path("memory"))


class RecordingPreserver(AttachmentPreserver):
    """Real preserver that remembers which attachments were discarded or promoted."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.discarded = []
        self.promoted = []

    async def discard(self, handle):
        if handle is not None:
            self.discarded.append(handle.attachment_id)
        await super().discard(handle)

    async def promote(self, scope, message_id, ref):
        self.promoted.append(ref.id)
        return await super().promote(scope, message_id, ref)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def output_paths(temp_dir):
    return OutputPaths(Path(temp_dir) / "export")


@pytest.fixture
def source_dir(temp_dir):
    """Directory standing in for ~/Library/Messages/Attachments."""
    path = Path(temp_dir) / "source_attachments"
    path.mkdir()
    return path


@pytest.fixture
def scope():
    return ConversationScope.all()


@pytest.fixture
def fake_reader():
    return FakeStoreReader()


@pytest.fixture
def reporter():
    return InMemoryReporter()


@pytest.fixture
def preserver(output_paths, fake_reader):
    preserver = RecordingPreserver(output_paths, fake_reader.resolve_attachment_path, max_workers=2)
    preserver.prepare()
    yield preserver
    preserver.shutdown()


@pytest.fixture
def make_message(source_dir):
    """Build SourceMessages; ``attachments`` names files created in ``source_dir``."""

    def _make(message_id, text=None, attachments=(), sender="+15551234567", unsent=False):
        refs = []
        for offset, name in enumerate(attachments):
            path = source_dir / f"{message_id}_{name}"
            path.write_bytes(f"content of {name}".encode())
            refs.append(SourceAttachment(
                id=message_id * 100 + offset,
                filename=str(path),
                transfer_name=name,
                mime_type="image/jpeg",
                total_bytes=path.stat().st_size,
            ))
        return SourceMessage(
            id=message_id,
            guid=f"GUID-{message_id}",
            timestamp=BASE_TIME + timedelta(minutes=message_id),
            sender=sender,
            text=text if text is not None else f"message {message_id}",
            attachments=tuple(refs),
            is_fully_unsent=unsent,
        )

    return _make


CHAT_DB_SCHEMA = [
    "CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT NOT NULL)",
    "CREATE TABLE chat (ROWID INTEGER PRIMARY KEY, chat_identifier TEXT)",
    "CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER)",
    "CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER)",
    "CREATE TABLE attachment (ROWID INTEGER PRIMARY KEY, filename TEXT, transfer_name TEXT, "
    "mime_type TEXT, uti TEXT, total_bytes INTEGER)",
    "CREATE TABLE message_attachment_join (message_id INTEGER, attachment_id INTEGER)",
]

MESSAGE_TABLE = (
    "CREATE TABLE message (ROWID INTEGER PRIMARY KEY, guid TEXT, text TEXT, attributedBody BLOB, "
    "handle_id INTEGER, destination_caller_id TEXT, date INTEGER, is_from_me INTEGER DEFAULT 0, "
    "date_edited INTEGER DEFAULT 0, message_summary_info BLOB)"
)

LEGACY_MESSAGE_TABLE = (
    "CREATE TABLE message (ROWID INTEGER PRIMARY KEY, guid TEXT, text TEXT, attributedBody BLOB, "
    "handle_id INTEGER, date INTEGER, is_from_me INTEGER DEFAULT 0)"
)

RECOVERABLE_TABLE = "CREATE TABLE chat_recoverable_message_join (chat_id INTEGER, message_id INTEGER)"


def _populate(conn, legacy=False):
    conn.execute(text("INSERT INTO handle (ROWID, id) VALUES (1, '+15551234567'), (2, 'friend@example.com')"))
    conn.execute(text("INSERT INTO chat (ROWID, chat_identifier) VALUES (1, '+15551234567'), (2, 'friend@example.com')"))
    conn.execute(text("INSERT INTO chat_handle_join (chat_id, handle_id) VALUES (1, 1), (2, 2)"))

    # (rowid, text, handle, from_me, chat)
    messages = [
        (1, "first", 1, 0, 1),
        (2, "second", 2, 0, 2),
        (3, "photo", 1, 0, 1),
        (4, "moved to recently deleted", 2, 0, None),
        (5, "my reply", 0, 1, 1),
    ]
    for rowid, body, handle_id, from_me, chat_id in messages:
        params = {
            "rowid": rowid,
            "guid": f"GUID-{rowid}",
            "text": body,
            "handle_id": handle_id,
            "date": APPLE_NS_BASE + rowid * 60 * 1_000_000_000,
            "from_me": from_me,
        }
        if legacy:
            conn.execute(text(
                "INSERT INTO message (ROWID, guid, text, handle_id, date, is_from_me) "
                "VALUES (:rowid, :guid, :text, :handle_id, :date, :from_me)"
            ), params)
        else:
            conn.execute(text(
                "INSERT INTO message (ROWID, guid, text, handle_id, destination_caller_id, date, is_from_me) "
                "VALUES (:rowid, :guid, :text, :handle_id, '+15550000000', :date, :from_me)"
            ), params)
        if chat_id is not None:
            conn.execute(text("INSERT INTO chat_message_join (chat_id, message_id) VALUES (:chat, :rowid)"),
                         {"chat": chat_id, "rowid": rowid})

    if not legacy:
        conn.execute(text("INSERT INTO chat_recoverable_message_join (chat_id, message_id) VALUES (2, 4)"))

    conn.execute(text(
        "INSERT INTO attachment (ROWID, filename, transfer_name, mime_type, uti, total_bytes) VALUES "
        "(1, '~/Library/Messages/Attachments/ab/01/IMG_0001.jpeg', 'IMG_0001.jpeg', 'image/jpeg', "
        "'public.jpeg', 2048)"
    ))
    conn.execute(text("INSERT INTO message_attachment_join (message_id, attachment_id) VALUES (3, 1)"))


def _build_chat_db(path: Path, legacy=False) -> Path:
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        for statement in CHAT_DB_SCHEMA:
            conn.execute(text(statement))
        conn.execute(text(LEGACY_MESSAGE_TABLE if legacy else MESSAGE_TABLE))
        if not legacy:
            conn.execute(text(RECOVERABLE_TABLE))
        _populate(conn, legacy=legacy)
    engine.dispose()
    return path


@pytest.fixture
def chat_db(temp_dir):
    """A small chat.db with two conversations and five messages."""
    return _build_chat_db(Path(temp_dir) / "chat.db")


@pytest.fixture
def legacy_chat_db(temp_dir):
    """The same conversations in a schema without edit data or recoverable messages."""
    return _build_chat_db(Path(temp_dir) / "legacy_chat.db", legacy=True)
