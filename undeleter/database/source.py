"""Read-only access to the message store."""

import logging
import sqlite3
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from undeleter.errors import FatalStoreError, StoreError, TransientStoreError

logger = logging.getLogger(__name__)

# Location of the messages database inside an iOS backup
DEFAULT_PATH_IOS = "3d/3d0d7e5fb2ce288813306e4d4636395e047a3d28"

# SQLite messages that describe a momentary condition rather than a broken store
TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "busy",
    "disk i/o error",
    "interrupted",
)

# Seconds SQLite waits on a lock before giving up
BUSY_TIMEOUT = 1.0


def translate_store_error(exc: Exception, action: str) -> StoreError:
    """Map a driver error onto the transient/fatal store taxonomy."""
    detail = str(getattr(exc, "orig", None) or exc)
    lowered = detail.lower()
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientStoreError(f"{action} failed: {detail}")
    return FatalStoreError(f"{action} failed: {detail}")


def open_source_engine(db_file: Path) -> Engine:
    """Open the message store read-only and verify it looks like a chat database."""
    if not db_file.exists():
        raise FatalStoreError(f"Database not found at {db_file}")
    if not db_file.is_file():
        raise FatalStoreError(f"Specified path `{db_file}` is not a database!")

    uri = f"{db_file.resolve().as_uri()}?mode=ro"

    def connect():
        return sqlite3.connect(uri, uri=True, timeout=BUSY_TIMEOUT, check_same_thread=False)

    engine = create_engine("sqlite://", creator=connect)

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1 FROM message LIMIT 1")).first()
    except (DBAPIError, SQLAlchemyError, sqlite3.Error) as e:
        engine.dispose()
        raise FatalStoreError(
            f"Unable to read from chat database: {getattr(e, 'orig', e)}\n"
            "Ensure full disk access is enabled for your terminal emulator in "
            "System Settings > Privacy & Security > Full Disk Access"
        ) from e

    logger.info(f"Opened message store read-only: {db_file}")
    return engine
