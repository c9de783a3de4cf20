"""Read recent messages and existence checks from the iMessage store."""

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from undeleter.database.source import translate_store_error
from undeleter.errors import ConfigError
from undeleter.models.tracked import ConversationScope, SourceAttachment, SourceMessage
from undeleter.monitor.body_text import is_fully_unsent, resolve_body_text
from undeleter.storage_config.resolver import DEFAULT_ATTACHMENT_ROOT, Platform

logger = logging.getLogger(__name__)

APPLE_EPOCH = datetime(2001, 1, 1, tzinfo=timezone.utc)

# Display names
ME = "Me"
UNKNOWN = "Unknown"

# macOS Ventura+ / iOS 16+: recoverable messages stay in their conversation's window.
# Grouped by ROWID so a message joined to several chats takes one LIMIT slot.
NEWEST_QUERY = """
SELECT
    m.ROWID AS rowid,
    m.guid AS guid,
    m.text AS text,
    m.attributedBody AS attributed_body,
    m.destination_caller_id AS destination_caller_id,
    m.date AS date,
    m.is_from_me AS is_from_me,
    m.date_edited AS date_edited,
    m.message_summary_info AS summary_info,
    h.id AS handle
FROM message AS m
LEFT JOIN chat_message_join AS c ON m.ROWID = c.message_id
LEFT JOIN chat_recoverable_message_join AS d ON m.ROWID = d.message_id
LEFT JOIN handle AS h ON h.ROWID = m.handle_id
{where}
GROUP BY m.ROWID
ORDER BY m.date DESC
LIMIT :limit
"""

NEWEST_FILTER = "WHERE (c.chat_id IN :chat_ids OR d.chat_id IN :chat_ids)"

# Older schemas have no recoverable join table and no edit data
LEGACY_QUERY = """
SELECT
    m.ROWID AS rowid,
    m.guid AS guid,
    m.text AS text,
    m.attributedBody AS attributed_body,
    NULL AS destination_caller_id,
    m.date AS date,
    m.is_from_me AS is_from_me,
    0 AS date_edited,
    NULL AS summary_info,
    h.id AS handle
FROM message AS m
LEFT JOIN chat_message_join AS c ON m.ROWID = c.message_id
LEFT JOIN handle AS h ON h.ROWID = m.handle_id
{where}
GROUP BY m.ROWID
ORDER BY m.date DESC
LIMIT :limit
"""

LEGACY_FILTER = "WHERE c.chat_id IN :chat_ids"

QUERY_VARIANTS = (
    ("newest", NEWEST_QUERY, NEWEST_FILTER),
    ("legacy", LEGACY_QUERY, LEGACY_FILTER),
)

ATTACHMENT_QUERY = """
SELECT
    j.message_id AS message_id,
    a.ROWID AS rowid,
    a.filename AS filename,
    a.transfer_name AS transfer_name,
    a.mime_type AS mime_type,
    a.uti AS uti,
    a.total_bytes AS total_bytes
FROM message_attachment_join AS j
JOIN attachment AS a ON j.attachment_id = a.ROWID
WHERE j.message_id IN :message_ids
ORDER BY j.message_id, a.ROWID
"""

SCHEMA_MISMATCH_MARKERS = ("no such table", "no such column")


def apple_time_to_utc(raw_value: Optional[int]) -> Optional[datetime]:
    """Convert an Apple epoch value (seconds, microseconds or nanoseconds) to UTC."""
    if raw_value is None:
        return None

    value = int(raw_value)
    if value == 0:
        return None

    if value > 10_000_000_000_000_000:
        delta = timedelta(microseconds=value / 1_000)
    elif value > 100_000_000_000:
        delta = timedelta(seconds=value / 1_000_000)
    else:
        delta = timedelta(seconds=value)

    return APPLE_EPOCH + delta


class MessageStoreReader:
    """Queries the message store. Never writes to it."""

    def __init__(
        self,
        engine: Engine,
        platform: Platform = Platform.MACOS,
        db_root: Optional[Path] = None,
        attachment_root: Optional[str] = None,
        custom_name: Optional[str] = None,
        use_caller_id: bool = False,
    ):
        self.engine = engine
        self.platform = platform
        self.db_root = db_root
        self.attachment_root = attachment_root
        self.custom_name = custom_name
        self.use_caller_id = use_caller_id
        self._variant: Optional[str] = None

    def resolve_scopes(self, conversation_filter: Optional[str]) -> List[ConversationScope]:
        """
        Turn a comma-separated participant filter into conversation scopes.

        Each criterion matches handles whose identifier contains it. The
        chats of every matched handle are merged into a single scope, so a
        conversation matched by several criteria still has one window.
        """
        if not conversation_filter:
            return [ConversationScope.all()]

        criteria = [c.strip() for c in conversation_filter.split(",") if c.strip()]

        try:
            with self.engine.connect() as conn:
                handles = conn.execute(text("SELECT ROWID AS rowid, id FROM handle")).all()
                memberships = conn.execute(
                    text("SELECT chat_id, handle_id FROM chat_handle_join")
                ).all()
        except DBAPIError as e:
            raise translate_store_error(e, "Resolving conversation filter") from e

        chats_by_handle: Dict[int, Set[int]] = {}
        for chat_id, handle_id in memberships:
            chats_by_handle.setdefault(handle_id, set()).add(chat_id)

        matched = []
        chat_ids: Set[int] = set()
        for criterion in criteria:
            handle_ids = {rowid for rowid, identifier in handles if identifier and criterion in identifier}
            criterion_chats = set()
            for handle_id in handle_ids:
                criterion_chats.update(chats_by_handle.get(handle_id, ()))

            if not criterion_chats:
                logger.warning(f"Filter `{criterion}` does not match any conversation; skipping it")
                continue

            logger.info(
                f"Filter `{criterion}` matched {len(handle_ids)} handle(s) across {len(criterion_chats)} chat(s)"
            )
            matched.append(criterion)
            chat_ids.update(criterion_chats)

        if not chat_ids:
            raise ConfigError(f"Selected filter `{conversation_filter}` does not match any participants!")

        key = ",".join(matched)
        return [ConversationScope(key=key, criterion=key, chat_ids=frozenset(chat_ids))]

    def fetch_top_n(self, scope: ConversationScope, limit: int) -> List[SourceMessage]:
        """Most recent ``limit`` messages for ``scope``, newest first."""
        try:
            with self.engine.connect() as conn:
                rows = self._query_recent(conn, scope, limit)
                attachments = self._query_attachments(conn, [row.rowid for row in rows])
        except DBAPIError as e:
            raise translate_store_error(e, f"Fetching messages for {scope}") from e

        return [self._build_message(row, attachments.get(row.rowid, [])) for row in rows]

    def exists(self, message_id: int) -> bool:
        """Whether a message row with this ROWID is still in the store."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    text("SELECT 1 FROM message WHERE ROWID = :rowid"), {"rowid": message_id}
                ).first()
        except DBAPIError as e:
            raise translate_store_error(e, f"Checking message {message_id}") from e
        return row is not None

    def resolve_attachment_path(self, store_path: Optional[str]) -> Optional[Path]:
        """Locate an attachment's file on disk for the configured platform."""
        if not store_path:
            return None

        if self.platform == Platform.IOS:
            if self.db_root is None:
                return None
            relative = store_path[2:]
            digest = hashlib.sha1(f"MediaDomain-{relative}".encode("utf-8")).hexdigest()
            return self.db_root / digest[:2] / digest

        if self.attachment_root:
            store_path = store_path.replace(DEFAULT_ATTACHMENT_ROOT, self.attachment_root)
        return Path(store_path).expanduser()

    def _query_recent(self, conn, scope: ConversationScope, limit: int):
        variants = [v for v in QUERY_VARIANTS if self._variant in (None, v[0])]
        last_error = None

        for name, query, scope_filter in variants:
            statement = text(query.format(where="" if scope.is_all else scope_filter))
            params = {"limit": limit}
            if not scope.is_all:
                statement = statement.bindparams(bindparam("chat_ids", expanding=True))
                params["chat_ids"] = sorted(scope.chat_ids)

            try:
                rows = conn.execute(statement, params).all()
            except DBAPIError as e:
                if not any(marker in str(e.orig).lower() for marker in SCHEMA_MISMATCH_MARKERS):
                    raise
                logger.debug(f"Query variant `{name}` not supported by this store: {e.orig}")
                last_error = e
                continue

            if self._variant is None:
                logger.info(f"Using `{name}` message query for this store")
                self._variant = name
            return rows

        raise last_error

    def _query_attachments(self, conn, message_ids: List[int]) -> Dict[int, List[SourceAttachment]]:
        if not message_ids:
            return {}

        statement = text(ATTACHMENT_QUERY).bindparams(bindparam("message_ids", expanding=True))
        result: Dict[int, List[SourceAttachment]] = {}
        for row in conn.execute(statement, {"message_ids": sorted(set(message_ids))}):
            result.setdefault(row.message_id, []).append(SourceAttachment(
                id=row.rowid,
                filename=row.filename,
                transfer_name=row.transfer_name,
                mime_type=row.mime_type,
                uti=row.uti,
                total_bytes=row.total_bytes or 0,
            ))
        return result

    def _build_message(self, row, attachments: List[SourceAttachment]) -> SourceMessage:
        is_from_me = bool(row.is_from_me)
        return SourceMessage(
            id=row.rowid,
            guid=row.guid or "",
            timestamp=apple_time_to_utc(row.date),
            sender=self._who(is_from_me, row.handle, row.destination_caller_id),
            text=resolve_body_text(row.text, row.attributed_body),
            attachments=tuple(attachments),
            is_from_me=is_from_me,
            is_fully_unsent=is_fully_unsent(row.date_edited, row.summary_info),
        )

    def _who(self, is_from_me: bool, handle: Optional[str], destination_caller_id: Optional[str]) -> str:
        if is_from_me:
            if self.use_caller_id:
                return destination_caller_id or ME
            return self.custom_name or ME
        return handle or UNKNOWN
