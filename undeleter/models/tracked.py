"""In-memory records for messages inside a monitored window."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

ALL_CONVERSATIONS = "all"


@dataclass(frozen=True)
class ConversationScope:
    """A conversation (or all of them) that owns one sliding window."""

    key: str
    criterion: Optional[str] = None
    chat_ids: FrozenSet[int] = frozenset()

    @classmethod
    def all(cls) -> "ConversationScope":
        return cls(key=ALL_CONVERSATIONS)

    @property
    def is_all(self) -> bool:
        return self.criterion is None

    def __str__(self):
        return self.key


@dataclass(frozen=True)
class SourceAttachment:
    """Attachment row as read from the message store."""

    id: int
    filename: Optional[str]  # Store-relative path, e.g. ~/Library/Messages/Attachments/...
    transfer_name: Optional[str] = None
    mime_type: Optional[str] = None
    uti: Optional[str] = None
    total_bytes: int = 0

    @property
    def display_name(self) -> str:
        if self.transfer_name:
            return self.transfer_name
        if self.filename:
            return Path(self.filename).name
        return f"attachment_{self.id}"

    @property
    def content_kind(self) -> str:
        return self.mime_type or self.uti or "unknown"


@dataclass(frozen=True)
class SourceMessage:
    """Message row as read from the message store."""

    id: int
    guid: str = ""
    timestamp: Optional[datetime] = None
    sender: str = "Unknown"
    text: Optional[str] = None
    attachments: Tuple[SourceAttachment, ...] = ()
    is_from_me: bool = False
    is_fully_unsent: bool = False


class StageStatus(str, Enum):
    STAGED = "staged"
    FAILED = "failed"
    SKIPPED = "skipped"
    DISCARDED = "discarded"
    PROMOTED = "promoted"


@dataclass
class StagedHandle:
    """Ownership token for one staged attachment copy.

    Acquired by ``stage`` and released by exactly one of ``discard`` or
    ``promote``. A failed stage still yields a handle so both paths stay safe.
    """

    attachment_id: int
    source_path: Optional[Path] = None
    staged_path: Optional[Path] = None
    status: StageStatus = StageStatus.FAILED
    error: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status == StageStatus.STAGED


@dataclass
class AttachmentRef:
    id: int
    original_path: Optional[str]
    content_kind: str
    display_name: str
    handle: Optional[StagedHandle] = None

    @classmethod
    def from_source(cls, attachment: SourceAttachment) -> "AttachmentRef":
        return cls(
            id=attachment.id,
            original_path=attachment.filename,
            content_kind=attachment.content_kind,
            display_name=attachment.display_name,
        )


@dataclass
class TrackedMessage:
    id: int
    scope: ConversationScope
    timestamp: Optional[datetime]
    sender: str
    text: Optional[str]
    attachments: List[AttachmentRef] = field(default_factory=list)
    first_seen_at: int = 0
    last_seen_at: int = 0
    guid: str = ""
    is_fully_unsent: bool = False

    @classmethod
    def from_source(cls, message: SourceMessage, scope: ConversationScope, cycle: int) -> "TrackedMessage":
        return cls(
            id=message.id,
            scope=scope,
            timestamp=message.timestamp,
            sender=message.sender,
            text=message.text,
            attachments=[AttachmentRef.from_source(a) for a in message.attachments],
            first_seen_at=cycle,
            last_seen_at=cycle,
            guid=message.guid,
            is_fully_unsent=message.is_fully_unsent,
        )


class DeletionReason(str, Enum):
    REMOVED = "removed"  # Row no longer exists in the store
    UNSENT = "unsent"  # Row still exists but every part was unsent


@dataclass(frozen=True)
class PromotedAttachment:
    attachment_id: int
    display_name: str
    content_kind: str
    original_path: Optional[str]
    path: Optional[Path] = None
    error: Optional[str] = None

    @property
    def recovered(self) -> bool:
        return self.path is not None


@dataclass(frozen=True)
class DeletionRecord:
    """Last known state of a deleted message. Never revised once reported."""

    scope_key: str
    message_id: int
    guid: str
    sender: str
    timestamp: Optional[datetime]
    text: Optional[str]
    attachments: Tuple[PromotedAttachment, ...]
    reason: DeletionReason
    detected_cycle: int
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_tracked(
        cls,
        message: TrackedMessage,
        attachments: List[PromotedAttachment],
        reason: DeletionReason,
        cycle: int,
    ) -> "DeletionRecord":
        return cls(
            scope_key=message.scope.key,
            message_id=message.id,
            guid=message.guid,
            sender=message.sender,
            timestamp=message.timestamp,
            text=message.text,
            attachments=tuple(attachments),
            reason=reason,
            detected_cycle=cycle,
        )

    @property
    def unrecoverable_count(self) -> int:
        return sum(1 for a in self.attachments if not a.recovered)


@dataclass(frozen=True)
class ReconcileResult:
    still_present: FrozenSet[int]
    candidates_for_removal: FrozenSet[int]
    newly_seen: FrozenSet[int]
    order: Tuple[int, ...] = ()  # Clamped top-N in store order


@dataclass(frozen=True)
class DiffResult:
    evicted: FrozenSet[int] = frozenset()
    deleted: FrozenSet[int] = frozenset()
    deferred: FrozenSet[int] = frozenset()  # Existence check failed transiently
    unsent: FrozenSet[int] = frozenset()
