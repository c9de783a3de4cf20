"""Authoritative per-scope record of tracked messages."""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Dict, List, Mapping, Sequence, Tuple

from undeleter.models.tracked import (
    ConversationScope,
    DeletionReason,
    DeletionRecord,
    DiffResult,
    ReconcileResult,
    SourceMessage,
    TrackedMessage,
)
from undeleter.monitor.markdown_converter import DeletionToMarkdownConverter

logger = logging.getLogger(__name__)


@dataclass
class AppliedCycle:
    """What one ``apply_cycle`` call changed for a scope."""

    scope: ConversationScope
    admitted: List[int] = field(default_factory=list)
    postponed: List[int] = field(default_factory=list)
    evicted: List[int] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)
    records: List[DeletionRecord] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.admitted or self.evicted or self.records)


class SnapshotStore:
    """
    Holds, per scope, the mapping from message ROWID to TrackedMessage.

    Only the poll scheduler calls ``apply_cycle``. The new mapping for a
    scope is built on the side and swapped in once every staging, discard,
    promotion and report for the cycle has finished.
    """

    def __init__(self, preserver, reporter, window_manager):
        self.preserver = preserver
        self.reporter = reporter
        self.window_manager = window_manager
        self.markdown_converter = DeletionToMarkdownConverter()
        self._snapshots: Dict[str, Dict[int, TrackedMessage]] = {}

    def tracked(self, scope: ConversationScope) -> Mapping[int, TrackedMessage]:
        return MappingProxyType(self._snapshots.get(scope.key, {}))

    def tracked_ids(self, scope: ConversationScope) -> frozenset:
        return frozenset(self._snapshots.get(scope.key, ()))

    def size(self, scope: ConversationScope) -> int:
        return len(self._snapshots.get(scope.key, ()))

    async def apply_cycle(
        self,
        scope: ConversationScope,
        cycle: int,
        latest: Sequence[SourceMessage],
        reconcile: ReconcileResult,
        diff: DiffResult,
    ) -> AppliedCycle:
        """Apply one poll's decisions for a scope as a single unit."""
        previous = self._snapshots.get(scope.key, {})
        latest_by_id = {message.id: message for message in latest}
        outcome = AppliedCycle(scope=scope, deferred=sorted(diff.deferred))

        retained_ids = reconcile.still_present | diff.deferred
        current: Dict[int, TrackedMessage] = {}

        # Refresh messages that are still in the window
        for message_id in retained_ids:
            message = previous[message_id]
            if message_id in reconcile.still_present:
                message = self._refresh(message, latest_by_id.get(message_id), cycle)
            current[message_id] = message

        # Track and stage newly seen messages that fit
        admitted = self.window_manager.admit(reconcile, len(current))
        outcome.admitted = admitted
        outcome.postponed = [m for m in reconcile.order if m in reconcile.newly_seen and m not in admitted]

        new_messages = [TrackedMessage.from_source(latest_by_id[m], scope, cycle) for m in admitted]
        await asyncio.gather(*(self.preserver.stage_message(message) for message in new_messages))
        for message in new_messages:
            current[message.id] = message

        # Release staged copies of evicted messages
        evicted = [previous[m] for m in sorted(diff.evicted)]
        await asyncio.gather(*(self.preserver.discard_message(message) for message in evicted))
        outcome.evicted = [message.id for message in evicted]
        if evicted:
            logger.info(f"{scope}: {len(evicted)} message(s) left the window and are no longer tracked")

        # Preserve and report deleted and unsent messages
        outcome.records = await self._report(scope, cycle, previous, diff)

        # Unsent messages stay in the window, marked so they are never reported again
        for message_id in diff.unsent:
            current[message_id] = replace(current[message_id], is_fully_unsent=True)

        if len(current) > self.window_manager.window_size:
            raise RuntimeError(
                f"{scope}: {len(current)} tracked messages exceed the window of {self.window_manager.window_size}"
            )
        self._snapshots[scope.key] = current
        return outcome

    async def release_all(self):
        """Discard every remaining staged copy; tracking ends with the process."""
        for scope_key, messages in list(self._snapshots.items()):
            await asyncio.gather(*(self.preserver.discard_message(m) for m in messages.values()))
            logger.debug(f"Released {len(messages)} tracked message(s) for {scope_key}")
        self._snapshots.clear()

    async def _report(
        self,
        scope: ConversationScope,
        cycle: int,
        previous: Mapping[int, TrackedMessage],
        diff: DiffResult,
    ) -> List[DeletionRecord]:
        already_unsent = sorted(m for m in diff.deleted if previous[m].is_fully_unsent)
        if already_unsent:
            logger.debug(f"{scope}: unsent message(s) {already_unsent} left the store; nothing new to report")

        gone: List[Tuple[TrackedMessage, DeletionReason]] = [
            (previous[m], DeletionReason.REMOVED) for m in diff.deleted if not previous[m].is_fully_unsent
        ] + [
            (previous[m], DeletionReason.UNSENT) for m in diff.unsent
        ]
        if not gone:
            return []

        # Oldest first so the log reads chronologically
        gone.sort(key=lambda item: (item[0].timestamp is None, item[0].timestamp, item[0].id))

        promoted = await asyncio.gather(*(self.preserver.promote_message(message) for message, _ in gone))

        records = []
        for (message, reason), attachments in zip(gone, promoted):
            record = DeletionRecord.from_tracked(message, attachments, reason, cycle)
            await self.reporter.append(record)
            self._alert(record)
            records.append(record)
        return records

    def _refresh(self, message: TrackedMessage, latest, cycle: int) -> TrackedMessage:
        """Copy with a new last-seen cycle and the latest non-empty text."""
        if latest is None:
            return replace(message, last_seen_at=cycle)
        text = latest.text if latest.text else message.text
        return replace(message, last_seen_at=cycle, text=text, sender=latest.sender or message.sender)

    def _alert(self, record: DeletionRecord):
        verb = "unsent" if record.reason == DeletionReason.UNSENT else "deleted"
        details = f"{len(record.attachments)} attachment(s)"
        if record.unrecoverable_count:
            details += f", {record.unrecoverable_count} unrecoverable"
        logger.warning(
            f"Message {verb} in {record.scope_key} from {record.sender}: "
            f"\"{self.markdown_converter.preview(record.text)}\" ({details})"
        )
