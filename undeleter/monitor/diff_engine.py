"""Decide whether messages that left a window were evicted or deleted."""

import logging
from typing import AbstractSet, Dict, Iterable, Mapping

from undeleter.errors import TransientStoreError
from undeleter.models.tracked import (
    ConversationScope,
    DiffResult,
    SourceMessage,
    TrackedMessage,
)

logger = logging.getLogger(__name__)


class DiffEngine:
    """
    Classifies removal candidates with a second, targeted existence check.

    Absence from the top-N alone proves nothing: newer messages push older
    ones out of the window all the time. Only a message the store no longer
    has at all is reported as deleted.
    """

    def __init__(self, reader):
        self.reader = reader

    def classify(self, scope: ConversationScope, candidates: Iterable[int]) -> DiffResult:
        """
        Resolve each candidate to evicted or deleted.

        A transient failure of the existence check defers the candidate: it
        stays tracked unchanged and is checked again next poll. Fatal store
        errors propagate.
        """
        evicted = set()
        deleted = set()
        deferred = set()

        for message_id in candidates:
            try:
                still_exists = self.reader.exists(message_id)
            except TransientStoreError as e:
                logger.warning(f"Existence check for message {message_id} in {scope} failed, retrying next poll: {e}")
                deferred.add(message_id)
                continue

            if still_exists:
                evicted.add(message_id)
            else:
                deleted.add(message_id)

        if evicted:
            logger.debug(f"{scope}: {len(evicted)} message(s) slid out of the window")
        return DiffResult(
            evicted=frozenset(evicted),
            deleted=frozenset(deleted),
            deferred=frozenset(deferred),
        )

    def detect_unsent(
        self,
        tracked: Mapping[int, TrackedMessage],
        latest: Mapping[int, SourceMessage],
        still_present: AbstractSet[int],
    ) -> frozenset:
        """Still-present messages whose every part was unsent since the last poll."""
        unsent = set()
        for message_id in still_present:
            before = tracked.get(message_id)
            now = latest.get(message_id)
            if before is None or now is None:
                continue
            if now.is_fully_unsent and not before.is_fully_unsent:
                unsent.add(message_id)
        return frozenset(unsent)

    def diff(
        self,
        scope: ConversationScope,
        tracked: Mapping[int, TrackedMessage],
        latest: Dict[int, SourceMessage],
        still_present: AbstractSet[int],
        candidates: AbstractSet[int],
    ) -> DiffResult:
        """Full classification for one scope and one poll."""
        result = self.classify(scope, candidates)
        unsent = self.detect_unsent(tracked, latest, still_present)
        if not unsent:
            return result
        return DiffResult(
            evicted=result.evicted,
            deleted=result.deleted,
            deferred=result.deferred,
            unsent=unsent,
        )
