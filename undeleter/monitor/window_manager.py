"""Sliding window membership per conversation scope."""

import logging
from typing import AbstractSet, List, Sequence, Tuple

from undeleter.models.tracked import ConversationScope, ReconcileResult

logger = logging.getLogger(__name__)


class WindowManager:
    """Keeps each scope's tracked set bounded to the most recent N messages.

    Pure bookkeeping: nothing here touches the store or the snapshot.
    """

    def __init__(self, window_size: int):
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        self.window_size = window_size

    def clamp(self, scope: ConversationScope, latest_top_n: Sequence[int]) -> Tuple[int, ...]:
        """Drop repeated ids and anything past the first N in store order."""
        ordered: List[int] = []
        seen = set()
        for message_id in latest_top_n:
            if message_id in seen:
                continue
            seen.add(message_id)
            ordered.append(message_id)

        if len(ordered) > self.window_size:
            logger.warning(
                f"Store returned {len(ordered)} messages for {scope} but the window holds "
                f"{self.window_size}; ignoring the oldest {len(ordered) - self.window_size} this cycle"
            )
            ordered = ordered[:self.window_size]
        return tuple(ordered)

    def reconcile(
        self,
        scope: ConversationScope,
        previous_tracked: AbstractSet[int],
        latest_top_n: Sequence[int],
    ) -> ReconcileResult:
        """Split ids into still present, removal candidates and newly seen.

        The three sets are disjoint: candidates are tracked ids missing from
        the clamped top-N, newly seen ids are top-N ids not yet tracked.
        """
        order = self.clamp(scope, latest_top_n)
        latest = frozenset(order)
        previous = frozenset(previous_tracked)

        return ReconcileResult(
            still_present=previous & latest,
            candidates_for_removal=previous - latest,
            newly_seen=latest - previous,
            order=order,
        )

    def admit(self, result: ReconcileResult, retained: int) -> List[int]:
        """
        Newly seen ids that fit in the window, newest first.

        ``retained`` is the number of tracked ids that stay after this cycle
        (still present plus candidates whose classification was deferred).
        Ids that do not fit are left for a later cycle, where they are seen
        as new again if they are still among the most recent N.
        """
        room = max(self.window_size - retained, 0)
        fresh = [message_id for message_id in result.order if message_id in result.newly_seen]
        if len(fresh) > room:
            logger.debug(f"Window full; postponing {len(fresh) - room} newly seen message(s)")
        return fresh[:room]
