"""Drives the detection loop."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from undeleter.errors import TransientStoreError
from undeleter.models.tracked import ConversationScope
from undeleter.monitor.snapshot_store import AppliedCycle

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    QUERYING = "querying"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    STOPPED = "stopped"


@dataclass
class MonitorContext:
    """Everything the loop needs to know about what it monitors."""

    scopes: Sequence[ConversationScope]
    window_size: int
    poll_interval: float
    cycle: int = 0


@dataclass
class CycleSummary:
    cycle: int
    applied: List[AppliedCycle] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)  # Scopes whose query failed transiently

    @property
    def deletions(self) -> int:
        return sum(len(a.records) for a in self.applied)

    @property
    def has_changes(self) -> bool:
        return bool(self.skipped) or any(a.has_changes for a in self.applied)


class PollScheduler:
    """
    Runs Idle -> Querying -> Reconciling -> Applying -> Idle for every scope.

    Cycles never overlap and a stop request is only honoured between cycles,
    so a cycle that has started always commits before the loop exits.
    """

    def __init__(self, reader, snapshot, window_manager, diff_engine, context: MonitorContext):
        self.reader = reader
        self.snapshot = snapshot
        self.window_manager = window_manager
        self.diff_engine = diff_engine
        self.context = context
        self.state = SchedulerState.IDLE
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False

    def stop(self):
        """Request a stop; the current cycle, if any, still completes."""
        if not self._stop_requested:
            logger.info("Stop requested; finishing the current cycle")
        self._stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_requested

    async def run(self, max_cycles: Optional[int] = None):
        """Poll until stopped, then release every staged copy."""
        self._stop_event = asyncio.Event()
        if self._stop_requested:
            self._stop_event.set()

        logger.info(
            f"Monitoring {len(self.context.scopes)} scope(s), last {self.context.window_size} message(s) each, "
            f"every {self.context.poll_interval}s"
        )

        try:
            while not self.stopping:
                summary = await self.run_cycle()
                if summary.has_changes:
                    logger.info(self._describe(summary))
                else:
                    logger.debug(f"Cycle {summary.cycle}: no changes")

                if max_cycles is not None and summary.cycle >= max_cycles:
                    break
                await self._sleep()
        finally:
            self.state = SchedulerState.STOPPED
            await self.snapshot.release_all()
            logger.info(f"Monitor stopped after {self.context.cycle} cycle(s)")

    async def run_cycle(self) -> CycleSummary:
        """One full pass over every scope."""
        self.context.cycle += 1
        summary = CycleSummary(cycle=self.context.cycle)

        for scope in self.context.scopes:
            applied = await self._poll_scope(scope)
            if applied is None:
                summary.skipped.append(scope.key)
            else:
                summary.applied.append(applied)

        self.state = SchedulerState.IDLE
        return summary

    async def _poll_scope(self, scope: ConversationScope) -> Optional[AppliedCycle]:
        cycle = self.context.cycle

        self.state = SchedulerState.QUERYING
        try:
            latest = self.reader.fetch_top_n(scope, self.context.window_size)
        except TransientStoreError as e:
            logger.warning(f"Cycle {cycle}: could not read {scope}, keeping its snapshot unchanged: {e}")
            return None

        self.state = SchedulerState.RECONCILING
        tracked = self.snapshot.tracked(scope)
        reconcile = self.window_manager.reconcile(scope, tracked.keys(), [m.id for m in latest])
        latest_by_id = {m.id: m for m in latest}
        diff = self.diff_engine.diff(
            scope, tracked, latest_by_id, reconcile.still_present, reconcile.candidates_for_removal
        )

        self.state = SchedulerState.APPLYING
        return await self.snapshot.apply_cycle(scope, cycle, latest, reconcile, diff)

    async def _sleep(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.context.poll_interval)
        except asyncio.TimeoutError:
            pass

    def _describe(self, summary: CycleSummary) -> str:
        parts = []
        for applied in summary.applied:
            if not applied.has_changes:
                continue
            parts.append(
                f"{applied.scope}: +{len(applied.admitted)} tracked, -{len(applied.evicted)} evicted, "
                f"{len(applied.records)} deleted"
            )
        if summary.skipped:
            parts.append(f"skipped: {', '.join(summary.skipped)}")
        return f"Cycle {summary.cycle}: " + "; ".join(parts)
