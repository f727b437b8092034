from __future__ import annotations
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional
import logging
import threading

from .diff import Diff, compute
from .dispatch import ChangeDispatcher, DispatchReport
from .errors import CycleInProgressError
from .feed import DEFAULT_TTL, ParsedCalendar
from .models import Snapshot
from .state import SnapshotStore, save_snapshot

logger = logging.getLogger(__name__)

# fetch(previous_count) -> parsed feed, or None when unchanged since the last poll
FeedSource = Callable[[int], Optional[ParsedCalendar]]


@dataclass
class CycleReport:
    diff: Diff
    dispatch: DispatchReport
    unchanged_feed: bool = False

    @property
    def ok(self) -> bool:
        return self.dispatch.ok


class CalendarWatcher:
    """One poll-compute-commit-dispatch cycle at a time for a single calendar."""

    def __init__(
        self,
        source: FeedSource,
        store: SnapshotStore,
        dispatcher: ChangeDispatcher,
        snapshot_path: Optional[str] = None,
        poll_interval: Optional[timedelta] = None,
    ) -> None:
        self.source = source
        self.store = store
        self.dispatcher = dispatcher
        self.snapshot_path = snapshot_path
        self.poll_interval = poll_interval
        self.ttl = DEFAULT_TTL
        self.calendar_name: Optional[str] = None
        self._cycle_lock = threading.Lock()
        self._cancel = threading.Event()
        self._stop = threading.Event()

    def cancel(self) -> None:
        """Interrupt the running cycle; handlers not yet started are reported as interrupted."""
        self._cancel.set()

    def stop(self) -> None:
        self._stop.set()
        self._cancel.set()

    def run_cycle(self) -> CycleReport:
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError("A poll cycle is already running")
        try:
            self._cancel.clear()
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        old = self.store.current()
        parsed = self.source(len(old))

        new = old if parsed is None else parsed.to_snapshot()

        # Raises IntegrityError before anything is committed or dispatched.
        diff = compute(old, new, bootstrap=not self.store.initialized)

        if self._cancel.is_set():
            logger.info("Cycle cancelled before commit; keeping the previous snapshot")
            return CycleReport(diff=Diff(old=old, new=old), dispatch=DispatchReport(), unchanged_feed=parsed is None)

        if new is not old:
            self.store.commit(new)
            parsed.accept()
            self.ttl = parsed.ttl
            self.calendar_name = parsed.name or self.calendar_name
            self._persist(new)

        logger.info(
            "Changes in %s: %s",
            self.calendar_name or "unnamed calendar",
            diff.summary(),
        )
        report = self.dispatcher.dispatch(diff, cancel=self._cancel)
        for outcome in report.outcomes:
            if not outcome.ok:
                logger.warning("Handler %s: %s", outcome.name, outcome.status)
        return CycleReport(diff=diff, dispatch=report, unchanged_feed=parsed is None)

    def _persist(self, snapshot: Snapshot) -> None:
        if not self.snapshot_path:
            return
        try:
            save_snapshot(self.snapshot_path, snapshot)
        except OSError as e:
            # The in-memory snapshot is already committed; handlers must still see the diff.
            logger.error("Could not write snapshot to %s: %s", self.snapshot_path, e)

    def interval(self) -> timedelta:
        return self.poll_interval if self.poll_interval is not None else self.ttl

    def run(self, max_cycles: Optional[int] = None) -> None:
        cycles = 0
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Poll cycle failed")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            wait = self.interval()
            logger.info("Refreshing in %s", wait)
            if self._stop.wait(wait.total_seconds()):
                break
