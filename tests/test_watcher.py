import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from icswatch.dispatch import ChangeDispatcher
from icswatch.errors import CycleInProgressError, FeedError, IntegrityError
from icswatch.feed import IcsFeed, ParsedCalendar
from icswatch.models import Event
from icswatch.state import SnapshotStore, load_snapshot
from icswatch.watcher import CalendarWatcher

T1 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _event(uid: str, summary: str = "Lecture") -> Event:
    return Event(uid=uid, start=T1, end=T2, summary=summary)


class ScriptedFeed:
    """Returns the queued results in order; exceptions are raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.previous_counts = []

    def __call__(self, previous_count):
        self.previous_counts.append(previous_count)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _parsed(*events: Event, ttl: timedelta = timedelta(hours=1)) -> ParsedCalendar:
    return ParsedCalendar(events=list(events), name="Uni", ttl=ttl)


def _watcher(feed, store=None, **kwargs):
    diffs = []
    dispatcher = ChangeDispatcher()
    dispatcher.register("record", diffs.append)
    return CalendarWatcher(feed, store or SnapshotStore(), dispatcher, **kwargs), diffs


def test_first_cycle_is_bootstrap_and_commits(tmp_path: Path):
    path = tmp_path / "snapshot.json"
    feed = ScriptedFeed(_parsed(_event("a"), _event("b"), ttl=timedelta(minutes=30)))
    watcher, diffs = _watcher(feed, snapshot_path=str(path))

    report = watcher.run_cycle()

    assert report.ok
    assert diffs[0].bootstrap
    assert [e.uid for e in diffs[0].added] == ["a", "b"]
    assert [e.uid for e in watcher.store.current()] == ["a", "b"]
    assert [e.uid for e in load_snapshot(str(path))] == ["a", "b"]
    assert watcher.interval() == timedelta(minutes=30)
    assert watcher.calendar_name == "Uni"


def test_second_cycle_reports_changes_against_committed_state():
    feed = ScriptedFeed(_parsed(_event("a", "Math")), _parsed(_event("a", "Advanced Math"), _event("e2", "Physics")))
    watcher, diffs = _watcher(feed)

    watcher.run_cycle()
    report = watcher.run_cycle()

    assert feed.previous_counts == [0, 1]
    assert not report.diff.bootstrap
    assert [e.uid for e in report.diff.added] == ["e2"]
    assert report.diff.modified[0].changed_fields == {"summary"}
    assert len(diffs) == 2


def test_unchanged_feed_still_dispatches_empty_heartbeat():
    feed = ScriptedFeed(_parsed(_event("a")), None)
    watcher, diffs = _watcher(feed)
    watcher.run_cycle()
    committed = watcher.store.current()

    report = watcher.run_cycle()

    assert report.unchanged_feed
    assert diffs[1].is_empty()
    assert watcher.store.current() is committed


def test_duplicate_uids_abort_cycle_without_dispatch():
    feed = ScriptedFeed(_parsed(_event("a")), _parsed(_event("b"), _event("b", "Again")))
    watcher, diffs = _watcher(feed)
    watcher.run_cycle()
    before = watcher.store.current()

    with pytest.raises(IntegrityError):
        watcher.run_cycle()

    assert watcher.store.current() is before
    assert len(diffs) == 1


def test_feed_error_keeps_previous_snapshot():
    feed = ScriptedFeed(_parsed(_event("a")), FeedError("offline"))
    watcher, diffs = _watcher(feed)
    watcher.run_cycle()
    before = watcher.store.current()

    with pytest.raises(FeedError):
        watcher.run_cycle()

    assert watcher.store.current() is before
    assert len(diffs) == 1


def test_overlapping_cycles_are_refused():
    entered = threading.Event()
    release = threading.Event()

    def slow_feed(previous_count):
        entered.set()
        release.wait(5)
        return _parsed(_event("a"))

    watcher, _ = _watcher(slow_feed)
    worker = threading.Thread(target=watcher.run_cycle)
    worker.start()
    entered.wait(5)
    try:
        with pytest.raises(CycleInProgressError):
            watcher.run_cycle()
    finally:
        release.set()
        worker.join(5)


def test_cancel_during_dispatch_reports_remaining_handlers_interrupted():
    feed = ScriptedFeed(_parsed(_event("a")))
    dispatcher = ChangeDispatcher()
    watcher = CalendarWatcher(feed, SnapshotStore(), dispatcher)
    dispatcher.register("first", lambda diff: watcher.cancel())
    dispatcher.register("second", lambda diff: None)

    report = watcher.run_cycle()

    assert report.dispatch.pairs() == [("first", "succeeded"), ("second", "interrupted")]
    assert watcher.store.initialized


def test_run_survives_failed_cycles_and_respects_max_cycles():
    feed = ScriptedFeed(FeedError("offline"), _parsed(_event("a")))
    watcher, diffs = _watcher(feed, poll_interval=timedelta(seconds=0))

    watcher.run(max_cycles=2)

    assert len(diffs) == 1
    assert [e.uid for e in watcher.store.current()] == ["a"]


ONE_EVENT_CALENDAR = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//icswatch tests//EN
BEGIN:VEVENT
UID:a
DTSTAMP:20260301T000000Z
DTSTART:20260302T090000Z
DTEND:20260302T100000Z
SUMMARY:Lecture
END:VEVENT
END:VCALENDAR
"""


class EtagServer:
    """Answers 304 when the client already holds the current ETag."""

    def __init__(self):
        self.headers = {}

    def get(self, url, headers=None, timeout=None):
        if (headers or {}).get("If-None-Match") == '"v1"':
            return SimpleNamespace(status_code=304, text="", headers={}, raise_for_status=lambda: None)
        return SimpleNamespace(
            status_code=200, text=ONE_EVENT_CALENDAR, headers={"ETag": '"v1"'}, raise_for_status=lambda: None
        )


def test_cancel_before_commit_leaves_feed_content_to_be_adopted_later():
    feed = IcsFeed("https://example.org/cal.ics", timezone.utc, session=EtagServer())
    calls = []

    def source(previous_count):
        parsed = feed.fetch(previous_count)
        if not calls:
            watcher.cancel()
        calls.append(parsed)
        return parsed

    watcher, diffs = _watcher(source)

    cancelled = watcher.run_cycle()
    assert cancelled.diff.is_empty()
    assert diffs == []
    assert not watcher.store.initialized

    report = watcher.run_cycle()

    assert [e.uid for e in report.diff.added] == ["a"]
    assert [e.uid for e in watcher.store.current()] == ["a"]
    assert watcher.run_cycle().unchanged_feed


def test_rejected_content_is_fetched_again_after_integrity_error():
    feed = IcsFeed("https://example.org/cal.ics", timezone.utc, session=EtagServer())
    duplicated = _parsed(_event("a"), _event("a", "Again"))
    results = [duplicated]

    def source(previous_count):
        parsed = feed.fetch(previous_count)
        if results:
            bad = results.pop()
            bad.etag, bad.on_accept = parsed.etag, parsed.on_accept
            return bad
        return parsed

    watcher, _ = _watcher(source)
    with pytest.raises(IntegrityError):
        watcher.run_cycle()

    report = watcher.run_cycle()

    assert not report.unchanged_feed
    assert [e.uid for e in report.diff.added] == ["a"]


def test_snapshot_write_failure_still_dispatches(tmp_path: Path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    feed = ScriptedFeed(_parsed(_event("a")))
    watcher, diffs = _watcher(feed, snapshot_path=str(blocker / "snapshot.json"))

    report = watcher.run_cycle()

    assert report.ok
    assert [e.uid for e in diffs[0].added] == ["a"]
    assert watcher.store.initialized
    assert "Could not write snapshot" in caplog.text
