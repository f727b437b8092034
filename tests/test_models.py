from datetime import date, datetime, timezone

import pytest

from icswatch.errors import IntegrityError
from icswatch.models import Event, Snapshot, event_from_dict, event_to_dict, fields_differ

T1 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)


def _event(uid: str = "e1", **kwargs) -> Event:
    values = dict(uid=uid, start=T1, end=T2, summary="Math", location="Room 1")
    values.update(kwargs)
    return Event(**values)


def test_fields_differ_reports_only_changed_content_fields():
    old = _event()
    new = _event(summary="Advanced Math", location="Room 2")

    assert fields_differ(old, new) == {"summary", "location"}


def test_fields_differ_ignores_revision_metadata():
    old = _event(sequence=1, last_modified=T1)
    new = _event(sequence=4, last_modified=T2)

    assert fields_differ(old, new) == frozenset()
    assert old.same_content(new)


def test_all_day_event_differs_from_timed_event_at_midnight():
    all_day = _event(start=date(2026, 3, 2), end=date(2026, 3, 3))
    timed = _event(start=datetime(2026, 3, 2, tzinfo=timezone.utc), end=datetime(2026, 3, 3, tzinfo=timezone.utc))

    assert all_day.all_day
    assert not timed.all_day
    assert fields_differ(all_day, timed) == {"start", "end"}


def test_snapshot_index_rejects_duplicate_uids():
    snapshot = Snapshot(events=(_event("a"), _event("b"), _event("a", summary="Other")))

    with pytest.raises(IntegrityError) as excinfo:
        snapshot.index()

    assert excinfo.value.uids == ("a",)


def test_snapshot_index_rejects_empty_uid():
    with pytest.raises(IntegrityError):
        Snapshot(events=(_event(""),)).index()


def test_event_dict_keeps_dates_and_instants_apart():
    all_day = _event("d", start=date(2026, 3, 2), end=date(2026, 3, 3), description=None, last_modified=T1)

    data = event_to_dict(all_day)

    assert data["start"] == {"date": "2026-03-02"}
    assert event_from_dict(data) == all_day
    assert event_from_dict(event_to_dict(_event())) == _event()
