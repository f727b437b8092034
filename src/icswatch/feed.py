from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, List, Optional
from zoneinfo import ZoneInfo
import logging

import requests
import vobject
from vobject.base import ParseError
from vobject.icalendar import stringToDurations

from .errors import FeedError
from .models import Event, Snapshot, When

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=1)


@dataclass
class ParsedCalendar:
    events: List[Event] = field(default_factory=list)
    name: Optional[str] = None
    description: Optional[str] = None
    ttl: timedelta = DEFAULT_TTL
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    on_accept: Optional[Callable[[ParsedCalendar], None]] = field(default=None, repr=False, compare=False)

    def accept(self) -> None:
        """Mark this content as committed so its validators are sent on the next poll."""
        if self.on_accept is not None:
            self.on_accept(self)

    def to_snapshot(self) -> Snapshot:
        return Snapshot(events=tuple(self.events), name=self.name, description=self.description)


def parse_ttl(value: Optional[str]) -> timedelta:
    if not value:
        return DEFAULT_TTL
    try:
        durations = stringToDurations(value.strip())
    except (ParseError, ValueError):
        logger.warning("Unparseable X-PUBLISHED-TTL %r; using %s", value, DEFAULT_TTL)
        return DEFAULT_TTL
    if not durations or durations[0] <= timedelta(0):
        return DEFAULT_TTL
    return durations[0]


def _first_value(component: Any, name: str) -> Any:
    lines = component.contents.get(name)
    if not lines:
        return None
    return lines[0].value


def _text(component: Any, name: str) -> Optional[str]:
    value = _first_value(component, name)
    if value is None:
        return None
    return str(value)


def _normalize(value: Any, tz: ZoneInfo) -> When:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=tz)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return value
    raise FeedError(f"Unsupported date value {value!r}")


def _event_uid(vevent: Any) -> Optional[str]:
    uid = _text(vevent, "uid")
    if not uid:
        return None
    # Overridden instances of a recurring event share the UID.
    recurrence_id = _first_value(vevent, "recurrence-id")
    if recurrence_id is not None:
        stamp = recurrence_id.isoformat() if isinstance(recurrence_id, (date, datetime)) else str(recurrence_id)
        uid = f"{uid}#{stamp}"
    recurring_id = _text(vevent, "x-co-recurringid")
    if recurring_id:
        uid = f"{uid}#{recurring_id}"
    return uid


def _parse_event(vevent: Any, tz: ZoneInfo) -> Optional[Event]:
    uid = _event_uid(vevent)
    if uid is None:
        logger.warning("Skipping event without UID: %s", _text(vevent, "summary"))
        return None

    dtstart = _first_value(vevent, "dtstart")
    if dtstart is None:
        logger.warning("Skipping event %s without DTSTART", uid)
        return None
    start = _normalize(dtstart, tz)

    dtend = _first_value(vevent, "dtend")
    duration = _first_value(vevent, "duration")
    if dtend is not None:
        end = _normalize(dtend, tz)
    elif isinstance(duration, timedelta):
        end = start + duration
    elif isinstance(start, datetime):
        end = start
    else:
        end = start + timedelta(days=1)

    sequence = _text(vevent, "sequence")
    last_modified = _first_value(vevent, "last-modified")
    return Event(
        uid=uid,
        start=start,
        end=end,
        summary=_text(vevent, "summary"),
        location=_text(vevent, "location"),
        description=_text(vevent, "description"),
        sequence=int(sequence) if sequence and sequence.strip().isdigit() else 0,
        last_modified=_normalize(last_modified, tz) if isinstance(last_modified, datetime) else None,
    )


def parse_calendar(text: str, tz: ZoneInfo) -> ParsedCalendar:
    try:
        cal = vobject.readOne(text)
    except (ParseError, ValueError, StopIteration) as e:
        raise FeedError(f"Invalid calendar data: {e}") from e

    events: List[Event] = []
    for vevent in cal.contents.get("vevent", []):
        event = _parse_event(vevent, tz)
        if event is not None:
            events.append(event)

    return ParsedCalendar(
        events=events,
        name=_text(cal, "x-wr-calname"),
        description=_text(cal, "x-wr-caldesc"),
        ttl=parse_ttl(_text(cal, "x-published-ttl")),
    )


class IcsFeed:
    """Downloads and parses one ICS URL, remembering validators between polls."""

    def __init__(
        self,
        url: str,
        tz: ZoneInfo,
        timeout: float = 30,
        empty_confirmations: int = 2,
        session: Optional[requests.Session] = None,
        user_agent: str = "icswatch/1.0",
    ) -> None:
        self.url = url
        self.tz = tz
        self.timeout = timeout
        self.empty_confirmations = max(1, empty_confirmations)
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent})
        self._etag: Optional[str] = None
        self._last_modified: Optional[str] = None
        self._empty_streak = 0

    def fetch(self, previous_count: int = 0) -> Optional[ParsedCalendar]:
        """Return the parsed feed, or None when the server reports no change."""
        headers = {}
        if self._etag:
            headers["If-None-Match"] = self._etag
        if self._last_modified:
            headers["If-Modified-Since"] = self._last_modified

        try:
            resp = self._session.get(self.url, headers=headers, timeout=self.timeout)
            if resp.status_code == 304:
                logger.debug("Feed not modified since last poll")
                return None
            resp.raise_for_status()
        except requests.RequestException as e:
            raise FeedError(f"Fetching {self.url} failed: {e}") from e

        parsed = parse_calendar(resp.text, self.tz)
        self._check_empty(parsed, previous_count)

        # Validators only take effect once the watcher has committed this content.
        parsed.etag = resp.headers.get("ETag")
        parsed.last_modified = resp.headers.get("Last-Modified")
        parsed.on_accept = self.remember_validators
        return parsed

    def remember_validators(self, parsed: ParsedCalendar) -> None:
        self._etag = parsed.etag
        self._last_modified = parsed.last_modified

    def _check_empty(self, parsed: ParsedCalendar, previous_count: int) -> None:
        if parsed.events or previous_count == 0:
            self._empty_streak = 0
            return
        self._empty_streak += 1
        if self._empty_streak < self.empty_confirmations:
            raise FeedError(
                f"Feed returned no events after {previous_count}; "
                f"waiting for {self.empty_confirmations - self._empty_streak} more confirmation(s)"
            )
        logger.warning("Feed has been empty %d times in a row; accepting it", self._empty_streak)
        self._empty_streak = 0
