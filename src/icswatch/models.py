from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, FrozenSet, Iterator, Optional, Tuple, Union

from .errors import IntegrityError

# date for all-day events, timezone-aware datetime (UTC) otherwise
When = Union[date, datetime]

COMPARABLE_FIELDS: Tuple[str, ...] = ("start", "end", "summary", "location", "description")
TEXT_FIELDS: Tuple[str, ...] = ("summary", "location", "description")


@dataclass(frozen=True)
class Event:
    uid: str
    start: When
    end: When
    summary: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    sequence: int = 0
    last_modified: Optional[datetime] = None

    @property
    def all_day(self) -> bool:
        return not isinstance(self.start, datetime)

    def same_content(self, other: "Event") -> bool:
        return not fields_differ(self, other)


def fields_differ(old: Event, new: Event) -> FrozenSet[str]:
    """Return the names of the comparable fields whose values differ.

    uid, sequence and last_modified never count as a change.
    """
    return frozenset(
        name for name in COMPARABLE_FIELDS if getattr(old, name) != getattr(new, name)
    )


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class Snapshot:
    events: Tuple[Event, ...] = ()
    taken_at: datetime = field(default_factory=_utcnow)
    name: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def empty(cls) -> "Snapshot":
        return cls(events=())

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def index(self) -> Dict[str, Event]:
        """Map uid to event, rejecting empty or duplicate uids."""
        by_uid: Dict[str, Event] = {}
        duplicates: list[str] = []
        for event in self.events:
            if not event.uid:
                raise IntegrityError("Snapshot contains an event without a uid")
            if event.uid in by_uid:
                duplicates.append(event.uid)
                continue
            by_uid[event.uid] = event
        if duplicates:
            raise IntegrityError(
                f"Snapshot contains duplicate uids: {', '.join(sorted(set(duplicates)))}",
                uids=tuple(sorted(set(duplicates))),
            )
        return by_uid


def _when_to_json(value: When) -> Dict[str, str]:
    if isinstance(value, datetime):
        return {"dateTime": value.isoformat()}
    return {"date": value.isoformat()}


def _when_from_json(value: Dict[str, str]) -> When:
    if "dateTime" in value:
        parsed = datetime.fromisoformat(value["dateTime"])
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return date.fromisoformat(value["date"])


def event_to_dict(event: Event) -> Dict[str, Any]:
    return {
        "uid": event.uid,
        "start": _when_to_json(event.start),
        "end": _when_to_json(event.end),
        "summary": event.summary,
        "location": event.location,
        "description": event.description,
        "sequence": event.sequence,
        "last_modified": event.last_modified.isoformat() if event.last_modified else None,
    }


def event_from_dict(data: Dict[str, Any]) -> Event:
    last_modified = data.get("last_modified")
    return Event(
        uid=str(data["uid"]),
        start=_when_from_json(data["start"]),
        end=_when_from_json(data["end"]),
        summary=data.get("summary"),
        location=data.get("location"),
        description=data.get("description"),
        sequence=int(data.get("sequence") or 0),
        last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
    )
