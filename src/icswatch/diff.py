from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .models import Event, Snapshot, fields_differ


@dataclass(frozen=True)
class Modification:
    old: Event
    new: Event
    changed_fields: FrozenSet[str]

    @property
    def uid(self) -> str:
        return self.new.uid

    def changes(self) -> Dict[str, Tuple[Any, Any]]:
        """Per-field (before, after) values, in a stable field order."""
        return {
            name: (getattr(self.old, name), getattr(self.new, name))
            for name in sorted(self.changed_fields)
        }


@dataclass(frozen=True)
class Diff:
    added: Tuple[Event, ...] = ()
    removed: Tuple[Event, ...] = ()
    modified: Tuple[Modification, ...] = ()
    bootstrap: bool = False
    old: Snapshot = field(default_factory=Snapshot.empty, repr=False, compare=False)
    new: Snapshot = field(default_factory=Snapshot.empty, repr=False, compare=False)

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified)

    def __len__(self) -> int:
        return len(self.added) + len(self.removed) + len(self.modified)

    def summary(self) -> str:
        return f"+{len(self.added)} -{len(self.removed)} ~{len(self.modified)}"


def compute(old: Snapshot, new: Snapshot, bootstrap: Optional[bool] = None) -> Diff:
    """Compare two snapshots by uid and return only the actionable deltas.

    Events present in both snapshots are compared on their content fields;
    sequence and last_modified alone never produce a modification. Raises
    IntegrityError when either snapshot holds duplicate uids.
    """
    old_by_uid = old.index()
    new_by_uid = new.index()

    added = []
    modified = []
    for event in new.events:
        previous = old_by_uid.get(event.uid)
        if previous is None:
            added.append(event)
            continue
        changed = fields_differ(previous, event)
        if changed:
            modified.append(Modification(old=previous, new=event, changed_fields=changed))

    removed = [event for event in old.events if event.uid not in new_by_uid]

    return Diff(
        added=tuple(added),
        removed=tuple(removed),
        modified=tuple(modified),
        bootstrap=(not old_by_uid) if bootstrap is None else bootstrap,
        old=old,
        new=new,
    )
