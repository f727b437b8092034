"""Reconciliation of calendar diffs against a remote calendar.

The handler turns each Diff into create/update/delete calls, keeps the
uid -> remote id mapping up to date and retries failed calls on later cycles.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence
import json
import logging
import os

from .diff import Diff, Modification
from .dispatch import Handler
from .errors import RemoteOperationError
from .models import COMPARABLE_FIELDS, TEXT_FIELDS, Event
from .transform import FieldTransform, identity_transform

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"


class RemoteCalendar(ABC):
    @abstractmethod
    def create(self, event: Event) -> str:
        """Create the event remotely and return its remote id."""

    @abstractmethod
    def update(self, remote_id: str, event: Event, fields: FrozenSet[str]) -> None:
        """Write only `fields` of `event` to the remote event."""

    @abstractmethod
    def delete(self, remote_id: str) -> None:
        ...


class IdMappingStore(ABC):
    @abstractmethod
    def get(self, uid: str) -> Optional[str]:
        ...

    @abstractmethod
    def put(self, uid: str, remote_id: str) -> None:
        ...

    @abstractmethod
    def delete(self, uid: str) -> None:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class MemoryIdMapping(IdMappingStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._ids: Dict[str, str] = dict(initial or {})

    def get(self, uid: str) -> Optional[str]:
        return self._ids.get(uid)

    def put(self, uid: str, remote_id: str) -> None:
        self._ids[uid] = remote_id

    def delete(self, uid: str) -> None:
        self._ids.pop(uid, None)

    def __len__(self) -> int:
        return len(self._ids)


class JsonIdMapping(MemoryIdMapping):
    """Mapping persisted as a JSON object, rewritten on every change."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        initial: Dict[str, str] = {}
        if self.path.exists():
            try:
                initial = {str(k): str(v) for k, v in json.loads(self.path.read_text(encoding="utf-8")).items()}
            except (ValueError, AttributeError) as e:
                logger.warning("Remote id mapping %s is unreadable (%s); a full resync will follow", path, e)
        super().__init__(initial)

    def put(self, uid: str, remote_id: str) -> None:
        super().put(uid, remote_id)
        self._save()

    def delete(self, uid: str) -> None:
        super().delete(uid)
        self._save()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(self._ids, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self.path)


@dataclass
class Operation:
    action: str
    uid: str
    event: Event
    fields: FrozenSet[str] = frozenset()
    attempts: int = 0


@dataclass
class SyncResult:
    applied: List[Operation] = field(default_factory=list)
    failed: List[RemoteOperationError] = field(default_factory=list)
    skipped: List[Operation] = field(default_factory=list)
    abandoned: List[Operation] = field(default_factory=list)
    resync: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.abandoned


def _merge(pending: Operation, new: Operation) -> Operation:
    if pending.action == CREATE and new.action == UPDATE:
        return replace(new, action=CREATE, fields=frozenset(), attempts=pending.attempts)
    if pending.action == UPDATE and new.action == UPDATE:
        return replace(new, fields=pending.fields | new.fields, attempts=pending.attempts)
    # Attempts are counted per uid, not per operation.
    return replace(new, attempts=pending.attempts)


def _end_as_datetime(event: Event) -> datetime:
    end = event.end
    if isinstance(end, datetime):
        return end
    return datetime.combine(end, datetime.min.time(), tzinfo=timezone.utc)


class ReconciliationHandler(Handler):
    def __init__(
        self,
        remote: RemoteCalendar,
        mapping: IdMappingStore,
        transform: FieldTransform = identity_transform,
        max_attempts: int = 3,
        skip_description_contains: Sequence[str] = (),
        keep_past_days: Optional[int] = None,
        ignore_description_segments: int = 0,
        now: Callable[[], datetime] = lambda: datetime.now(tz=timezone.utc),
    ) -> None:
        self.remote = remote
        self.mapping = mapping
        self.transform = transform
        self.max_attempts = max(1, max_attempts)
        self.skip_description_contains = list(skip_description_contains)
        self.keep_past_days = keep_past_days
        self.ignore_description_segments = max(0, ignore_description_segments)
        self.now = now
        self._pending: Dict[str, Operation] = {}

    @property
    def pending(self) -> List[Operation]:
        return list(self._pending.values())

    def handle(self, diff: Diff) -> SyncResult:
        result = SyncResult()
        planned = self._plan(diff, result)

        operations: Dict[str, Operation] = dict(self._pending)
        for uid, op in planned.items():
            queued = operations.pop(uid, None)
            operations[uid] = _merge(queued, op) if queued else op

        for op in operations.values():
            self._apply(op, result)

        logger.info(
            "Sync finished: %d applied, %d failed, %d skipped, %d abandoned%s",
            len(result.applied),
            len(result.failed),
            len(result.skipped),
            len(result.abandoned),
            " (full resync)" if result.resync else "",
        )
        return result

    def _plan(self, diff: Diff, result: SyncResult) -> Dict[str, Operation]:
        planned: Dict[str, Operation] = {}

        if len(self.mapping) == 0 and any(self._create_skip_reason(e) is None for e in diff.old):
            logger.warning("Remote id mapping is empty; resyncing all %d current events", len(diff.new))
            result.resync = True
            for event in diff.new:
                planned[event.uid] = Operation(CREATE, event.uid, event)
            return planned

        for event in diff.added:
            if self.mapping.get(event.uid) is not None:
                planned[event.uid] = Operation(UPDATE, event.uid, event, frozenset(COMPARABLE_FIELDS))
            else:
                planned[event.uid] = Operation(CREATE, event.uid, event)

        for mod in diff.modified:
            if self._description_only_reworded(mod):
                logger.debug("Ignoring description change of %s outside the compared segments", mod.uid)
                result.skipped.append(Operation(UPDATE, mod.uid, mod.new, mod.changed_fields))
                continue
            if self.mapping.get(mod.uid) is None:
                logger.warning("No remote id for modified event %s; creating it", mod.uid)
                planned[mod.uid] = Operation(CREATE, mod.uid, mod.new)
            else:
                planned[mod.uid] = Operation(UPDATE, mod.uid, mod.new, mod.changed_fields)

        for event in diff.removed:
            planned[event.uid] = Operation(DELETE, event.uid, event)

        return planned

    def _transformed(self, event: Event) -> Event:
        changes = {}
        for name in TEXT_FIELDS:
            value = getattr(event, name)
            if value is not None:
                changes[name] = self.transform(name, value)
        return replace(event, **changes)

    def _description_only_reworded(self, mod: Modification) -> bool:
        if not self.ignore_description_segments or mod.changed_fields != {"description"}:
            return False
        before, after = mod.old.description, mod.new.description
        if before is None or after is None:
            return False
        n = self.ignore_description_segments
        return before.split(";")[n:] == after.split(";")[n:]

    def _create_skip_reason(self, event: Event) -> Optional[str]:
        description = event.description or ""
        for marker in self.skip_description_contains:
            if marker and marker in description:
                return f"description contains {marker!r}"
        return None

    def _skip_reason(self, op: Operation) -> Optional[str]:
        if op.action == CREATE:
            return self._create_skip_reason(op.event)
        if op.action == DELETE:
            if self.mapping.get(op.uid) is None:
                return "no remote id recorded"
            if self.keep_past_days is not None:
                cutoff = self.now() - timedelta(days=self.keep_past_days)
                if _end_as_datetime(op.event) < cutoff:
                    return f"ended more than {self.keep_past_days} days ago"
        return None

    def _apply(self, op: Operation, result: SyncResult) -> None:
        reason = self._skip_reason(op)
        if reason:
            logger.info("Skipping %s of %s: %s", op.action, op.uid, reason)
            self._pending.pop(op.uid, None)
            if op.action == DELETE and self.mapping.get(op.uid) is not None:
                # The remote event stays, but the uid is gone from the feed for good.
                self.mapping.delete(op.uid)
            result.skipped.append(op)
            return

        try:
            self._execute(op)
        except Exception as e:
            op.attempts += 1
            error = e if isinstance(e, RemoteOperationError) else RemoteOperationError(op.action, op.uid, str(e))
            result.failed.append(error)
            if op.attempts < self.max_attempts:
                logger.warning("%s (attempt %d/%d, will retry)", error, op.attempts, self.max_attempts)
                self._pending[op.uid] = op
            else:
                logger.error("%s (giving up after %d attempts)", error, op.attempts)
                self._pending.pop(op.uid, None)
                result.abandoned.append(op)
            return

        self._pending.pop(op.uid, None)
        result.applied.append(op)

    def _execute(self, op: Operation) -> None:
        if op.action == CREATE:
            logger.info("Creating event %s", op.uid)
            remote_id = self.remote.create(self._transformed(op.event))
            self.mapping.put(op.uid, remote_id)
        elif op.action == UPDATE:
            remote_id = self.mapping.get(op.uid)
            if remote_id is None:
                raise RemoteOperationError(op.action, op.uid, "no remote id recorded")
            logger.info("Updating event %s: %s", op.uid, ", ".join(sorted(op.fields)))
            self.remote.update(remote_id, self._transformed(op.event), op.fields)
        elif op.action == DELETE:
            remote_id = self.mapping.get(op.uid)
            logger.info("Deleting event %s", op.uid)
            self.remote.delete(remote_id)
            self.mapping.delete(op.uid)
        else:
            raise ValueError(f"Unknown operation {op.action!r}")
