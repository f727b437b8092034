from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import json
import logging
import os
import threading

from .errors import IntegrityError
from .models import Snapshot, event_from_dict, event_to_dict

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Holds the last accepted snapshot of one watched calendar."""

    def __init__(self, initial: Optional[Snapshot] = None) -> None:
        if initial is not None:
            initial.index()
        self._lock = threading.Lock()
        self._current = initial if initial is not None else Snapshot.empty()
        self._initialized = initial is not None

    @property
    def initialized(self) -> bool:
        with self._lock:
            return self._initialized

    def current(self) -> Snapshot:
        with self._lock:
            return self._current

    def commit(self, new: Snapshot) -> None:
        # Validation happens before the swap so a rejected snapshot leaves state untouched.
        new.index()
        with self._lock:
            self._current = new
            self._initialized = True
        logger.debug("Committed snapshot with %d events taken at %s", len(new), new.taken_at.isoformat())

    def restore(self, snapshot: Snapshot) -> None:
        self.commit(snapshot)


def load_snapshot(path: str) -> Optional[Snapshot]:
    p = Path(path)
    if not p.exists():
        return None
    try:
        data: Dict[str, Any] = json.loads(p.read_text(encoding="utf-8"))
        return Snapshot(
            events=tuple(event_from_dict(item) for item in data.get("events", [])),
            taken_at=datetime.fromisoformat(data["taken_at"]),
            name=data.get("name"),
            description=data.get("description"),
        )
    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Snapshot backup at %s is unreadable (%s); starting fresh", path, e)
        return None


def save_snapshot(path: str, snapshot: Snapshot) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "taken_at": snapshot.taken_at.isoformat(),
        "name": snapshot.name,
        "description": snapshot.description,
        "events": [event_to_dict(e) for e in snapshot.events],
    }
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, p)


def open_store(path: Optional[str]) -> SnapshotStore:
    """Build a store, restoring the persisted snapshot when one exists."""
    if not path:
        return SnapshotStore()
    snapshot = load_snapshot(path)
    if snapshot is None:
        return SnapshotStore()
    try:
        store = SnapshotStore(snapshot)
    except IntegrityError as e:
        logger.warning("Ignoring snapshot backup at %s: %s", path, e)
        return SnapshotStore()
    logger.info("Restored %d events from %s", len(snapshot), path)
    return store
