from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import os
import yaml

@dataclass
class FeedConfig:
    url: str
    timezone: str
    poll_interval_minutes: Optional[int]
    empty_confirmations: int
    timeout_seconds: float

@dataclass
class StateConfig:
    snapshot_path: str
    mapping_path: str

@dataclass
class GoogleConfig:
    enabled: bool
    calendar_id: str

@dataclass
class SyncConfig:
    replacements_path: str
    replace_fields: List[str]
    remove_patterns: List[str]
    skip_description_contains: List[str]
    keep_past_days: Optional[int]
    max_attempts: int
    ignore_description_segments: int

@dataclass
class AppConfig:
    feed: FeedConfig
    state: StateConfig
    google: GoogleConfig
    sync: SyncConfig
    log_events: bool
    log_level: str

def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)

def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = {}
    if p.exists():
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    feed = data.get("feed", {})
    state = data.get("state", {})
    google = data.get("google", {})
    sync = data.get("sync", {})
    logging_cfg = data.get("logging", {})

    return AppConfig(
        feed=FeedConfig(
            url=os.environ.get("ICS_URL") or str(feed.get("url", "")),
            timezone=str(feed.get("timezone", "UTC")),
            poll_interval_minutes=_optional_int(feed.get("poll_interval_minutes")),
            empty_confirmations=int(feed.get("empty_confirmations", 2)),
            timeout_seconds=float(feed.get("timeout_seconds", 30)),
        ),
        state=StateConfig(
            snapshot_path=str(state.get("snapshot_path", "/var/lib/icswatch/snapshot.json")),
            mapping_path=str(state.get("mapping_path", "/var/lib/icswatch/remote_ids.json")),
        ),
        google=GoogleConfig(
            enabled=bool(google.get("enabled", False)),
            calendar_id=str(google.get("calendar_id", "primary")),
        ),
        sync=SyncConfig(
            replacements_path=str(sync.get("replacements_path", "replacements.json")),
            replace_fields=list(sync.get("replace_fields", ["summary"])),
            remove_patterns=list(sync.get("remove_patterns", [])),
            skip_description_contains=list(sync.get("skip_description_contains", [])),
            keep_past_days=_optional_int(sync.get("keep_past_days", 7)),
            max_attempts=int(sync.get("max_attempts", 3)),
            ignore_description_segments=int(sync.get("ignore_description_segments", 0)),
        ),
        log_events=bool(data.get("log_events", True)),
        log_level=str(logging_cfg.get("level", "INFO")).upper(),
    )
