from __future__ import annotations

import logging
import os
from datetime import timedelta
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from .calendar_google import GoogleCalendarRemote, build_service
from .config import AppConfig, load_config
from .diff import Diff
from .dispatch import ChangeDispatcher, Handler
from .feed import IcsFeed
from .state import open_store
from .sync import JsonIdMapping, ReconciliationHandler
from .transform import ReplacementTransform, load_replacements
from .watcher import CalendarWatcher

logger = logging.getLogger(__name__)

CONFIG_PATH_DEFAULT = "/opt/icswatch/config.yaml"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class LogEventsHandler(Handler):
    """Writes every change of a diff to the log."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logging.getLogger("icswatch.changes")

    def handle(self, diff: Diff) -> int:
        if diff.is_empty():
            self.log.debug("No changes")
            return 0
        verb = "Setup" if diff.bootstrap else "Created"
        for event in diff.added:
            self.log.info("%s %s: %s (%s - %s)", verb, event.uid, event.summary, event.start, event.end)
        for mod in diff.modified:
            changes = ", ".join(f"{name}: {before!r} -> {after!r}" for name, (before, after) in mod.changes().items())
            self.log.info("Updated %s: %s", mod.uid, changes)
        for event in diff.removed:
            self.log.info("Deleted %s: %s", event.uid, event.summary)
        return len(diff)


def build_reconciliation(cfg: AppConfig) -> ReconciliationHandler | None:
    creds_path = os.environ.get("GOOGLE_CREDENTIALS_JSON", "")
    token_path = os.environ.get("GOOGLE_TOKEN_JSON", "")
    if not (creds_path and token_path):
        logger.warning("Google sync enabled but GOOGLE_CREDENTIALS_JSON/GOOGLE_TOKEN_JSON not set; skipping it.")
        return None

    remote = GoogleCalendarRemote(build_service(creds_path, token_path), cfg.google.calendar_id)
    transform = ReplacementTransform(
        load_replacements(cfg.sync.replacements_path),
        remove_patterns=cfg.sync.remove_patterns,
        fields=cfg.sync.replace_fields,
    )
    return ReconciliationHandler(
        remote,
        JsonIdMapping(cfg.state.mapping_path),
        transform=transform,
        max_attempts=cfg.sync.max_attempts,
        skip_description_contains=cfg.sync.skip_description_contains,
        keep_past_days=cfg.sync.keep_past_days,
        ignore_description_segments=cfg.sync.ignore_description_segments,
    )


def build_watcher(cfg: AppConfig) -> CalendarWatcher:
    if not cfg.feed.url:
        raise SystemExit("No feed URL configured (feed.url or ICS_URL)")

    dispatcher = ChangeDispatcher()
    if cfg.log_events:
        dispatcher.register("log", LogEventsHandler())
    if cfg.google.enabled:
        handler = build_reconciliation(cfg)
        if handler is not None:
            dispatcher.register("google", handler)

    feed = IcsFeed(
        cfg.feed.url,
        ZoneInfo(cfg.feed.timezone),
        timeout=cfg.feed.timeout_seconds,
        empty_confirmations=cfg.feed.empty_confirmations,
    )
    interval = timedelta(minutes=cfg.feed.poll_interval_minutes) if cfg.feed.poll_interval_minutes else None
    return CalendarWatcher(
        feed.fetch,
        open_store(cfg.state.snapshot_path),
        dispatcher,
        snapshot_path=cfg.state.snapshot_path,
        poll_interval=interval,
    )


def main():
    import argparse

    ap = argparse.ArgumentParser(description="Watch an ICS feed and sync its changes")
    ap.add_argument("--config", default=CONFIG_PATH_DEFAULT)
    ap.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args()

    load_dotenv()
    cfg = load_config(args.config)
    logging.basicConfig(level=logging.DEBUG if args.verbose else cfg.log_level, format=LOG_FORMAT)

    watcher = build_watcher(cfg)
    if args.once:
        report = watcher.run_cycle()
        return 0 if report.ok else 1

    try:
        watcher.run()
    except KeyboardInterrupt:
        logger.info("Stopping")
        watcher.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
