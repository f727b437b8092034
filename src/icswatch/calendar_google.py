from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, FrozenSet, Optional
import logging
import os

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import RemoteOperationError
from .models import Event, When
from .sync import RemoteCalendar

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]
UID_PROPERTY = "icswatch_uid"


def _get_creds(credentials_path: str, token_path: str) -> Credentials:
    creds = None
    if os.path.exists(token_path):
        creds = Credentials.from_authorized_user_file(token_path, SCOPES)
    if creds and creds.valid:
        return creds
    if creds and creds.expired and creds.refresh_token:
        creds.refresh(Request())
    else:
        flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
        creds = flow.run_local_server(port=0)
    token_dir = os.path.dirname(token_path)
    if token_dir:
        os.makedirs(token_dir, exist_ok=True)
    with open(token_path, "w", encoding="utf-8") as f:
        f.write(creds.to_json())
    return creds


def build_service(credentials_path: str, token_path: str) -> Any:
    creds = _get_creds(credentials_path, token_path)
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def _when_body(value: When, patch: bool = False) -> Dict[str, Optional[str]]:
    # All-day events have "date", timed events "dateTime"
    if isinstance(value, datetime):
        body: Dict[str, Optional[str]] = {"dateTime": value.isoformat()}
        other = "date"
    else:
        body = {"date": value.isoformat()}
        other = "dateTime"
    if patch:
        # patch merges into the stored object, so the other kind must be cleared explicitly.
        body[other] = None
    return body


def event_body(event: Event, fields: Optional[FrozenSet[str]] = None) -> Dict[str, Any]:
    """Build a Calendar API event resource, limited to `fields` when given."""
    body: Dict[str, Any] = {}
    wanted = fields if fields is not None else frozenset(("start", "end", "summary", "location", "description"))
    if "start" in wanted:
        body["start"] = _when_body(event.start, patch=fields is not None)
    if "end" in wanted:
        body["end"] = _when_body(event.end, patch=fields is not None)
    if "summary" in wanted:
        body["summary"] = event.summary or "(No title)"
    if "location" in wanted:
        body["location"] = event.location or ""
    if "description" in wanted:
        body["description"] = event.description or ""
    if fields is None:
        body["extendedProperties"] = {"private": {UID_PROPERTY: event.uid}}
    return body


class GoogleCalendarRemote(RemoteCalendar):
    def __init__(self, service: Any, calendar_id: str = "primary") -> None:
        self.service = service
        self.calendar_id = calendar_id

    def find_by_uid(self, uid: str) -> Optional[str]:
        resp = self.service.events().list(
            calendarId=self.calendar_id,
            privateExtendedProperty=f"{UID_PROPERTY}={uid}",
            showDeleted=False,
            maxResults=1,
        ).execute()
        items = resp.get("items", [])
        if not items:
            return None
        return items[0].get("id")

    def create(self, event: Event) -> str:
        try:
            # An earlier attempt may have succeeded without us recording the id.
            existing = self.find_by_uid(event.uid)
            if existing:
                logger.info("Event %s already exists remotely as %s; overwriting", event.uid, existing)
                self.service.events().update(
                    calendarId=self.calendar_id, eventId=existing, body=event_body(event)
                ).execute()
                return existing
            created = self.service.events().insert(calendarId=self.calendar_id, body=event_body(event)).execute()
        except HttpError as e:
            raise RemoteOperationError("create", event.uid, str(e)) from e
        return created["id"]

    def update(self, remote_id: str, event: Event, fields: FrozenSet[str]) -> None:
        body = event_body(event, fields)
        if not body:
            return
        try:
            self.service.events().patch(calendarId=self.calendar_id, eventId=remote_id, body=body).execute()
        except HttpError as e:
            raise RemoteOperationError("update", event.uid, str(e)) from e

    def delete(self, remote_id: str) -> None:
        try:
            self.service.events().delete(calendarId=self.calendar_id, eventId=remote_id).execute()
        except HttpError as e:
            if e.resp.status in (404, 410):
                logger.info("Remote event %s was already deleted", remote_id)
                return
            raise RemoteOperationError("delete", remote_id, str(e)) from e
