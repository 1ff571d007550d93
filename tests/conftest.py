from __future__ import annotations

import itertools
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.errors import EventNotFoundError, SyncTokenInvalidError
from datetime_utils import UTC, to_rfc3339_utc
from models.event import TASK_ID_KEY, CalendarInfo, EventPage, ExternalEvent
from storage.db import create_sqlite_engine, init_db, make_session_factory


@pytest.fixture()
def session_factory(tmp_path):
    engine = create_sqlite_engine(f"sqlite:///{(tmp_path / 'sync.db').as_posix()}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


class FakeCalendarClient:
    """In-memory calendar with sync tokens, mirroring ``CalendarClient``'s surface."""

    def __init__(self, start: Optional[datetime] = None):
        self.events: Dict[str, Dict[str, dict]] = {}
        self.changes: Dict[str, List[tuple]] = {}
        self._seq = itertools.count(1)
        self._ids = itertools.count(1)
        self._now = start or datetime(2026, 1, 1, 8, 0, tzinfo=UTC)
        self._lock = threading.Lock()
        self.expired_tokens: set = set()
        self.full_list_gone = False
        self.fail_create: Optional[Exception] = None
        self.calls: List[tuple] = []

    # ----- helpers for tests -----
    def _tick(self) -> str:
        self._now += timedelta(seconds=1)
        return to_rfc3339_utc(self._now)

    def put(self, calendar_id: str, payload: dict) -> dict:
        """Store ``payload`` as if it had been edited in Google Calendar."""
        with self._lock:
            body = dict(payload)
            body.setdefault("id", f"evt-{next(self._ids)}")
            body.setdefault("status", "confirmed")
            body.setdefault("updated", self._tick())
            self.events.setdefault(calendar_id, {})[body["id"]] = body
            self.changes.setdefault(calendar_id, []).append((next(self._seq), body["id"]))
            return body

    def cancel(self, calendar_id: str, event_id: str) -> None:
        body = dict(self.events[calendar_id][event_id])
        body["status"] = "cancelled"
        body["updated"] = self._tick()
        self.put(calendar_id, body)

    def current_token(self, calendar_id: str) -> str:
        changes = self.changes.get(calendar_id) or [(0, None)]
        return f"tok-{changes[-1][0]}"

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    def live(self, calendar_id: str) -> List[dict]:
        return [e for e in self.events.get(calendar_id, {}).values() if e.get("status") != "cancelled"]

    # ----- CalendarClient surface -----
    def list_calendars(self) -> List[CalendarInfo]:
        return [CalendarInfo(id=cid) for cid in self.events]

    def list_events(self, calendar_id, time_min=None, time_max=None, page_token=None, max_pages=None):
        self.calls.append(("list_events", calendar_id))
        if self.full_list_gone:
            raise SyncTokenInvalidError("gone", 410)
        items = [ExternalEvent.from_api(e, calendar_id) for e in self.live(calendar_id)]
        return EventPage(events=items, next_sync_token=self.current_token(calendar_id))

    def list_events_since(self, calendar_id, sync_token, page_token=None, max_pages=None):
        self.calls.append(("list_events_since", calendar_id))
        if sync_token in self.expired_tokens:
            raise SyncTokenInvalidError("sync token expired", 410)
        since = int(sync_token.split("-", 1)[1])
        seen: Dict[str, dict] = {}
        for seq, event_id in self.changes.get(calendar_id, []):
            if seq > since:
                seen[event_id] = self.events[calendar_id][event_id]
        items = [ExternalEvent.from_api(e, calendar_id) for e in seen.values()]
        return EventPage(events=items, next_sync_token=self.current_token(calendar_id))

    def get_event(self, calendar_id, event_id):
        body = self.events.get(calendar_id, {}).get(event_id)
        if body is None:
            raise EventNotFoundError("not found", 404)
        return ExternalEvent.from_api(body, calendar_id)

    def create_event(self, calendar_id, event):
        self.calls.append(("create_event", calendar_id))
        if self.fail_create is not None:
            raise self.fail_create
        return ExternalEvent.from_api(self.put(calendar_id, event.to_api()), calendar_id)

    def update_event(self, calendar_id, event_id, event):
        self.calls.append(("update_event", calendar_id))
        existing = self.events.get(calendar_id, {}).get(event_id)
        if existing is None or existing.get("status") == "cancelled":
            raise EventNotFoundError("not found", 404)
        body = event.to_api()
        body["id"] = event_id
        return ExternalEvent.from_api(self.put(calendar_id, body), calendar_id)

    def delete_event(self, calendar_id, event_id):
        self.calls.append(("delete_event", calendar_id))
        existing = self.events.get(calendar_id, {}).get(event_id)
        if existing is None or existing.get("status") == "cancelled":
            return False
        self.cancel(calendar_id, event_id)
        return True

    def find_event_by_task(self, calendar_id, task_id):
        self.calls.append(("find_event_by_task", calendar_id))
        for body in self.live(calendar_id):
            private = (body.get("extendedProperties") or {}).get("private") or {}
            if private.get(TASK_ID_KEY) == task_id:
                return ExternalEvent.from_api(body, calendar_id)
        return None


class StaticCredentials:
    """Credential store stand-in that always hands out the same token."""

    def __init__(self, token: str = "access-token", error: Optional[Exception] = None):
        self.token = token
        self.error = error

    def get_valid_token(self, owner_id: str) -> str:
        if self.error is not None:
            raise self.error
        return self.token


@pytest.fixture()
def fake_calendar():
    return FakeCalendarClient()
