"""Typed view over Google Calendar event payloads."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from core.task_options import normalize_priority, normalize_status
from datetime_utils import UTC, ensure_utc, parse_date, parse_rfc3339, to_rfc3339_utc

SOURCE_KEY = "taskshoot_source"
TASK_ID_KEY = "taskshoot_task_id"
PRIORITY_KEY = "taskshoot_priority"
STATUS_KEY = "taskshoot_status"
CATEGORY_KEY = "taskshoot_category_id"
ESTIMATE_KEY = "taskshoot_estimated_minutes"

MARKER_KEYS = (SOURCE_KEY, TASK_ID_KEY, PRIORITY_KEY, STATUS_KEY, CATEGORY_KEY, ESTIMATE_KEY)


@dataclass(frozen=True)
class SyncSourceMarker:
    """Identity block stamped into events created by this application."""

    task_id: str
    priority: str
    status: str
    category_id: Optional[str] = None
    estimated_minutes: Optional[int] = None

    def to_properties(self) -> Dict[str, str]:
        return {
            SOURCE_KEY: "true",
            TASK_ID_KEY: self.task_id,
            PRIORITY_KEY: self.priority,
            STATUS_KEY: self.status,
            CATEGORY_KEY: self.category_id or "",
            ESTIMATE_KEY: "" if self.estimated_minutes is None else str(self.estimated_minutes),
        }

    @classmethod
    def from_properties(cls, props: Optional[Dict[str, Any]]) -> Optional["SyncSourceMarker"]:
        if not props or str(props.get(SOURCE_KEY, "")).lower() != "true":
            return None
        task_id = props.get(TASK_ID_KEY)
        if not task_id:
            return None
        estimate_raw = str(props.get(ESTIMATE_KEY) or "").strip()
        try:
            estimate = int(estimate_raw) if estimate_raw else None
        except ValueError:
            estimate = None
        return cls(
            task_id=str(task_id),
            priority=normalize_priority(props.get(PRIORITY_KEY)),
            status=normalize_status(props.get(STATUS_KEY)),
            category_id=str(props.get(CATEGORY_KEY) or "") or None,
            estimated_minutes=estimate,
        )


def _parse_boundary(payload: Optional[Dict[str, Any]]) -> tuple[Optional[datetime], bool]:
    if not payload:
        return None, False
    date_time = payload.get("dateTime")
    if date_time:
        return parse_rfc3339(date_time), False
    day = parse_date(payload.get("date"))
    if day:
        return datetime.combine(day, datetime.min.time(), tzinfo=UTC), True
    return None, False


@dataclass
class ExternalEvent:
    id: Optional[str] = None
    calendar_id: Optional[str] = None
    title: str = ""
    description: str = ""
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    start_day: Optional[date] = None
    end_day: Optional[date] = None
    color_id: Optional[str] = None
    status: str = "confirmed"
    visibility: Optional[str] = None
    updated: Optional[datetime] = None
    html_link: Optional[str] = None
    reminders: Optional[List[int]] = None
    marker: Optional[SyncSourceMarker] = None
    private_properties: Dict[str, str] = field(default_factory=dict)
    time_zone: Optional[str] = None

    @property
    def is_marked(self) -> bool:
        return self.marker is not None

    @classmethod
    def from_api(cls, payload: Dict[str, Any], calendar_id: Optional[str] = None) -> "ExternalEvent":
        start, start_all_day = _parse_boundary(payload.get("start"))
        end, end_all_day = _parse_boundary(payload.get("end"))
        private = dict(((payload.get("extendedProperties") or {}).get("private")) or {})
        reminders_payload = payload.get("reminders") or {}
        reminders: Optional[List[int]] = None
        if reminders_payload and not reminders_payload.get("useDefault", True):
            reminders = [int(item.get("minutes", 0)) for item in reminders_payload.get("overrides") or []]
        all_day = start_all_day and end_all_day
        return cls(
            id=payload.get("id"),
            calendar_id=calendar_id,
            title=payload.get("summary") or "",
            description=payload.get("description") or "",
            location=payload.get("location") or None,
            start=start,
            end=end,
            all_day=all_day,
            start_day=start.date() if all_day and start else None,
            end_day=end.date() if all_day and end else None,
            color_id=payload.get("colorId"),
            status=payload.get("status") or "confirmed",
            visibility=payload.get("visibility"),
            updated=parse_rfc3339(payload.get("updated")),
            html_link=payload.get("htmlLink"),
            reminders=reminders,
            marker=SyncSourceMarker.from_properties(private),
            private_properties={k: v for k, v in private.items() if k not in MARKER_KEYS},
            time_zone=(payload.get("start") or {}).get("timeZone"),
        )

    def boundaries(self) -> tuple[Dict[str, str], Dict[str, str]]:
        if self.all_day and self.start_day and self.end_day:
            return {"date": self.start_day.isoformat()}, {"date": self.end_day.isoformat()}
        start: Dict[str, str] = {"dateTime": to_rfc3339_utc(self.start) or ""}
        end: Dict[str, str] = {"dateTime": to_rfc3339_utc(self.end) or ""}
        if self.time_zone:
            start["timeZone"] = self.time_zone
            end["timeZone"] = self.time_zone
        return start, end

    def to_api(self) -> Dict[str, Any]:
        start, end = self.boundaries()
        body: Dict[str, Any] = {
            "summary": self.title,
            "description": self.description,
            "start": start,
            "end": end,
        }
        if self.location:
            body["location"] = self.location
        if self.color_id:
            body["colorId"] = self.color_id
        if self.reminders is not None:
            body["reminders"] = {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": minutes} for minutes in self.reminders],
            }
        private = dict(self.private_properties)
        if self.marker is not None:
            private.update(self.marker.to_properties())
        if private:
            body["extendedProperties"] = {"private": private}
        return body

    def duration(self) -> Optional[timedelta]:
        if self.start is None or self.end is None:
            return None
        return ensure_utc(self.end) - ensure_utc(self.start)


@dataclass
class EventPage:
    """Materialised result of a paginated events listing."""

    events: List[ExternalEvent] = field(default_factory=list)
    next_sync_token: Optional[str] = None
    next_page_token: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_page_token is not None


@dataclass
class CalendarInfo:
    id: str
    summary: str = ""
    primary: bool = False
    access_role: Optional[str] = None
    time_zone: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "CalendarInfo":
        return cls(
            id=payload.get("id", ""),
            summary=payload.get("summaryOverride") or payload.get("summary") or "",
            primary=bool(payload.get("primary")),
            access_role=payload.get("accessRole"),
            time_zone=payload.get("timeZone"),
        )


__all__ = [
    "CalendarInfo",
    "EventPage",
    "ExternalEvent",
    "MARKER_KEYS",
    "SyncSourceMarker",
]
