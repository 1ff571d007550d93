"""Pure conversions between local tasks and Google Calendar events."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, Optional

from core.settings import GOOGLE_SYNC
from core.task_options import (
    COLOR_TO_PRIORITY,
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    normalize_priority,
    normalize_status,
    priority_color,
    priority_label,
    priority_reminders,
)
from datetime_utils import (
    ensure_utc,
    get_zone,
    is_all_day_span,
    local_midnight,
    to_rfc3339_utc,
    utc_now,
)
from models.event import ExternalEvent, SyncSourceMarker
from models.task import Task, TaskDraft


INFO_DELIMITER = "--- TaskShoot Information ---"
INFO_FOOTER = "Managed by TaskShoot Calendar"

_EXCLUDE_PATTERNS = (
    re.compile(r"^(Birthday|Anniversar(y|ies))", re.I),
    re.compile(r"^(Holiday|Vacation)", re.I),
    re.compile(r"^(Meeting|会議).*recurring", re.I),
    re.compile(r"\(recurring\)", re.I),
)

_URGENT_WORDS = ("urgent", "緊急", "!!!")
_HIGH_WORDS = ("high", "重要", "!!")
_LOW_WORDS = ("low", "!")


def _zone(tz: Optional[tzinfo]) -> tzinfo:
    return tz or get_zone(GOOGLE_SYNC.default_timezone)


def _format_estimate(minutes: int) -> str:
    hours, rest = divmod(minutes, 60)
    return f"{hours}h {rest}m" if hours else f"{rest}m"


def build_description(task: Task, category_name: Optional[str] = None) -> str:
    parts = []
    if task.description:
        parts.append(task.description.rstrip())
        parts.append("")
    parts.append(INFO_DELIMITER)
    parts.append(f"Priority: {priority_label(task.priority)}")
    parts.append(f"Status: {task.status}")
    if task.estimated_minutes:
        parts.append(f"Estimated: {_format_estimate(task.estimated_minutes)}")
    if category_name:
        parts.append(f"Category: {category_name}")
    parts.append("")
    parts.append(INFO_FOOTER)
    return "\n".join(parts)


def strip_info_block(description: Optional[str]) -> str:
    if not description:
        return ""
    head, sep, _tail = description.rpartition(INFO_DELIMITER)
    if not sep:
        return description
    return head.rstrip()


def task_to_event(
    task: Task,
    calendar_id: Optional[str] = None,
    *,
    category_name: Optional[str] = None,
    tz: Optional[tzinfo] = None,
    now: Optional[datetime] = None,
) -> ExternalEvent:
    zone = _zone(tz)
    span = timedelta(hours=GOOGLE_SYNC.default_event_hours)
    due = ensure_utc(task.due_date)
    start = ensure_utc(task.start_date) or ensure_utc(now or utc_now())
    end = due if due is not None else start + span
    if task.start_date is None and end <= start:
        # overdue task without a start: keep the slot ending at the due date
        start = end - span

    priority = normalize_priority(task.priority)
    status = normalize_status(task.status)
    event = ExternalEvent(
        calendar_id=calendar_id,
        title=task.title,
        description=build_description(task, category_name),
        location=category_name or None,
        start=start,
        end=end,
        color_id=priority_color(priority),
        reminders=priority_reminders(priority),
        marker=SyncSourceMarker(
            task_id=str(task.id),
            priority=priority,
            status=status,
            category_id=task.category_id or None,
            estimated_minutes=task.estimated_minutes,
        ),
        time_zone=getattr(zone, "key", None) or "UTC",
    )
    if is_all_day_span(start, end, zone):
        event.all_day = True
        event.start_day = start.astimezone(zone).date()
        event.end_day = end.astimezone(zone).date()
    return event


def infer_priority(event: ExternalEvent) -> str:
    if event.color_id and event.color_id in COLOR_TO_PRIORITY:
        return COLOR_TO_PRIORITY[event.color_id]
    title = (event.title or "").lower()
    if any(word in title for word in _URGENT_WORDS):
        return "urgent"
    if any(word in title for word in _HIGH_WORDS):
        return "high"
    if any(word in title for word in _LOW_WORDS):
        return "low"
    return DEFAULT_PRIORITY


def clamp_estimate(minutes: int) -> int:
    return max(GOOGLE_SYNC.min_estimated_minutes, min(minutes, GOOGLE_SYNC.max_estimated_minutes))


def event_bounds(
    event: ExternalEvent,
    *,
    tz: Optional[tzinfo] = None,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    zone = _zone(tz)
    if event.all_day and event.start_day and event.end_day:
        return local_midnight(event.start_day, zone), local_midnight(event.end_day, zone)
    start = ensure_utc(event.start) or ensure_utc(now or utc_now())
    end = ensure_utc(event.end) or start + timedelta(hours=GOOGLE_SYNC.default_event_hours)
    return start, end


def event_to_task(
    event: ExternalEvent,
    *,
    tz: Optional[tzinfo] = None,
    now: Optional[datetime] = None,
) -> TaskDraft:
    start, end = event_bounds(event, tz=tz, now=now)
    marker = event.marker
    if marker is not None:
        priority = marker.priority
        status = marker.status
        category_id = marker.category_id
        estimate = marker.estimated_minutes
        notes = None
    else:
        priority = infer_priority(event)
        status = DEFAULT_STATUS
        category_id = None
        estimate = clamp_estimate(int((end - start).total_seconds() // 60))
        notes = f"Google Calendar: {event.html_link or 'N/A'}"

    return TaskDraft(
        title=event.title or "Untitled Event",
        description=strip_info_block(event.description),
        status=status,
        priority=priority,
        start_date=start,
        due_date=end,
        estimated_minutes=estimate,
        category_id=category_id,
        notes=notes,
        all_day=event.all_day,
    )


def should_exclude_from_sync(event: ExternalEvent) -> bool:
    if event.status == "cancelled":
        return True
    if event.visibility == "private":
        return True
    summary = event.title or ""
    return any(pattern.search(summary) for pattern in _EXCLUDE_PATTERNS)


def _boundary_key(event: ExternalEvent) -> tuple[str, str]:
    if event.all_day and event.start_day and event.end_day:
        return f"date:{event.start_day.isoformat()}", f"date:{event.end_day.isoformat()}"
    return to_rfc3339_utc(event.start) or "", to_rfc3339_utc(event.end) or ""


def _digest(payload: Dict[str, Any]) -> str:
    data = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def content_hash(event: ExternalEvent) -> str:
    """Fingerprint of the user-visible fields: title, start, end, location."""
    start, end = _boundary_key(event)
    return _digest(
        {
            "title": event.title or "",
            "start": start,
            "end": end,
            "location": event.location or "",
        }
    )


def detail_hash(event: ExternalEvent) -> str:
    """Fingerprint of the fields outside :func:`content_hash` that carry task state."""
    marker = event.marker
    return _digest(
        {
            "description": (event.description or "").rstrip(),
            "color": event.color_id or "",
            "marker": marker.to_properties() if marker else {},
        }
    )


def has_event_changed(original: ExternalEvent, updated: ExternalEvent) -> bool:
    fields = ("summary", "description", "location", "start", "end", "colorId")
    before, after = original.to_api(), updated.to_api()
    return any(before.get(name) != after.get(name) for name in fields)


__all__ = [
    "INFO_DELIMITER",
    "build_description",
    "clamp_estimate",
    "content_hash",
    "detail_hash",
    "event_bounds",
    "event_to_task",
    "has_event_changed",
    "infer_priority",
    "should_exclude_from_sync",
    "strip_info_block",
    "task_to_event",
]
