"""Lookup tables for task priorities and statuses."""
from __future__ import annotations

from typing import Dict, List

PRIORITIES = ("low", "medium", "high", "urgent")
STATUSES = ("pending", "in_progress", "completed", "cancelled")

DEFAULT_PRIORITY = "medium"
DEFAULT_STATUS = "pending"
DEFAULT_COLOR_ID = "1"

# Google Calendar colorId palette: 11 tomato, 6 tangerine, 5 banana, 2 sage.
PRIORITY_META: Dict[str, Dict[str, object]] = {
    "urgent": {
        "label": "Urgent",
        "color_id": "11",
        "reminders": [15, 60],
    },
    "high": {
        "label": "High",
        "color_id": "6",
        "reminders": [30],
    },
    "medium": {
        "label": "Medium",
        "color_id": "5",
        "reminders": [60],
    },
    "low": {
        "label": "Low",
        "color_id": "2",
        "reminders": [],
    },
}

COLOR_TO_PRIORITY: Dict[str, str] = {
    str(meta["color_id"]): level for level, meta in PRIORITY_META.items()
}

MAX_TAGS = 10
MAX_TAG_LENGTH = 50


def normalize_priority(value: object) -> str:
    if value is None:
        return DEFAULT_PRIORITY
    lowered = str(value).strip().lower()
    return lowered if lowered in PRIORITIES else DEFAULT_PRIORITY


def normalize_status(value: object) -> str:
    if value is None:
        return DEFAULT_STATUS
    lowered = str(value).strip().lower().replace("-", "_")
    if lowered in STATUSES:
        return lowered
    if lowered in {"done", "complete", "finished"}:
        return "completed"
    if lowered in {"doing", "started"}:
        return "in_progress"
    return DEFAULT_STATUS


def priority_color(value: str) -> str:
    meta = PRIORITY_META.get(value)
    return str(meta["color_id"]) if meta else DEFAULT_COLOR_ID


def priority_reminders(value: str) -> List[int]:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return list(meta["reminders"])  # type: ignore[arg-type]


def priority_label(value: str) -> str:
    meta = PRIORITY_META.get(value, PRIORITY_META[DEFAULT_PRIORITY])
    return str(meta["label"])


__all__ = [
    "COLOR_TO_PRIORITY",
    "DEFAULT_COLOR_ID",
    "DEFAULT_PRIORITY",
    "DEFAULT_STATUS",
    "MAX_TAGS",
    "MAX_TAG_LENGTH",
    "PRIORITIES",
    "PRIORITY_META",
    "STATUSES",
    "normalize_priority",
    "normalize_status",
    "priority_color",
    "priority_label",
    "priority_reminders",
]
