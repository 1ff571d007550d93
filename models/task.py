# taskshoot/models/task.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from core.errors import TaskValidationError
from core.task_options import (
    DEFAULT_PRIORITY,
    DEFAULT_STATUS,
    MAX_TAG_LENGTH,
    MAX_TAGS,
    PRIORITIES,
    STATUSES,
)
from datetime_utils import ensure_utc, utc_now


class Task(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    title: str
    description: str = ""
    status: str = DEFAULT_STATUS          # pending / in_progress / completed / cancelled
    priority: str = DEFAULT_PRIORITY      # low / medium / high / urgent
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_minutes: Optional[int] = None
    category_id: Optional[str] = None
    notes: Optional[str] = None
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now, index=True)


@dataclass
class TaskDraft:
    """Task fields produced from a calendar event, ready to create or patch."""

    title: str
    description: str = ""
    status: str = DEFAULT_STATUS
    priority: str = DEFAULT_PRIORITY
    start_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    estimated_minutes: Optional[int] = None
    category_id: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[List[str]] = None
    all_day: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "TaskDraft":
        if not (self.title or "").strip():
            raise TaskValidationError("title is required")
        if self.status not in STATUSES:
            raise TaskValidationError(f"unknown status: {self.status}")
        if self.priority not in PRIORITIES:
            raise TaskValidationError(f"unknown priority: {self.priority}")
        start, due = ensure_utc(self.start_date), ensure_utc(self.due_date)
        if start and due and start > due:
            raise TaskValidationError("start_date must not be after due_date")
        if self.estimated_minutes is not None and self.estimated_minutes < 0:
            raise TaskValidationError("estimated_minutes must be positive")
        if self.tags is not None:
            validate_tags(self.tags)
        return self

    def as_patch(self) -> Dict[str, Any]:
        patch: Dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "start_date": self.start_date,
            "due_date": self.due_date,
            "estimated_minutes": self.estimated_minutes,
            "category_id": self.category_id,
        }
        if self.notes is not None:
            patch["notes"] = self.notes
        if self.tags is not None:
            patch["tags"] = list(self.tags)
        return patch


def validate_tags(tags: List[str]) -> None:
    if len(tags) > MAX_TAGS:
        raise TaskValidationError(f"at most {MAX_TAGS} tags are allowed")
    if len(set(tags)) != len(tags):
        raise TaskValidationError("tags must be unique")
    for tag in tags:
        if len(tag) > MAX_TAG_LENGTH:
            raise TaskValidationError(f"tag longer than {MAX_TAG_LENGTH} characters: {tag[:20]}…")


__all__ = ["Task", "TaskDraft", "validate_tags"]
