"""Outcome of a synchronization run and its persisted audit row."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from datetime_utils import to_rfc3339_utc, utc_now

DIRECTIONS = ("gcal_to_taskshoot", "taskshoot_to_gcal", "both")
PULL_DIRECTIONS = ("gcal_to_taskshoot", "both")
PUSH_DIRECTIONS = ("taskshoot_to_gcal", "both")

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_ERROR = "error"


@dataclass
class SyncItemError:
    type: str
    message: str
    task_id: Optional[str] = None
    event_id: Optional[str] = None
    calendar_id: Optional[str] = None


@dataclass
class ConflictRecord:
    task_id: str
    event_id: str
    winner: str                       # "remote" | "local"
    local_updated_at: Optional[datetime] = None
    remote_updated_at: Optional[datetime] = None


@dataclass
class SyncRunResult:
    owner_id: str
    direction: str
    calendar_id: Optional[str] = None
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    parent_run_id: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    strategy: Optional[str] = None    # "full" | "incremental"
    escalated_to_full: bool = False
    timed_out: bool = False
    dry_run: bool = False
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_skipped: int = 0
    errors: List[SyncItemError] = field(default_factory=list)
    conflicts: List[ConflictRecord] = field(default_factory=list)
    status: str = STATUS_SUCCESS
    children: List["SyncRunResult"] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return self.events_created + self.events_updated + self.events_deleted

    def add_error(
        self,
        error_type: str,
        message: str,
        *,
        task_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> SyncItemError:
        item = SyncItemError(
            type=error_type,
            message=message,
            task_id=task_id,
            event_id=event_id,
            calendar_id=self.calendar_id,
        )
        self.errors.append(item)
        return item

    def merge(self, child: "SyncRunResult") -> None:
        self.children.append(child)
        self.events_processed += child.events_processed
        self.events_created += child.events_created
        self.events_updated += child.events_updated
        self.events_deleted += child.events_deleted
        self.events_skipped += child.events_skipped
        self.errors.extend(child.errors)
        self.conflicts.extend(child.conflicts)
        self.timed_out = self.timed_out or child.timed_out
        self.escalated_to_full = self.escalated_to_full or child.escalated_to_full

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        return _jsonable(payload)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_rfc3339_utc(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


class SyncRunLog(SQLModel, table=True):
    """Append-only audit row per run, keyed by ``run_id``."""

    __tablename__ = "sync_run_log"

    run_id: str = Field(primary_key=True)
    parent_run_id: Optional[str] = Field(default=None, index=True)
    owner_id: str = Field(index=True)
    calendar_id: Optional[str] = None
    direction: str
    sync_type: str = "manual"
    strategy: Optional[str] = None
    status: str
    started_at: datetime = Field(index=True)
    completed_at: Optional[datetime] = None
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_deleted: int = 0
    events_skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    conflicts: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    dry_run: bool = False


__all__ = [
    "ConflictRecord",
    "DIRECTIONS",
    "PULL_DIRECTIONS",
    "PUSH_DIRECTIONS",
    "STATUS_ERROR",
    "STATUS_PARTIAL",
    "STATUS_SUCCESS",
    "SyncItemError",
    "SyncRunLog",
    "SyncRunResult",
]
