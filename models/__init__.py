"""ORM models and value types exposed by the sync engine."""
from .event import CalendarInfo, EventPage, ExternalEvent, SyncSourceMarker
from .sync_run import ConflictRecord, SyncItemError, SyncRunLog, SyncRunResult
from .sync_state import OAuthToken, SyncCursor, SyncMapping, SyncProfile
from .task import Task, TaskDraft

__all__ = [
    "CalendarInfo",
    "ConflictRecord",
    "EventPage",
    "ExternalEvent",
    "OAuthToken",
    "SyncCursor",
    "SyncItemError",
    "SyncMapping",
    "SyncProfile",
    "SyncRunLog",
    "SyncRunResult",
    "SyncSourceMarker",
    "Task",
    "TaskDraft",
]
