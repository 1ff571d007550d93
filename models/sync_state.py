"""SQLModel tables for calendar synchronization bookkeeping."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncMapping(SQLModel, table=True):
    """Durable association between a local task and the event representing it.

    A row with ``task_id`` or ``event_id`` unset is a pending claim written
    before the corresponding create call.
    """

    __tablename__ = "sync_mapping"
    __table_args__ = (
        UniqueConstraint("owner_id", "calendar_id", "task_id", name="ux_sync_mapping_task"),
        UniqueConstraint("owner_id", "calendar_id", "event_id", name="ux_sync_mapping_event"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: str = Field(index=True)
    calendar_id: str = Field(index=True)
    task_id: Optional[str] = Field(default=None, index=True)
    event_id: Optional[str] = Field(default=None, index=True)
    content_hash: Optional[str] = None
    detail_hash: Optional[str] = None
    remote_updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_pending(self) -> bool:
        return self.task_id is None or self.event_id is None


class SyncCursor(SQLModel, table=True):
    """Incremental sync anchor for one owner and calendar."""

    __tablename__ = "sync_cursor"

    owner_id: str = Field(primary_key=True)
    calendar_id: str = Field(primary_key=True)
    sync_token: Optional[str] = None
    last_full_sync_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)


SYNC_FREQUENCIES = {
    "manual": None,
    "5min": timedelta(minutes=5),
    "15min": timedelta(minutes=15),
    "30min": timedelta(minutes=30),
    "1hour": timedelta(hours=1),
}
DEFAULT_SYNC_FREQUENCY = "15min"


class SyncProfile(SQLModel, table=True):
    """Per-owner synchronization preferences and status."""

    __tablename__ = "sync_profile"

    owner_id: str = Field(primary_key=True)
    enabled: bool = True
    auto_sync_enabled: bool = True
    needs_reconnect: bool = False
    selected_calendars: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    sync_direction: str = "both"
    sync_frequency: str = DEFAULT_SYNC_FREQUENCY
    sync_status: str = "idle"
    last_sync_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)


class OAuthToken(SQLModel, table=True):
    __tablename__ = "oauth_token"

    owner_id: str = Field(primary_key=True)
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""
    expiry: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "DEFAULT_SYNC_FREQUENCY",
    "OAuthToken",
    "SYNC_FREQUENCIES",
    "SyncCursor",
    "SyncMapping",
    "SyncProfile",
]
