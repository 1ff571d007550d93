from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from core.errors import MappingIntegrityError
from datetime_utils import ensure_utc, utc_now
from models.sync_run import SyncRunLog, SyncRunResult
from models.sync_state import SyncCursor, SyncMapping, SyncProfile
from storage.db import get_session

_UNSET: Any = object()

_PROFILE_FIELDS = {
    "enabled",
    "auto_sync_enabled",
    "needs_reconnect",
    "selected_calendars",
    "sync_direction",
    "sync_frequency",
    "sync_status",
    "last_sync_at",
}


class SyncStateStore:
    """Persistence for cursors, mappings, profiles and run logs.

    Only storage lives here; the uniqueness of live mappings is enforced by the
    table constraints.
    """

    def __init__(self, session_factory: Callable[[], Session] = get_session):
        self._session_factory = session_factory

    # ----- cursors -----
    def get_cursor(self, owner_id: str, calendar_id: str) -> Optional[SyncCursor]:
        with self._session_factory() as session:
            return session.get(SyncCursor, (owner_id, calendar_id))

    def set_cursor(
        self,
        owner_id: str,
        calendar_id: str,
        *,
        sync_token: Optional[str] = _UNSET,
        last_full_sync_at: Optional[datetime] = _UNSET,
        last_sync_at: Optional[datetime] = _UNSET,
    ) -> SyncCursor:
        with self._session_factory() as session:
            cursor = session.get(SyncCursor, (owner_id, calendar_id))
            if cursor is None:
                cursor = SyncCursor(owner_id=owner_id, calendar_id=calendar_id)
            if sync_token is not _UNSET:
                cursor.sync_token = sync_token
            if last_full_sync_at is not _UNSET:
                cursor.last_full_sync_at = ensure_utc(last_full_sync_at)
            if last_sync_at is not _UNSET:
                cursor.last_sync_at = ensure_utc(last_sync_at)
            cursor.updated_at = utc_now()
            session.add(cursor)
            session.commit()
            session.refresh(cursor)
            return cursor

    def clear_sync_token(self, owner_id: str, calendar_id: str) -> None:
        with self._session_factory() as session:
            cursor = session.get(SyncCursor, (owner_id, calendar_id))
            if cursor is None or cursor.sync_token is None:
                return
            cursor.sync_token = None
            cursor.updated_at = utc_now()
            session.add(cursor)
            session.commit()

    # ----- mappings -----
    def get_mapping_by_task(self, owner_id: str, calendar_id: str, task_id: str) -> Optional[SyncMapping]:
        with self._session_factory() as session:
            stmt = select(SyncMapping).where(
                SyncMapping.owner_id == owner_id,
                SyncMapping.calendar_id == calendar_id,
                SyncMapping.task_id == task_id,
            )
            return session.exec(stmt).first()

    def get_mapping_by_event(self, owner_id: str, calendar_id: str, event_id: str) -> Optional[SyncMapping]:
        with self._session_factory() as session:
            stmt = select(SyncMapping).where(
                SyncMapping.owner_id == owner_id,
                SyncMapping.calendar_id == calendar_id,
                SyncMapping.event_id == event_id,
            )
            return session.exec(stmt).first()

    def find_task_mappings(self, owner_id: str, task_id: str) -> List[SyncMapping]:
        with self._session_factory() as session:
            stmt = select(SyncMapping).where(
                SyncMapping.owner_id == owner_id,
                SyncMapping.task_id == task_id,
            )
            return list(session.exec(stmt))

    def list_mappings(self, owner_id: str, calendar_id: Optional[str] = None) -> List[SyncMapping]:
        with self._session_factory() as session:
            stmt = select(SyncMapping).where(SyncMapping.owner_id == owner_id)
            if calendar_id is not None:
                stmt = stmt.where(SyncMapping.calendar_id == calendar_id)
            return list(session.exec(stmt.order_by(SyncMapping.id)))

    def _insert(self, mapping: SyncMapping) -> SyncMapping:
        with self._session_factory() as session:
            session.add(mapping)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise MappingIntegrityError(
                    f"mapping already exists (calendar={mapping.calendar_id}, "
                    f"task={mapping.task_id}, event={mapping.event_id})"
                ) from exc
            session.refresh(mapping)
            return mapping

    def claim_task_mapping(self, owner_id: str, calendar_id: str, task_id: str) -> SyncMapping:
        """Reserve the (owner, calendar, task) key before creating the remote event."""
        return self._insert(SyncMapping(owner_id=owner_id, calendar_id=calendar_id, task_id=task_id))

    def claim_event_mapping(self, owner_id: str, calendar_id: str, event_id: str) -> SyncMapping:
        """Reserve the (owner, calendar, event) key before creating the local task."""
        return self._insert(SyncMapping(owner_id=owner_id, calendar_id=calendar_id, event_id=event_id))

    def upsert_mapping(
        self,
        owner_id: str,
        calendar_id: str,
        *,
        task_id: str,
        event_id: str,
        content_hash: Optional[str] = None,
        detail_hash: Optional[str] = None,
        remote_updated_at: Optional[datetime] = None,
        last_synced_at: Optional[datetime] = None,
        mapping_id: Optional[int] = None,
    ) -> SyncMapping:
        with self._session_factory() as session:
            mapping: Optional[SyncMapping] = None
            if mapping_id is not None:
                mapping = session.get(SyncMapping, mapping_id)
            if mapping is None:
                mapping = session.exec(
                    select(SyncMapping).where(
                        SyncMapping.owner_id == owner_id,
                        SyncMapping.calendar_id == calendar_id,
                        SyncMapping.task_id == task_id,
                    )
                ).first()
            if mapping is None:
                mapping = session.exec(
                    select(SyncMapping).where(
                        SyncMapping.owner_id == owner_id,
                        SyncMapping.calendar_id == calendar_id,
                        SyncMapping.event_id == event_id,
                    )
                ).first()
            if mapping is None:
                mapping = SyncMapping(owner_id=owner_id, calendar_id=calendar_id)
            mapping.task_id = task_id
            mapping.event_id = event_id
            mapping.content_hash = content_hash
            mapping.detail_hash = detail_hash
            mapping.remote_updated_at = ensure_utc(remote_updated_at)
            mapping.last_synced_at = ensure_utc(last_synced_at or utc_now())
            session.add(mapping)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise MappingIntegrityError(
                    f"conflicting mapping (calendar={calendar_id}, task={task_id}, event={event_id})"
                ) from exc
            session.refresh(mapping)
            return mapping

    def delete_mapping(self, mapping_id: Optional[int]) -> None:
        if mapping_id is None:
            return
        with self._session_factory() as session:
            mapping = session.get(SyncMapping, mapping_id)
            if mapping is not None:
                session.delete(mapping)
                session.commit()

    # ----- run log -----
    def append_run_result(self, result: SyncRunResult, sync_type: str = "manual") -> SyncRunLog:
        payload = result.to_dict()
        with self._session_factory() as session:
            row = session.get(SyncRunLog, result.run_id)
            if row is None:
                row = SyncRunLog(
                    run_id=result.run_id,
                    owner_id=result.owner_id,
                    direction=result.direction,
                    status=result.status,
                    started_at=ensure_utc(result.started_at),
                )
            row.parent_run_id = result.parent_run_id
            row.calendar_id = result.calendar_id
            row.direction = result.direction
            row.sync_type = sync_type
            row.strategy = result.strategy
            row.status = result.status
            row.started_at = ensure_utc(result.started_at)
            row.completed_at = ensure_utc(result.completed_at)
            row.events_processed = result.events_processed
            row.events_created = result.events_created
            row.events_updated = result.events_updated
            row.events_deleted = result.events_deleted
            row.events_skipped = result.events_skipped
            row.errors = payload["errors"]
            row.conflicts = payload["conflicts"]
            row.dry_run = result.dry_run
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    # ----- profiles -----
    def get_profile(self, owner_id: str) -> Optional[SyncProfile]:
        with self._session_factory() as session:
            return session.get(SyncProfile, owner_id)

    def update_profile(self, owner_id: str, **fields: Any) -> SyncProfile:
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"unknown profile fields: {', '.join(sorted(unknown))}")
        with self._session_factory() as session:
            profile = session.get(SyncProfile, owner_id)
            if profile is None:
                profile = SyncProfile(owner_id=owner_id)
            for key, value in fields.items():
                if key == "selected_calendars":
                    value = list(value or [])
                setattr(profile, key, value)
            profile.updated_at = utc_now()
            session.add(profile)
            session.commit()
            session.refresh(profile)
            return profile

    def mark_reconnect_required(self, owner_id: str) -> SyncProfile:
        return self.update_profile(owner_id, auto_sync_enabled=False, needs_reconnect=True, sync_status="error")


__all__ = ["SyncStateStore"]
