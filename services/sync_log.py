"""Read side of the run log: recent runs, aggregate stats and retention."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete
from sqlmodel import Session, select

from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.sync_run import STATUS_ERROR, STATUS_PARTIAL, STATUS_SUCCESS, SyncRunLog
from storage.db import get_session


class SyncLog:
    def __init__(self, session_factory: Callable[[], Session] = get_session, clock=utc_now):
        self._session_factory = session_factory
        self._clock = clock
        self.logger = ensure_logger("log")

    def recent_runs(self, owner_id: str, limit: int = 20, include_children: bool = True) -> List[SyncRunLog]:
        with self._session_factory() as session:
            stmt = select(SyncRunLog).where(SyncRunLog.owner_id == owner_id)
            if not include_children:
                stmt = stmt.where(SyncRunLog.parent_run_id.is_(None))
            stmt = stmt.order_by(SyncRunLog.started_at.desc()).limit(max(1, limit))
            return list(session.exec(stmt))

    def stats(self, owner_id: str, days_back: int = 30) -> Dict[str, Any]:
        """Totals over top-level runs started within the last ``days_back`` days."""
        since = self._clock() - timedelta(days=days_back)
        with self._session_factory() as session:
            stmt = select(SyncRunLog).where(
                SyncRunLog.owner_id == owner_id,
                SyncRunLog.parent_run_id.is_(None),
                SyncRunLog.started_at >= since,
            )
            rows = list(session.exec(stmt))

        last: Optional[SyncRunLog] = max(rows, key=lambda r: ensure_utc(r.started_at), default=None)
        return {
            "total_syncs": len(rows),
            "successful_syncs": sum(1 for r in rows if r.status == STATUS_SUCCESS),
            "failed_syncs": sum(1 for r in rows if r.status == STATUS_ERROR),
            "partial_syncs": sum(1 for r in rows if r.status == STATUS_PARTIAL),
            "events_processed": sum(r.events_processed for r in rows),
            "events_created": sum(r.events_created for r in rows),
            "events_updated": sum(r.events_updated for r in rows),
            "events_deleted": sum(r.events_deleted for r in rows),
            "last_sync_at": to_rfc3339_utc(last.started_at) if last else None,
            "last_status": last.status if last else None,
        }

    def cleanup(self, days_to_keep: int = GOOGLE_SYNC.log_retention_days) -> int:
        cutoff = self._clock() - timedelta(days=days_to_keep)
        with self._session_factory() as session:
            result = session.exec(delete(SyncRunLog).where(SyncRunLog.started_at < cutoff))
            session.commit()
            removed = int(result.rowcount or 0)
        self.logger.info(kv("sync.log.cleanup", removed=removed, days_to_keep=days_to_keep))
        return removed


__all__ = ["SyncLog"]
