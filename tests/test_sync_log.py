from datetime import datetime, timedelta

from datetime_utils import UTC
from models.sync_run import SyncRunResult
from services.sync_log import SyncLog
from services.sync_state_store import SyncStateStore

NOW = datetime(2026, 6, 30, 12, 0, tzinfo=UTC)


def _run(store, days_ago, status, processed=1, parent=None):
    result = SyncRunResult(
        owner_id="u1",
        direction="both",
        calendar_id="primary",
        started_at=NOW - timedelta(days=days_ago),
        parent_run_id=parent,
        status=status,
        events_processed=processed,
    )
    result.completed_at = result.started_at + timedelta(seconds=3)
    store.append_run_result(result)
    return result


def test_stats_aggregate_recent_top_level_runs(session_factory):
    store = SyncStateStore(session_factory)
    _run(store, 1, "success", processed=4)
    latest = _run(store, 0, "partial", processed=2)
    _run(store, 2, "error", processed=0)
    _run(store, 45, "success", processed=10)
    _run(store, 0, "success", processed=99, parent=latest.run_id)

    stats = SyncLog(session_factory, clock=lambda: NOW).stats("u1", days_back=30)

    assert stats["total_syncs"] == 3
    assert stats["successful_syncs"] == 1
    assert stats["partial_syncs"] == 1
    assert stats["failed_syncs"] == 1
    assert stats["events_processed"] == 6
    assert stats["last_status"] == "partial"
    assert stats["last_sync_at"] == "2026-06-30T12:00:00Z"


def test_stats_for_unknown_owner(session_factory):
    stats = SyncLog(session_factory, clock=lambda: NOW).stats("nobody")
    assert stats["total_syncs"] == 0
    assert stats["last_sync_at"] is None


def test_recent_runs_newest_first(session_factory):
    store = SyncStateStore(session_factory)
    for days in (3, 1, 2):
        _run(store, days, "success")

    runs = SyncLog(session_factory).recent_runs("u1", limit=2)

    assert [r.started_at.day for r in runs] == [29, 28]


def test_cleanup_removes_old_entries(session_factory):
    store = SyncStateStore(session_factory)
    _run(store, 200, "success")
    _run(store, 100, "error")
    _run(store, 5, "success")
    log = SyncLog(session_factory, clock=lambda: NOW)

    assert log.cleanup(days_to_keep=90) == 2
    assert len(log.recent_runs("u1")) == 1


def test_run_log_has_owner_started_index(session_factory):
    with session_factory() as session:
        rows = session.connection().exec_driver_sql("PRAGMA index_list('sync_run_log')").fetchall()
    assert "ix_sync_run_log_owner_started" in {row[1] for row in rows}
