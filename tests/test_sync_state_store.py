import threading
from datetime import datetime

import pytest
from sqlmodel import select

from core.errors import MappingIntegrityError
from datetime_utils import UTC, ensure_utc
from models.sync_run import SyncRunLog, SyncRunResult
from services.sync_state_store import SyncStateStore


@pytest.fixture()
def store(session_factory):
    return SyncStateStore(session_factory)


def test_cursor_roundtrip_and_clear(store):
    assert store.get_cursor("u1", "primary") is None
    stamp = datetime(2026, 2, 1, 9, 0, tzinfo=UTC)

    store.set_cursor("u1", "primary", sync_token="tok-1", last_sync_at=stamp)
    store.set_cursor("u1", "primary", last_full_sync_at=stamp)
    cursor = store.get_cursor("u1", "primary")
    assert cursor.sync_token == "tok-1"
    assert ensure_utc(cursor.last_sync_at) == stamp
    assert ensure_utc(cursor.last_full_sync_at) == stamp

    store.clear_sync_token("u1", "primary")
    cursor = store.get_cursor("u1", "primary")
    assert cursor.sync_token is None
    assert ensure_utc(cursor.last_sync_at) == stamp


def test_claim_then_complete_mapping(store):
    claim = store.claim_task_mapping("u1", "primary", "task-1")
    assert claim.is_pending

    done = store.upsert_mapping(
        "u1", "primary", task_id="task-1", event_id="evt-1", content_hash="h", mapping_id=claim.id
    )
    assert done.id == claim.id
    assert not done.is_pending
    assert store.get_mapping_by_event("u1", "primary", "evt-1").task_id == "task-1"
    assert [m.calendar_id for m in store.find_task_mappings("u1", "task-1")] == ["primary"]


def test_second_claim_for_same_key_is_rejected(store):
    store.claim_task_mapping("u1", "primary", "task-1")
    with pytest.raises(MappingIntegrityError):
        store.claim_task_mapping("u1", "primary", "task-1")

    store.claim_event_mapping("u1", "primary", "evt-1")
    with pytest.raises(MappingIntegrityError):
        store.claim_event_mapping("u1", "primary", "evt-1")

    # same task on another calendar is a different key
    store.claim_task_mapping("u1", "work", "task-1")


def test_concurrent_claims_produce_one_mapping(store):
    barrier = threading.Barrier(4)
    outcomes = []

    def claim():
        barrier.wait()
        try:
            store.claim_event_mapping("u1", "primary", "evt-race")
            outcomes.append("ok")
        except MappingIntegrityError:
            outcomes.append("conflict")

    threads = [threading.Thread(target=claim) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 3
    assert len(store.list_mappings("u1", "primary")) == 1


def test_upsert_cannot_steal_event_of_another_mapping(store):
    store.upsert_mapping("u1", "primary", task_id="a", event_id="evt-1")
    other = store.upsert_mapping("u1", "primary", task_id="b", event_id="evt-2")
    with pytest.raises(MappingIntegrityError):
        store.upsert_mapping("u1", "primary", task_id="b", event_id="evt-1", mapping_id=other.id)
    assert store.get_mapping_by_event("u1", "primary", "evt-1").task_id == "a"


def test_delete_mapping(store):
    mapping = store.upsert_mapping("u1", "primary", task_id="a", event_id="evt-1")
    store.delete_mapping(mapping.id)
    store.delete_mapping(None)
    assert store.get_mapping_by_task("u1", "primary", "a") is None


def test_append_run_result_is_an_upsert(store, session_factory):
    result = SyncRunResult(owner_id="u1", direction="both", calendar_id="primary")
    store.append_run_result(result)
    result.events_created = 3
    result.add_error("api_error", "boom", event_id="e1")
    result.status = "partial"
    store.append_run_result(result)

    with session_factory() as session:
        rows = list(session.exec(select(SyncRunLog)))
    assert len(rows) == 1
    assert rows[0].events_created == 3
    assert rows[0].status == "partial"
    assert rows[0].errors[0]["event_id"] == "e1"


def test_profile_updates(store):
    profile = store.update_profile("u1", selected_calendars=["primary", "work"])
    assert profile.enabled is True
    assert store.get_profile("u1").selected_calendars == ["primary", "work"]

    store.mark_reconnect_required("u1")
    profile = store.get_profile("u1")
    assert profile.needs_reconnect is True
    assert profile.auto_sync_enabled is False

    with pytest.raises(ValueError):
        store.update_profile("u1", colour="red")
