from core.log import kv


def test_kv_accepts_event_field():
    line = kv("sync.conflict", run="r1", event="evt-1", task=None, winner="remote")
    assert line == "sync.conflict run=r1 event=evt-1 winner=remote"
