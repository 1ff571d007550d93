from datetime import datetime, timedelta

import pytest

from datetime_utils import UTC
from services.sync_config import SyncConfig
from services.sync_state_store import SyncStateStore

OWNER = "owner-1"
NOW = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def config(session_factory):
    return SyncConfig(SyncStateStore(session_factory), clock=lambda: NOW)


def test_defaults_without_profile(config):
    current = config.get(OWNER)
    assert current["selected_calendars"] == ["primary"]
    assert current["sync_direction"] == "both"
    assert current["sync_frequency"] == "15min"
    assert current["enabled"] is True


def test_update_persists_valid_settings(config):
    config.update(OWNER, sync_direction="taskshoot_to_gcal", sync_frequency="1hour",
                  selected_calendars=["work", "work", "home"], enabled=False)

    current = config.get(OWNER)
    assert current["sync_direction"] == "taskshoot_to_gcal"
    assert current["sync_frequency"] == "1hour"
    assert current["selected_calendars"] == ["work", "home"]
    assert current["enabled"] is False


@pytest.mark.parametrize(
    "fields",
    [
        {"sync_frequency": "hourly"},
        {"sync_direction": "sideways"},
        {"selected_calendars": [f"cal-{i}" for i in range(11)]},
        {"selected_calendars": []},
        {"enabled": "yes"},
        {"sync_status": "idle"},
    ],
)
def test_invalid_settings_are_rejected(config, fields):
    with pytest.raises(ValueError):
        config.update(OWNER, **fields)
    assert config.state.get_profile(OWNER) is None


def test_auto_sync_due_follows_frequency(config):
    assert config.auto_sync_due(OWNER) is False

    config.update(OWNER, sync_frequency="30min")
    assert config.auto_sync_due(OWNER) is True

    config.state.update_profile(OWNER, last_sync_at=NOW - timedelta(minutes=10))
    assert config.auto_sync_due(OWNER) is False
    assert config.auto_sync_due(OWNER, now=NOW + timedelta(minutes=20)) is True

    config.update(OWNER, sync_frequency="manual")
    assert config.auto_sync_due(OWNER, now=NOW + timedelta(days=1)) is False


def test_reconnect_required_blocks_auto_sync(config):
    config.update(OWNER, sync_frequency="5min")
    config.state.mark_reconnect_required(OWNER)
    assert config.auto_sync_due(OWNER) is False
