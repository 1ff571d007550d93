"""Per-owner sync preferences: read with defaults, validated updates, auto-sync schedule."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC, GoogleSyncSettings
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.sync_run import DIRECTIONS
from models.sync_state import DEFAULT_SYNC_FREQUENCY, SYNC_FREQUENCIES, SyncProfile
from services.sync_state_store import SyncStateStore

_CONFIGURABLE = ("enabled", "auto_sync_enabled", "selected_calendars", "sync_direction", "sync_frequency")


class SyncConfig:
    def __init__(self, state: SyncStateStore, *, settings: GoogleSyncSettings = GOOGLE_SYNC, clock=utc_now):
        self.state = state
        self.settings = settings
        self._clock = clock
        self.logger = ensure_logger("config")

    def get(self, owner_id: str) -> Dict[str, Any]:
        """Current preferences; an owner without a profile gets the defaults."""

        profile = self.state.get_profile(owner_id)
        if profile is None:
            return {
                "owner_id": owner_id,
                "enabled": True,
                "auto_sync_enabled": True,
                "needs_reconnect": False,
                "selected_calendars": [self.settings.default_calendar_id],
                "sync_direction": self.settings.default_direction,
                "sync_frequency": DEFAULT_SYNC_FREQUENCY,
                "sync_status": "idle",
                "last_sync_at": None,
            }
        return {
            "owner_id": profile.owner_id,
            "enabled": profile.enabled,
            "auto_sync_enabled": profile.auto_sync_enabled,
            "needs_reconnect": profile.needs_reconnect,
            "selected_calendars": list(profile.selected_calendars or []) or [self.settings.default_calendar_id],
            "sync_direction": profile.sync_direction,
            "sync_frequency": profile.sync_frequency,
            "sync_status": profile.sync_status,
            "last_sync_at": to_rfc3339_utc(profile.last_sync_at),
        }

    def update(self, owner_id: str, **fields: Any) -> SyncProfile:
        unknown = set(fields) - set(_CONFIGURABLE)
        if unknown:
            raise ValueError(f"unknown sync settings: {', '.join(sorted(unknown))}")
        changes = {key: value for key, value in fields.items() if value is not None}
        if "sync_direction" in changes and changes["sync_direction"] not in DIRECTIONS:
            raise ValueError(f"sync_direction must be one of {', '.join(DIRECTIONS)}")
        if "sync_frequency" in changes and changes["sync_frequency"] not in SYNC_FREQUENCIES:
            raise ValueError(f"sync_frequency must be one of {', '.join(SYNC_FREQUENCIES)}")
        if "selected_calendars" in changes:
            changes["selected_calendars"] = self._calendars(changes["selected_calendars"])
        for flag in ("enabled", "auto_sync_enabled"):
            if flag in changes and not isinstance(changes[flag], bool):
                raise ValueError(f"{flag} must be a boolean")
        profile = self.state.update_profile(owner_id, **changes)
        self.logger.info(kv("sync.config.updated", owner=owner_id, fields=",".join(sorted(changes))))
        return profile

    def _calendars(self, calendar_ids: Iterable[str]) -> list:
        ids = list(dict.fromkeys(cid.strip() for cid in calendar_ids if cid and cid.strip()))
        if not ids:
            raise ValueError("at least one calendar must be selected")
        if len(ids) > self.settings.max_selected_calendars:
            raise ValueError(f"at most {self.settings.max_selected_calendars} calendars can be selected")
        return ids

    def auto_sync_due(self, owner_id: str, now: Optional[datetime] = None) -> bool:
        profile = self.state.get_profile(owner_id)
        if profile is None or not profile.enabled or not profile.auto_sync_enabled or profile.needs_reconnect:
            return False
        interval = SYNC_FREQUENCIES.get(profile.sync_frequency)
        if interval is None:
            return False
        last = ensure_utc(profile.last_sync_at)
        if last is None:
            return True
        return ensure_utc(now or self._clock()) - last >= interval


__all__ = ["SyncConfig"]
