"""Centralized application configuration."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(os.environ if env is None else env)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "TaskShoot"


DATA_DIR = get_default_data_dir(APP_NAME)
STORAGE_DIR = DATA_DIR / "storage"
SECRETS_DIR = DATA_DIR / "secrets"
LOG_DIR = DATA_DIR / "logs"


DB_PATH = DATA_DIR / "sync.db"
CLIENT_SECRET_PATH = SECRETS_DIR / "client_secret.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


def ensure_data_dirs() -> None:
    for _dir in (DATA_DIR, STORAGE_DIR, SECRETS_DIR, LOG_DIR):
        _dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class GoogleSyncSettings:
    enabled: bool = True
    scopes: tuple[str, ...] = (
        "https://www.googleapis.com/auth/calendar",
        "https://www.googleapis.com/auth/calendar.events",
    )
    default_calendar_id: str = "primary"
    default_direction: str = "both"
    default_timezone: str = "UTC"
    token_refresh_margin_sec: int = 60
    max_retries: int = 3
    retry_base_delay_sec: float = 1.0
    retry_max_delay_sec: float = 30.0
    retry_jitter_sec: float = 0.5
    min_request_interval_sec: float = 0.1
    batch_concurrency: int = 5
    page_size: int = 2500
    run_timeout_sec: int = 300
    default_event_hours: int = 2
    min_estimated_minutes: int = 15
    max_estimated_minutes: int = 24 * 60
    full_sync_window_days: Optional[int] = None
    export_undated_tasks: bool = False
    delete_on_remote_cancel: bool = False
    log_retention_days: int = 90
    max_selected_calendars: int = 10


GOOGLE_SYNC = GoogleSyncSettings()


@dataclass(frozen=True)
class CacheSettings:
    token_cache_size: int = 256
    token_cache_ttl_sec: int = 55 * 60


CACHE = CacheSettings()


@dataclass(frozen=True)
class OAuthClientSettings:
    client_id: str
    client_secret: str
    redirect_uri: str
    token_uri: str = "https://oauth2.googleapis.com/token"
    auth_uri: str = "https://accounts.google.com/o/oauth2/auth"

    def as_client_config(self) -> dict:
        """Shape expected by ``google_auth_oauthlib.flow.Flow.from_client_config``."""
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": self.auth_uri,
                "token_uri": self.token_uri,
                "redirect_uris": [self.redirect_uri],
            }
        }


def load_oauth_client(env: Optional[Mapping[str, str]] = None) -> OAuthClientSettings:
    """Read the OAuth client registration from the environment."""

    environ = dict(os.environ if env is None else env)
    client_id = environ.get("GOOGLE_CLIENT_ID")
    client_secret = environ.get("GOOGLE_CLIENT_SECRET")
    if not client_id or not client_secret:
        raise RuntimeError(
            "Google Calendar credentials are not configured. "
            "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
        )
    redirect_uri = environ.get("GOOGLE_REDIRECT_URI")
    if not redirect_uri:
        base_url = (environ.get("APP_BASE_URL") or "http://localhost:8080").rstrip("/")
        redirect_uri = f"{base_url}/oauth/google/callback"
    return OAuthClientSettings(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
    )


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "STORAGE_DIR",
    "SECRETS_DIR",
    "LOG_DIR",
    "DB_PATH",
    "CLIENT_SECRET_PATH",
    "SYNC_LOG_PATH",
    "GOOGLE_SYNC",
    "CACHE",
    "CacheSettings",
    "GoogleSyncSettings",
    "OAuthClientSettings",
    "ensure_data_dirs",
    "get_default_data_dir",
    "load_oauth_client",
]
