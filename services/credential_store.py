"""Per-owner OAuth token storage with expiry-aware refresh."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from google.auth.exceptions import RefreshError, TransportError
from sqlmodel import Session

from core.cache import TTLCache
from core.errors import AuthExpiredError, TransientNetworkError
from core.log import ensure_logger, kv
from core.settings import CACHE, GOOGLE_SYNC
from datetime_utils import ensure_utc, utc_now
from models.sync_state import OAuthToken
from services.google_auth import OAuthTokens
from storage.db import get_session

Refresher = Callable[[OAuthTokens], OAuthTokens]


def _to_tokens(row: OAuthToken) -> OAuthTokens:
    return OAuthTokens(
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_type=row.token_type,
        scope=row.scope,
        expiry=ensure_utc(row.expiry),
    )


class CredentialStore:
    """Holds access/refresh tokens and hands out a valid access token.

    Refreshes for one owner are serialized: a caller that finds a refresh
    already running waits for it and reuses the fresh token.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        *,
        refresher: Optional[Refresher] = None,
        cache: Optional[TTLCache[OAuthTokens]] = None,
        margin_sec: int = GOOGLE_SYNC.token_refresh_margin_sec,
        clock: Callable[[], datetime] = utc_now,
        on_auth_expired: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._session_factory = session_factory
        self._refresher = refresher
        self._cache = cache or TTLCache(CACHE.token_cache_size, CACHE.token_cache_ttl_sec)
        self._margin = timedelta(seconds=margin_sec)
        self._clock = clock
        self._on_auth_expired = on_auth_expired
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.logger = ensure_logger("credentials")

    # ----- persistence -----
    def load_tokens(self, owner_id: str) -> Optional[OAuthTokens]:
        cached = self._cache.get(owner_id)
        if cached is not None:
            return cached
        with self._session_factory() as session:
            row = session.get(OAuthToken, owner_id)
            if row is None:
                return None
            tokens = _to_tokens(row)
        self._cache.set(owner_id, tokens)
        return tokens

    def store_tokens(self, owner_id: str, tokens: OAuthTokens) -> None:
        with self._session_factory() as session:
            row = session.get(OAuthToken, owner_id)
            if row is None:
                row = OAuthToken(owner_id=owner_id, access_token=tokens.access_token)
            row.access_token = tokens.access_token
            # Google omits the refresh token on refresh responses; keep the old one.
            row.refresh_token = tokens.refresh_token or row.refresh_token
            row.token_type = tokens.token_type or "Bearer"
            row.scope = tokens.scope or row.scope
            row.expiry = ensure_utc(tokens.expiry)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            stored = _to_tokens(row)
        self._cache.set(owner_id, stored)

    def forget(self, owner_id: str) -> None:
        self._cache.delete(owner_id)
        with self._session_factory() as session:
            row = session.get(OAuthToken, owner_id)
            if row is not None:
                session.delete(row)
                session.commit()

    # ----- validity -----
    def is_fresh(self, tokens: OAuthTokens) -> bool:
        if not tokens.access_token:
            return False
        if tokens.expiry is None:
            return True
        return ensure_utc(tokens.expiry) - self._clock() > self._margin

    def get_valid_token(self, owner_id: str) -> str:
        tokens = self.load_tokens(owner_id)
        if tokens is None:
            raise AuthExpiredError(owner_id, "no stored Google credentials, reconnect required")
        if self.is_fresh(tokens):
            return tokens.access_token
        return self._refresh_if_stale(owner_id, tokens).access_token

    def refresh(self, owner_id: str) -> OAuthTokens:
        tokens = self.load_tokens(owner_id)
        if tokens is None:
            raise AuthExpiredError(owner_id, "no stored Google credentials, reconnect required")
        return self._refresh_if_stale(owner_id, tokens, force=True)

    # ----- internals -----
    def _lock_for(self, owner_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(owner_id)
            if lock is None:
                lock = self._locks[owner_id] = threading.Lock()
            return lock

    def _refresh_if_stale(self, owner_id: str, seen: OAuthTokens, force: bool = False) -> OAuthTokens:
        with self._lock_for(owner_id):
            current = self.load_tokens(owner_id) or seen
            if current.access_token != seen.access_token and self.is_fresh(current):
                return current
            if not force and self.is_fresh(current):
                return current
            return self._do_refresh(owner_id, current)

    def _do_refresh(self, owner_id: str, tokens: OAuthTokens) -> OAuthTokens:
        if not tokens.refresh_token:
            self._auth_expired(owner_id, "no refresh token")
        if self._refresher is None:
            raise RuntimeError("CredentialStore has no refresher configured")
        self.logger.info(kv("auth.refresh.start", owner=owner_id))
        try:
            fresh = self._refresher(tokens)
        except RefreshError as exc:
            self._auth_expired(owner_id, str(exc))
        except TransportError as exc:
            self.logger.warning(kv("auth.refresh.transport_error", owner=owner_id, error=exc))
            raise TransientNetworkError(f"token refresh failed: {exc}") from exc
        if not fresh.refresh_token:
            fresh.refresh_token = tokens.refresh_token
        self.store_tokens(owner_id, fresh)
        self.logger.info(kv("auth.refresh.done", owner=owner_id, expiry=fresh.expiry))
        return fresh

    def _auth_expired(self, owner_id: str, reason: str) -> None:
        self._cache.delete(owner_id)
        self.logger.error(kv("auth.expired", owner=owner_id, reason=reason))
        if self._on_auth_expired is not None:
            self._on_auth_expired(owner_id)
        raise AuthExpiredError(owner_id)


__all__ = ["CredentialStore", "Refresher"]
