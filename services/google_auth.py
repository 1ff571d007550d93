# taskshoot/services/google_auth.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Sequence

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from core.log import ensure_logger, kv
from core.settings import GOOGLE_SYNC, OAuthClientSettings, load_oauth_client
from datetime_utils import ensure_utc


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scope: str = ""
    expiry: Optional[datetime] = None

    @classmethod
    def from_credentials(cls, creds: Credentials, fallback_refresh: Optional[str] = None) -> "OAuthTokens":
        if not creds.token:
            raise ValueError("Failed to obtain access token")
        return cls(
            access_token=creds.token,
            refresh_token=creds.refresh_token or fallback_refresh,
            scope=" ".join(sorted(set(creds.scopes or []))),
            expiry=ensure_utc(creds.expiry),
        )


class GoogleAuth:
    """OAuth 2.0 authorization-code flow and token refresh for Google Calendar."""

    def __init__(
        self,
        client: Optional[OAuthClientSettings] = None,
        scopes: Sequence[str] = GOOGLE_SYNC.scopes,
    ):
        self.client = client or load_oauth_client()
        self.scopes = list(scopes)
        self.logger = ensure_logger("auth")

    def _flow(self, state: Optional[str] = None) -> Flow:
        return Flow.from_client_config(
            self.client.as_client_config(),
            scopes=self.scopes,
            redirect_uri=self.client.redirect_uri,
            state=state,
        )

    def authorization_url(self, state: Optional[str] = None) -> str:
        # prompt=consent makes Google return a refresh token every time
        url, _state = self._flow(state).authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        return url

    def exchange_code(self, code: str, state: Optional[str] = None) -> OAuthTokens:
        flow = self._flow(state)
        flow.fetch_token(code=code)
        tokens = OAuthTokens.from_credentials(flow.credentials)
        if not self._has_required_scopes(tokens.scope.split()):
            raise RuntimeError("Authorization is missing required Google Calendar scopes")
        self.logger.info(kv("auth.code_exchanged", scopes=tokens.scope))
        return tokens

    def refresh(self, tokens: OAuthTokens) -> OAuthTokens:
        """Refresh ``tokens``; raises ``google.auth.exceptions.RefreshError`` when rejected."""

        creds = Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=self.client.token_uri,
            client_id=self.client.client_id,
            client_secret=self.client.client_secret,
            scopes=self.scopes,
        )
        creds.refresh(Request())
        return OAuthTokens.from_credentials(creds, fallback_refresh=tokens.refresh_token)

    def _has_required_scopes(self, granted: Iterable[str]) -> bool:
        current = set(granted or [])
        return all(scope in current for scope in self.scopes)


def access_token_credentials(access_token: str) -> Credentials:
    return Credentials(token=access_token)


__all__ = ["GoogleAuth", "OAuthTokens", "access_token_credentials"]
