from datetime import datetime
from urllib.parse import parse_qs, urlparse

from google.oauth2.credentials import Credentials

from core.settings import OAuthClientSettings
from datetime_utils import UTC
from services.google_auth import GoogleAuth, OAuthTokens

CLIENT = OAuthClientSettings(
    client_id="client-1",
    client_secret="s3cret",
    redirect_uri="http://localhost:8080/oauth/google/callback",
)


def test_authorization_url_requests_offline_access():
    url = GoogleAuth(CLIENT).authorization_url(state="owner-1")
    query = parse_qs(urlparse(url).query)

    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["owner-1"]
    assert query["client_id"] == ["client-1"]
    assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split()


def test_required_scopes_check():
    auth = GoogleAuth(CLIENT, scopes=["a", "b"])
    assert auth._has_required_scopes(["b", "a", "c"])
    assert not auth._has_required_scopes(["a"])


def test_tokens_keep_previous_refresh_token():
    creds = Credentials(token="new-access", scopes=["b", "a"])
    creds.expiry = datetime(2026, 5, 1, 12, 0)

    tokens = OAuthTokens.from_credentials(creds, fallback_refresh="old-refresh")

    assert tokens.refresh_token == "old-refresh"
    assert tokens.scope == "a b"
    assert tokens.expiry == datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
