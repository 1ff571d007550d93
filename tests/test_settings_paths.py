from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core import settings


def test_linux_data_dir_with_xdg():
    env = {"XDG_DATA_HOME": "/tmp/xdg"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env=env,
        home=Path("/home/test"),
    )
    assert result == Path("/tmp/xdg") / settings.APP_NAME


def test_linux_data_dir_default_home():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="linux",
        env={},
        home=Path("/home/test"),
    )
    assert result == Path("/home/test/.local/share") / settings.APP_NAME


def test_macos_data_dir():
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="darwin",
        env={},
        home=Path("/Users/test"),
    )
    expected = Path("/Users/test/Library/Application Support") / settings.APP_NAME
    assert result == expected


def test_windows_data_dir_appdata():
    env = {"APPDATA": "C:/Users/test/AppData/Roaming"}
    result = settings.get_default_data_dir(
        settings.APP_NAME,
        platform="win32",
        env=env,
        home=Path("C:/Users/test"),
    )
    expected = Path(env["APPDATA"]) / settings.APP_NAME
    assert result == expected


def test_runtime_paths_inside_data_dir():
    assert settings.DB_PATH.parent == settings.DATA_DIR
    assert settings.CLIENT_SECRET_PATH.parent == settings.SECRETS_DIR
    assert settings.SYNC_LOG_PATH.parent == settings.LOG_DIR


def test_oauth_client_from_env():
    client = settings.load_oauth_client(
        {
            "GOOGLE_CLIENT_ID": "id",
            "GOOGLE_CLIENT_SECRET": "secret",
            "GOOGLE_REDIRECT_URI": "https://app.example/cb",
        }
    )
    assert client.redirect_uri == "https://app.example/cb"
    config = client.as_client_config()["web"]
    assert config["client_id"] == "id"
    assert config["redirect_uris"] == ["https://app.example/cb"]


def test_oauth_redirect_falls_back_to_base_url():
    client = settings.load_oauth_client(
        {"GOOGLE_CLIENT_ID": "id", "GOOGLE_CLIENT_SECRET": "secret", "APP_BASE_URL": "https://x.test/"}
    )
    assert client.redirect_uri == "https://x.test/oauth/google/callback"


def test_oauth_client_requires_id_and_secret():
    with pytest.raises(RuntimeError):
        settings.load_oauth_client({"GOOGLE_CLIENT_ID": "id"})
