import json
import os
import stat
from pathlib import Path

import pytest

from leprechaun.secrets import LunoCredentials, load_credentials, save_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("LUNO_API_KEY_ID", "LUNO_API_KEY_SECRET", "LUNO_CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


def test_load_credentials_from_env(monkeypatch):
    """Load credentials from environment variables."""
    monkeypatch.setenv("LUNO_API_KEY_ID", "env_id")
    monkeypatch.setenv("LUNO_API_KEY_SECRET", "env_secret")

    creds = load_credentials()
    assert creds == LunoCredentials(key_id="env_id", key_secret="env_secret")


def test_load_credentials_from_config_file(tmp_path: Path):
    """Load credentials from config file."""
    config_file = tmp_path / "luno.json"
    config_file.write_text(json.dumps({"key_id": "file_id", "key_secret": "file_secret"}))

    creds = load_credentials(config_path=str(config_file))
    assert creds.key_id == "file_id"
    assert creds.key_secret == "file_secret"


def test_config_path_from_env(tmp_path: Path, monkeypatch):
    config_file = tmp_path / "elsewhere.json"
    config_file.write_text(json.dumps({"key_id": "other_id", "key_secret": "other_secret"}))
    monkeypatch.setenv("LUNO_CONFIG_PATH", str(config_file))

    assert load_credentials().key_id == "other_id"


def test_env_overrides_config_file(tmp_path: Path, monkeypatch):
    """Environment variables take precedence over config file."""
    config_file = tmp_path / "luno.json"
    config_file.write_text(json.dumps({"key_id": "file_id", "key_secret": "file_secret"}))
    monkeypatch.setenv("LUNO_API_KEY_ID", "env_id")
    monkeypatch.setenv("LUNO_API_KEY_SECRET", "env_secret")

    assert load_credentials(config_path=str(config_file)).key_id == "env_id"


def test_missing_credentials_raises(tmp_path: Path):
    with pytest.raises(ValueError, match="Missing Luno API credentials"):
        load_credentials(config_path=str(tmp_path / "nope.json"))


def test_incomplete_config_file_raises(tmp_path: Path):
    config_file = tmp_path / "luno.json"
    config_file.write_text(json.dumps({"key_id": "only_id"}))
    with pytest.raises(ValueError):
        load_credentials(config_path=str(config_file))


def test_corrupt_config_file_raises(tmp_path: Path):
    config_file = tmp_path / "luno.json"
    config_file.write_text("{not json")
    with pytest.raises(ValueError, match="Failed to load config"):
        load_credentials(config_path=str(config_file))


def test_save_config_round_trip(tmp_path: Path):
    path = tmp_path / "sub" / "luno.json"
    save_config(str(path), "saved_id", "saved_secret")

    assert load_credentials(config_path=str(path)) == LunoCredentials("saved_id", "saved_secret")
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
