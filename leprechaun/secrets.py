"""Secrets management: load Luno API credentials from environment or config file.

Priority order:
1. Environment variables: LUNO_API_KEY_ID, LUNO_API_KEY_SECRET
2. Config file: ~/.luno_config.json or custom path via ENV LUNO_CONFIG_PATH
"""
import json
import os
from pathlib import Path
from typing import NamedTuple, Optional


class LunoCredentials(NamedTuple):
    key_id: str
    key_secret: str


def load_credentials(config_path: Optional[str] = None) -> LunoCredentials:
    """Load Luno credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks LUNO_CONFIG_PATH env var, then ~/.luno_config.json

    Raises:
        ValueError: If credentials are not found or incomplete
    """
    key_id = os.getenv("LUNO_API_KEY_ID")
    key_secret = os.getenv("LUNO_API_KEY_SECRET")

    if key_id and key_secret:
        return LunoCredentials(key_id=key_id, key_secret=key_secret)

    if config_path is None:
        config_path = os.getenv("LUNO_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".luno_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        key_id = cfg.get("key_id") or key_id
        key_secret = cfg.get("key_secret") or key_secret

    if not key_id or not key_secret:
        raise ValueError(
            "Missing Luno API credentials. Provide via:\n"
            "  - Environment: LUNO_API_KEY_ID, LUNO_API_KEY_SECRET\n"
            f"  - Config file: {config_path}\n"
            "  - LUNO_CONFIG_PATH env var to override config location"
        )

    return LunoCredentials(key_id=key_id, key_secret=key_secret)


def save_config(config_path: str, key_id: str, key_secret: str) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to the owner where supported.
    """
    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump({"key_id": key_id, "key_secret": key_secret}, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError:
        pass  # Windows doesn't support chmod
