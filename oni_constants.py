"""Shared constants for Oni.

Import-safe module with no dependencies -- can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

DEFAULT_AGENT_ID = "main"
DEFAULT_ACCOUNT_ID = "default"
DEFAULT_GATEWAY_PORT = 18789

CONFIG_FILENAME = "oni.json"


def get_oni_home() -> Path:
    """Home directory used as the base for ~/.oni (respects ONI_HOME)."""
    override = os.getenv("ONI_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.home()


def get_state_dir() -> Path:
    """State directory holding sessions, credentials, devices and logs."""
    override = os.getenv("ONI_STATE_DIR", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return get_oni_home() / ".oni"


def get_config_path() -> Path:
    """Main config file path (ONI_CONFIG_PATH wins over the state dir)."""
    override = os.getenv("ONI_CONFIG_PATH", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return get_state_dir() / CONFIG_FILENAME
