"""Platform-specific path utilities."""

import os
import sys
from pathlib import Path

APP_NAME = "jellyfin-mal-sync"


def get_config_dir() -> Path:
    """Get platform-specific configuration directory."""
    if sys.platform == "win32":
        # Windows: use APPDATA
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
        return Path.home() / "AppData" / "Roaming" / APP_NAME
    elif sys.platform == "darwin":
        # macOS: use Application Support
        return Path.home() / "Library" / "Application Support" / APP_NAME
    else:
        # Linux/Unix: use XDG_CONFIG_HOME or ~/.config
        config_home = os.getenv("XDG_CONFIG_HOME")
        if config_home:
            return Path(config_home) / APP_NAME
        return Path.home() / ".config" / APP_NAME


def get_data_dir() -> Path:
    """Get the directory holding persisted state.

    DATA_DIR wins so a container can point it at a mounted volume.
    """
    data_dir = os.getenv("DATA_DIR")
    if data_dir:
        return Path(data_dir)
    return get_config_dir()


def get_token_path(data_dir: Path | None = None) -> Path:
    """Get token storage path."""
    return (data_dir or get_data_dir()) / "tokens.json"


def get_watch_state_path(data_dir: Path | None = None) -> Path:
    """Get watch-state storage path."""
    return (data_dir or get_data_dir()) / "watch_state.json"


def get_mapping_cache_dir(data_dir: Path | None = None) -> Path:
    """Get the directory caching the raw mapping catalogs."""
    return (data_dir or get_data_dir()) / "mappings"
